"""
Solana ingestion layer.

Fetches signatures and jsonParsed transactions from RPC, turns them into
Transfer records, and discovers active addresses from recent blocks.
"""
