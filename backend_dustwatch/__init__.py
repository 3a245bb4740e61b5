"""
Backend Dustwatch: dust-transfer and address-poisoning detection core for Solana.

Subpackages:
- solana_listener: transaction source, jsonParsed parser, active-address discovery.
- analytics: similarity, address graph, dust classification, poisoning detection,
  attacker/victim tracking, adaptive thresholds, composite risk.
- alerts: periodic alert evaluation and sinks.
- database: persistence store (SQLAlchemy).
- agent_worker: detection pipeline and ingestion runner.
"""

__version__ = "0.1.0"
