"""
Agent worker: the detection pipeline and the long-running ingestion service.

The pipeline owns all in-memory detection state; the runner feeds it
transfers fetched from the transaction source and drives the periodic loops.
"""
