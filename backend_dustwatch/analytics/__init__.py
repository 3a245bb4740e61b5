"""
Detection analytics.

- similarity: edit / visual / keyboard / prefix similarity between addresses.
- address_graph: sender -> recipient transfer graph, clusters, centrality.
- dust_classifier: dust predicate against the active thresholds.
- candidate_tracker: per-address attacker / victim statistics and risk.
- poisoning_detector: look-alike address detection and legitimacy scoring.
- thresholds: adaptive dust thresholds from network fee and congestion.
- risk_engine: composite risk per investigated address.
- threat_intel, scam_urls: third-party signals.
"""
