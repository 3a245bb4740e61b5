"""
Tests for the detection pipeline (agent_worker.pipeline): ingestion order,
dedupe, poisoning / scam flags, persistence and per-cycle analysis.
"""

from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor
from unittest.mock import MagicMock

import pytest

from backend_dustwatch.agent_worker.pipeline import DetectionPipeline
from backend_dustwatch.core.exceptions import PersistenceError
from backend_dustwatch.database.store import PersistenceStore, RecordFilter, RecordKind

ATTACKER = "7xKXtg2CW87d97TXJSDpbD5jBkheTqA83TZRuJosgAsU"
VICTIMS = [
    "9WzDXwBbmkg8ZTbNMqUxvQRAyrZzDsGYdLVL9zYtAWWM",
    "HN7cABqLq46Es1jh92dQQisAq662SmxELLLsHHe4YWrH",
    "4Nd1mBQtrMJVYVfKf2PJy9NZUZdTAsp7D4xWLs4gDB4T",
]
LEGIT = "9QCfNuQuxct1Xk9ytFYgxc5fThmTzL4pHQnSjjrVUrka"
LOOKALIKE = LEGIT[:1] + "0" + LEGIT[2:]
PAYER = "EyNRgqpzmHnVb3j1tUhLN3F6W7z2sGcAGZ4FxNmWFmvv"
NOW = 1_717_243_200


def _dust_to_three_victims(pipeline, make_transfer):
    for i, victim in enumerate(VICTIMS):
        pipeline.ingest(make_transfer(f"dust{i}", ATTACKER, victim, 0.0005, timestamp=NOW + i * 60))


def test_dust_and_non_dust_classification(clock, make_transfer):
    pipeline = DetectionPipeline(clock=clock)
    dust = pipeline.ingest(make_transfer("s1", ATTACKER, VICTIMS[0], 0.0005))
    big = pipeline.ingest(make_transfer("s2", PAYER, VICTIMS[0], 2.0))
    token = pipeline.ingest(make_transfer("s3", ATTACKER, VICTIMS[1], 0.0001, token_type="EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"))
    assert dust.is_dust and dust.dust_threshold == 0.001
    assert not big.is_dust
    assert not token.is_dust
    assert pipeline.tracker.dust_counts(ATTACKER) == (1, 0)
    # every transfer lands in the graph, dust or not
    assert pipeline.graph.has_edge(PAYER, VICTIMS[0])


def test_duplicate_signature_ingested_once(clock, make_transfer):
    pipeline = DetectionPipeline(clock=clock)
    t = make_transfer("same", ATTACKER, VICTIMS[0], 0.0005)
    assert pipeline.ingest(t) is not None
    assert pipeline.ingest(t) is None
    assert pipeline.is_ingested("same")
    assert len(list(pipeline.classified())) == 1
    assert pipeline.tracker.attacker(ATTACKER)["small_transfers_count"] == 1
    assert pipeline.ingest(None) is None


def test_confirmed_attacker_and_tracked_victim_persisted(store, clock, make_transfer):
    pipeline = DetectionPipeline(store=store, clock=clock)
    _dust_to_three_victims(pipeline, make_transfer)
    pipeline.ingest(make_transfer("dust3", ATTACKER, VICTIMS[0], 0.0004, timestamp=NOW + 600))

    attackers = store.query(RecordFilter(kind=RecordKind.ATTACKER))
    assert [a["address"] for a in attackers] == [ATTACKER]
    assert attackers[0]["small_transfers_count"] == 4
    assert attackers[0]["unique_victims_count"] == 3

    victims = store.query(RecordFilter(kind=RecordKind.VICTIM))
    assert [v["address"] for v in victims] == [VICTIMS[0]]
    assert victims[0]["dust_transactions_count"] == 2

    assert len(store.query(RecordFilter(kind=RecordKind.DUST_TRANSACTION))) == 4


def test_unconfirmed_attacker_not_persisted(store, clock, make_transfer):
    pipeline = DetectionPipeline(store=store, clock=clock)
    pipeline.ingest(make_transfer("d1", ATTACKER, VICTIMS[0], 0.0005))
    pipeline.ingest(make_transfer("d2", ATTACKER, VICTIMS[1], 0.0005))
    assert store.query(RecordFilter(kind=RecordKind.ATTACKER)) == []
    assert pipeline.tracker.attacker(ATTACKER) is not None


def test_lookalike_recipient_flagged(clock, make_transfer):
    pipeline = DetectionPipeline(clock=clock)
    pipeline.ingest(make_transfer("pay", PAYER, LEGIT, 1.5))
    flagged = pipeline.ingest(make_transfer("poison", ATTACKER, LOOKALIKE, 0.0001))
    assert flagged.is_dust
    assert flagged.is_potential_poisoning
    assert LEGIT in flagged.similar_to
    assert flagged.to_dict()["similar_to"] == list(flagged.similar_to)


def test_scam_memo_flagged(clock, make_transfer):
    pipeline = DetectionPipeline(clock=clock, scam_blocklist={"claim-sol.net"})
    flagged = pipeline.ingest(make_transfer("m1", ATTACKER, VICTIMS[0], 0.0005, memo="Airdrop! claim-sol.net/now"))
    clean = pipeline.ingest(make_transfer("m2", ATTACKER, VICTIMS[1], 0.0005, memo="gm"))
    assert flagged.is_scam_url
    assert not clean.is_scam_url


def test_persistence_failure_keeps_memory_state(clock, make_transfer):
    store = MagicMock(spec=PersistenceStore)
    store.insert_transfer.side_effect = PersistenceError("database is locked")
    pipeline = DetectionPipeline(store=store, clock=clock)
    classified = pipeline.ingest(make_transfer("d1", ATTACKER, VICTIMS[0], 0.0005))
    assert classified is not None
    assert pipeline.tracker.attacker(ATTACKER)["small_transfers_count"] == 1
    store.upsert_attacker.assert_not_called()


def test_analyze_builds_report_and_persists(store, clock, make_transfer):
    pipeline = DetectionPipeline(store=store, clock=clock)
    _dust_to_three_victims(pipeline, make_transfer)

    report = pipeline.analyze([ATTACKER, ATTACKER])
    assert [a.address for a in report.analyses] == [ATTACKER]
    analysis = report.analyses[0]
    # all three of its transfers were dust
    assert analysis.signals.dust_amount == 1.0
    assert 0.3 <= analysis.risk_score <= 1.0
    assert report.generated_at == clock()
    assert [a["address"] for a in report.confirmed_attackers] == [ATTACKER]
    assert any(ATTACKER in c for c in report.clusters)

    rows = store.query(RecordFilter(kind=RecordKind.RISK_ANALYSIS))
    assert [r["address"] for r in rows] == [ATTACKER]
    assert rows[0]["risk_score"] == pytest.approx(analysis.risk_score)
    assert report.to_dict()["analyses"][0]["address"] == ATTACKER


def test_analyze_survives_store_failure(clock, make_transfer):
    store = MagicMock(spec=PersistenceStore)
    store.insert_transfer.return_value = True
    store.upsert_risk_analysis.side_effect = PersistenceError("disk full")
    pipeline = DetectionPipeline(store=store, clock=clock)
    _dust_to_three_victims(pipeline, make_transfer)
    report = pipeline.analyze([ATTACKER, VICTIMS[0]])
    assert len(report.analyses) == 2
    assert store.upsert_risk_analysis.call_count == 2


def test_snapshot_counts(clock, make_transfer):
    pipeline = DetectionPipeline(clock=clock)
    _dust_to_three_victims(pipeline, make_transfer)
    snap = pipeline.snapshot()
    assert snap["ingested"] == 3
    assert snap["graph_nodes"] == 4
    assert snap["graph_edges"] == 3
    assert len(snap["confirmed_attackers"]) == 1


def test_older_attacker_snapshot_does_not_overwrite_newer(store, clock, make_transfer, monkeypatch):
    """The third transfer's write stalls while a second worker ingests the fourth."""
    entered = threading.Event()
    release = threading.Event()
    real_upsert = store.upsert_attacker
    written = []

    def stalled_upsert(record):
        if not written:
            written.append(record["small_transfers_count"])
            entered.set()
            release.wait(5)
        else:
            written.append(record["small_transfers_count"])
        real_upsert(record)

    monkeypatch.setattr(store, "upsert_attacker", stalled_upsert)
    pipeline = DetectionPipeline(store=store, clock=clock)
    pipeline.ingest(make_transfer("dust0", ATTACKER, VICTIMS[0], 0.0005, timestamp=NOW))
    pipeline.ingest(make_transfer("dust1", ATTACKER, VICTIMS[1], 0.0005, timestamp=NOW + 60))

    third = threading.Thread(
        target=pipeline.ingest, args=(make_transfer("dust2", ATTACKER, VICTIMS[2], 0.0005, timestamp=NOW + 120),)
    )
    fourth = threading.Thread(
        target=pipeline.ingest, args=(make_transfer("dust3", ATTACKER, VICTIMS[0], 0.0004, timestamp=NOW + 600),)
    )
    third.start()
    assert entered.wait(5)
    fourth.start()
    fourth.join(0.5)
    release.set()
    third.join(5)
    fourth.join(5)

    assert written == [3, 4]
    assert pipeline.tracker.attacker(ATTACKER)["small_transfers_count"] == 4
    rows = store.query(RecordFilter(kind=RecordKind.ATTACKER))
    assert rows[0]["small_transfers_count"] == 4


def test_concurrent_ingest_from_one_sender(store, clock, make_transfer):
    recipients = [f"DustTarget{j}" + "1" * 34 for j in range(10)]
    transfers = [
        make_transfer(f"burst{i}", ATTACKER, recipients[i % len(recipients)], 0.0005, timestamp=NOW + i)
        for i in range(40)
    ]
    pipeline = DetectionPipeline(store=store, clock=clock)

    # every transfer is submitted twice from different workers
    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(pipeline.ingest, transfers + transfers))

    assert sum(1 for r in results if r is not None) == 40
    attacker = pipeline.tracker.attacker(ATTACKER)
    assert attacker["small_transfers_count"] == 40
    assert attacker["unique_victims_count"] == 10
    assert pipeline.graph.edge_count() == 10
    assert all(len(pipeline.graph.edge_amounts(ATTACKER, r)) == 4 for r in recipients)
    assert pipeline.snapshot()["ingested"] == 40

    assert len(store.query(RecordFilter(kind=RecordKind.DUST_TRANSACTION))) == 40
    rows = store.query(RecordFilter(kind=RecordKind.ATTACKER))
    assert [(r["address"], r["small_transfers_count"]) for r in rows] == [(ATTACKER, 40)]
    victims = store.query(RecordFilter(kind=RecordKind.VICTIM))
    assert sorted(v["address"] for v in victims) == sorted(recipients)
    assert all(v["dust_transactions_count"] == 4 for v in victims)
