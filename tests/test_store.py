"""
Tests for the SQLAlchemy persistence store (database.store).

Uses the temporary SQLite store fixture from conftest.
"""

from __future__ import annotations

import pytest

from backend_dustwatch.analytics.dust_classifier import ClassifiedTransfer
from backend_dustwatch.core.exceptions import PersistenceError
from backend_dustwatch.database import store as store_module
from backend_dustwatch.database.store import RecordFilter, RecordKind, SqlAlchemyStore, get_database_url

NOW = 1_717_243_200
ATTACKER = "DustSender1111111111111111111111111111111111"
VICTIM = "Victim11111111111111111111111111111111111111"


def _classified(make_transfer, sig: str, amount: float, timestamp: int = NOW, is_dust: bool = True):
    return ClassifiedTransfer(
        transfer=make_transfer(sig, ATTACKER, VICTIM, amount, timestamp=timestamp),
        is_dust=is_dust,
        dust_threshold=0.001,
    )


def _attacker_record(risk: float = 0.42, count: int = 4) -> dict:
    return {
        "address": ATTACKER,
        "small_transfers_count": count,
        "unique_victims_count": 4,
        "unique_victims": [VICTIM],
        "timestamps": [NOW],
        "risk_score": risk,
        "first_seen": NOW,
        "last_seen": NOW,
    }


def test_get_database_url_defaults_to_sqlite(monkeypatch, tmp_path):
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.delenv("DUSTWATCH_DB_URL", raising=False)
    monkeypatch.setenv("DUSTWATCH_DB_PATH", str(tmp_path / "x.db"))
    assert get_database_url() == f"sqlite:///{tmp_path / 'x.db'}"
    monkeypatch.setenv("DATABASE_URL", "postgresql://u:p@localhost/dust")
    assert get_database_url() == "postgresql://u:p@localhost/dust"


def test_insert_transfer_ignores_duplicate_signature(store, make_transfer):
    assert store.insert_transfer(_classified(make_transfer, "sig1", 0.0005)) is True
    assert store.insert_transfer(_classified(make_transfer, "sig1", 0.0005)) is False
    rows = store.query(RecordFilter(kind=RecordKind.DUST_TRANSACTION))
    assert len(rows) == 1
    assert rows[0]["signature"] == "sig1"
    assert rows[0]["is_dust"] is True


def test_upsert_attacker_last_write_wins(store):
    store.upsert_attacker(_attacker_record(risk=0.42, count=4))
    store.upsert_attacker(_attacker_record(risk=0.6, count=10))
    rows = store.query(RecordFilter(kind=RecordKind.ATTACKER))
    assert len(rows) == 1
    assert rows[0]["risk_score"] == pytest.approx(0.6)
    assert rows[0]["small_transfers_count"] == 10
    assert rows[0]["unique_victims"] == [VICTIM]


def test_upsert_on_conflict_overwrites_existing_row(store):
    store.upsert_attacker(_attacker_record(count=3))
    store.upsert_attacker(_attacker_record(count=5))
    rows = store.query(RecordFilter(kind=RecordKind.ATTACKER))
    assert [r["small_transfers_count"] for r in rows] == [5]


def test_generic_upsert_retries_after_losing_insert_race(store, monkeypatch):
    """Another writer inserts between our read and our insert: the retry updates its row."""
    store.upsert_attacker(_attacker_record(count=3))
    monkeypatch.setattr(store_module, "_DIALECT_INSERTS", {})
    real_find = store._find_row
    misses = []

    def stale_find(session, model, address):
        if not misses:
            misses.append(address)
            return None
        return real_find(session, model, address)

    monkeypatch.setattr(store, "_find_row", stale_find)
    store.upsert_attacker(_attacker_record(count=5))

    assert misses == [ATTACKER]
    rows = store.query(RecordFilter(kind=RecordKind.ATTACKER))
    assert len(rows) == 1
    assert rows[0]["small_transfers_count"] == 5


def test_query_min_risk_is_strict_and_ordered(store):
    store.upsert_victim({"address": "V1", "dust_transactions_count": 2, "unique_attackers_count": 2, "risk_score": 0.5})
    store.upsert_victim({"address": "V2", "dust_transactions_count": 5, "unique_attackers_count": 3, "risk_score": 0.8})
    store.upsert_victim({"address": "V3", "dust_transactions_count": 3, "unique_attackers_count": 2, "risk_score": 0.6})
    rows = store.query(RecordFilter(kind=RecordKind.VICTIM, min_risk_score=0.5))
    assert [r["address"] for r in rows] == ["V2", "V3"]


def test_upsert_risk_analysis_round_trips_json(store):
    store.upsert_risk_analysis(
        {
            "address": ATTACKER,
            "risk_score": 0.55,
            "temporal_pattern": {"burst_count": 3},
            "network_pattern": {"cluster_size": 5},
            "signals": {"dust_amount": 1.0},
            "third_party_signal": None,
            "analyzed_at": NOW,
        }
    )
    rows = store.query(RecordFilter(kind=RecordKind.RISK_ANALYSIS, address=ATTACKER))
    assert rows[0]["temporal_pattern"] == {"burst_count": 3}
    assert rows[0]["third_party_signal"] is None
    assert rows[0]["analyzed_at"] == NOW


def test_count_dust_transfers_window(store, make_transfer):
    """Counts dust rows with since < timestamp <= until; non-dust rows are ignored."""
    store.insert_transfer(_classified(make_transfer, "a", 0.0005, timestamp=NOW - 3600))
    store.insert_transfer(_classified(make_transfer, "b", 0.0005, timestamp=NOW - 1800))
    store.insert_transfer(_classified(make_transfer, "c", 0.0005, timestamp=NOW))
    store.insert_transfer(_classified(make_transfer, "d", 2.0, timestamp=NOW, is_dust=False))
    assert store.count_dust_transfers(NOW - 3600, NOW) == 2
    assert store.count_dust_transfers(NOW - 7200, NOW) == 3


def test_recent_dust_amounts_newest_first(store, make_transfer):
    store.insert_transfer(_classified(make_transfer, "a", 0.0001, timestamp=NOW - 10))
    store.insert_transfer(_classified(make_transfer, "b", 0.0002, timestamp=NOW))
    store.insert_transfer(_classified(make_transfer, "c", 3.0, timestamp=NOW, is_dust=False))
    assert store.recent_dust_amounts(10) == [0.0002, 0.0001]
    assert store.recent_dust_amounts(1) == [0.0002]


def test_failures_surface_as_persistence_error(tmp_path):
    """A store whose tables were never created raises PersistenceError, not a driver error."""
    s = SqlAlchemyStore(f"sqlite:///{tmp_path / 'empty.db'}")
    with pytest.raises(PersistenceError):
        s.upsert_attacker(_attacker_record())
    s.dispose()
