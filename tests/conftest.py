"""
Pytest fixtures for Dustwatch tests. Uses a temporary SQLite DB for the store
and fixed clocks so time-dependent logic is deterministic.
"""

from __future__ import annotations

import pytest

from backend_dustwatch.analytics.similarity import clear_similarity_cache
from backend_dustwatch.solana_listener.models import Transfer

# 2024-06-01T12:00:00Z
FIXED_NOW = 1_717_243_200


class FakeClock:
    """Callable clock that tests advance by hand."""

    def __init__(self, now: float = FIXED_NOW) -> None:
        self.now = float(now)

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def _build_transfer(
    signature: str,
    sender: str,
    recipient: str,
    amount: float,
    timestamp: int = FIXED_NOW,
    token_type: str = "SOL",
    memo: str | None = None,
) -> Transfer:
    return Transfer(
        signature=signature,
        timestamp=timestamp,
        slot=250_000_000,
        success=True,
        sender=sender,
        recipient=recipient,
        amount=amount,
        fee=0.000005,
        token_type=token_type,
        memo=memo,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(tmp_path, monkeypatch):
    """
    SqlAlchemyStore on a temporary SQLite file with tables created.
    Unset DATABASE_URL / DUSTWATCH_DB_URL so the SQLite fallback is used.
    """
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.delenv("DUSTWATCH_DB_URL", raising=False)
    monkeypatch.setenv("DUSTWATCH_DB_PATH", str(tmp_path / "dustwatch.db"))

    from backend_dustwatch.database.store import SqlAlchemyStore

    s = SqlAlchemyStore()
    s.init_db()
    yield s
    s.dispose()


@pytest.fixture(autouse=True)
def _fresh_similarity_cache():
    clear_similarity_cache()
    yield
    clear_similarity_cache()


@pytest.fixture
def make_transfer():
    """Factory for Transfer objects with sensible defaults."""
    return _build_transfer
