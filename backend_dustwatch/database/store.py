"""
Persistence store: narrow interface plus the SQLAlchemy implementation.

Upserts are keyed by address with last-write-wins semantics, so re-sending a
record after a failure is harmless. Every SQLAlchemy failure is re-raised as
PersistenceError; callers on the ingestion path log it and keep going.

Uses DUSTWATCH_DB_URL / DATABASE_URL when set; otherwise SQLite at
DUSTWATCH_DB_PATH (default dustwatch.db).
"""

from __future__ import annotations

import json
import os
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterator

from sqlalchemy import create_engine, func
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from backend_dustwatch.analytics.dust_classifier import ClassifiedTransfer
from backend_dustwatch.core.exceptions import PersistenceError
from backend_dustwatch.database.models import (
    Base,
    DustingAttacker,
    DustingVictim,
    DustTransaction,
    RiskAnalysisRow,
)
from backend_dustwatch.dustwatch_logging import get_logger

logger = get_logger(__name__)

DEFAULT_SQLITE_PATH = "dustwatch.db"
DEFAULT_QUERY_LIMIT = 100

_DIALECT_INSERTS = {"sqlite": sqlite.insert, "postgresql": postgresql.insert}


def get_database_url() -> str:
    """Return DUSTWATCH_DB_URL or DATABASE_URL if set; else SQLite from DUSTWATCH_DB_PATH or default."""
    url = (os.getenv("DUSTWATCH_DB_URL") or os.getenv("DATABASE_URL") or "").strip()
    if url:
        return url
    path = (os.getenv("DUSTWATCH_DB_PATH") or "").strip() or DEFAULT_SQLITE_PATH
    return f"sqlite:///{path}"


class RecordKind(str, Enum):
    ATTACKER = "attacker"
    VICTIM = "victim"
    RISK_ANALYSIS = "risk_analysis"
    DUST_TRANSACTION = "dust_transaction"


@dataclass
class RecordFilter:
    """
    Query filter. Results are ordered by risk score (highest first) for
    attacker / victim / risk rows and by timestamp (newest first) for transactions.
    """

    kind: RecordKind
    min_risk_score: float | None = None
    """Strictly greater-than filter on risk_score."""
    address: str | None = None
    updated_since: float | None = None
    """Attackers / victims updated (or risk rows analyzed) at or after this Unix time."""
    dust_only: bool = False
    limit: int = DEFAULT_QUERY_LIMIT


class PersistenceStore(ABC):
    """Record store for classified transfers and attacker / victim / risk snapshots."""

    @abstractmethod
    def insert_transfer(self, classified: ClassifiedTransfer) -> bool:
        """Store a classified transfer. Returns False when the signature already exists."""
        ...

    @abstractmethod
    def upsert_attacker(self, record: dict[str, Any]) -> None:
        ...

    @abstractmethod
    def upsert_victim(self, record: dict[str, Any]) -> None:
        ...

    @abstractmethod
    def upsert_risk_analysis(self, record: dict[str, Any]) -> None:
        ...

    @abstractmethod
    def query(self, record_filter: RecordFilter) -> list[dict[str, Any]]:
        ...

    @abstractmethod
    def count_dust_transfers(self, since: float, until: float) -> int:
        """Dust transfers with since < timestamp <= until."""
        ...

    @abstractmethod
    def recent_dust_amounts(self, limit: int) -> list[float]:
        """Amounts of the most recent `limit` dust transfers."""
        ...


def _json(value: Any) -> str | None:
    if value is None:
        return None
    return json.dumps(value)


def _int_or_none(value: Any) -> int | None:
    return int(value) if value is not None else None


class SqlAlchemyStore(PersistenceStore):
    """SQLAlchemy-backed PersistenceStore."""

    def __init__(self, url: str | None = None, engine: Engine | None = None) -> None:
        self._url = url or get_database_url()
        if engine is None:
            connect_args: dict[str, Any] = {}
            if self._url.startswith("sqlite"):
                connect_args["check_same_thread"] = False
            engine = create_engine(self._url, connect_args=connect_args, pool_pre_ping=True)
        self._engine = engine
        self._session_factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)

    @property
    def engine(self) -> Engine:
        return self._engine

    def init_db(self) -> None:
        """Create tables if they do not exist. Safe to call on every startup."""
        try:
            Base.metadata.create_all(bind=self._engine)
        except SQLAlchemyError as e:
            logger.exception("store_init_db_failed", error=str(e))
            raise PersistenceError(f"cannot initialise database: {e}") from e
        logger.info("store_init_db", url=self._url.split("?")[0].split("//")[-1])

    def dispose(self) -> None:
        self._engine.dispose()

    @contextmanager
    def _session_scope(self) -> Iterator[Session]:
        """Single session: commits on success, rolls back and raises PersistenceError on failure."""
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except IntegrityError:
            session.rollback()
            raise
        except SQLAlchemyError as e:
            session.rollback()
            raise PersistenceError(str(e)) from e
        finally:
            session.close()

    def insert_transfer(self, classified: ClassifiedTransfer) -> bool:
        t = classified.transfer
        try:
            with self._session_scope() as session:
                exists = session.query(DustTransaction.id).filter(DustTransaction.signature == t.signature).first()
                if exists:
                    return False
                session.add(
                    DustTransaction(
                        signature=t.signature,
                        timestamp=int(t.timestamp),
                        slot=t.slot,
                        success=t.success,
                        sender=t.sender,
                        recipient=t.recipient,
                        amount=t.amount,
                        fee=t.fee,
                        token_type=t.token_type,
                        is_dust=classified.is_dust,
                        dust_threshold=classified.dust_threshold,
                        is_potential_poisoning=classified.is_potential_poisoning,
                        is_scam_url=classified.is_scam_url,
                        memo=t.memo,
                    )
                )
            return True
        except IntegrityError:
            return False

    def _find_row(self, session: Session, model: Any, address: str) -> Any:
        return session.query(model).filter(model.address == address).first()

    def _merge_row(self, session: Session, model: Any, address: str, values: dict[str, Any]) -> None:
        row = self._find_row(session, model, address)
        if row is None:
            session.add(model(address=address, **values))
        else:
            for key, value in values.items():
                setattr(row, key, value)

    def _upsert(self, model: Any, address: str, values: dict[str, Any]) -> None:
        """
        Insert or overwrite the row for address.

        SQLite and PostgreSQL use INSERT ... ON CONFLICT DO UPDATE. Other
        dialects read then write; losing an insert race to another writer
        retries once as an update of the row that writer created.
        """
        dialect_insert = _DIALECT_INSERTS.get(self._engine.dialect.name)
        try:
            with self._session_scope() as session:
                if dialect_insert is not None:
                    stmt = dialect_insert(model).values(address=address, **values)
                    session.execute(stmt.on_conflict_do_update(index_elements=["address"], set_=values))
                else:
                    self._merge_row(session, model, address, values)
            return
        except IntegrityError as e:
            if dialect_insert is not None:
                raise PersistenceError(f"upsert {model.__tablename__} {address}: {e}") from e
            logger.debug("store_upsert_retry", table=model.__tablename__, address=address)
        try:
            with self._session_scope() as session:
                self._merge_row(session, model, address, values)
        except IntegrityError as e:
            raise PersistenceError(f"upsert {model.__tablename__} {address}: {e}") from e

    def upsert_attacker(self, record: dict[str, Any]) -> None:
        self._upsert(
            DustingAttacker,
            record["address"],
            {
                "small_transfers_count": int(record.get("small_transfers_count", 0)),
                "unique_victims_count": int(record.get("unique_victims_count", 0)),
                "unique_victims": _json(record.get("unique_victims", [])),
                "timestamps": _json(record.get("timestamps", [])),
                "risk_score": float(record.get("risk_score", 0.0)),
                "first_seen": _int_or_none(record.get("first_seen")),
                "last_seen": _int_or_none(record.get("last_seen")),
                "updated_at": int(time.time()),
            },
        )

    def upsert_victim(self, record: dict[str, Any]) -> None:
        self._upsert(
            DustingVictim,
            record["address"],
            {
                "dust_transactions_count": int(record.get("dust_transactions_count", 0)),
                "unique_attackers_count": int(record.get("unique_attackers_count", 0)),
                "unique_attackers": _json(record.get("unique_attackers", [])),
                "timestamps": _json(record.get("timestamps", [])),
                "risk_score": float(record.get("risk_score", 0.0)),
                "first_seen": _int_or_none(record.get("first_seen")),
                "last_seen": _int_or_none(record.get("last_seen")),
                "updated_at": int(time.time()),
            },
        )

    def upsert_risk_analysis(self, record: dict[str, Any]) -> None:
        self._upsert(
            RiskAnalysisRow,
            record["address"],
            {
                "risk_score": float(record.get("risk_score", 0.0)),
                "temporal_pattern": _json(record.get("temporal_pattern")),
                "network_pattern": _json(record.get("network_pattern")),
                "signals": _json(record.get("signals")),
                "third_party_signal": _json(record.get("third_party_signal")),
                "analyzed_at": int(record.get("analyzed_at") or time.time()),
            },
        )

    def query(self, record_filter: RecordFilter) -> list[dict[str, Any]]:
        f = record_filter
        with self._session_scope() as session:
            if f.kind == RecordKind.DUST_TRANSACTION:
                q = session.query(DustTransaction)
                if f.address:
                    q = q.filter((DustTransaction.sender == f.address) | (DustTransaction.recipient == f.address))
                if f.dust_only:
                    q = q.filter(DustTransaction.is_dust.is_(True))
                q = q.order_by(DustTransaction.timestamp.desc())
                return [row.to_dict() for row in q.limit(f.limit).all()]

            model = {
                RecordKind.ATTACKER: DustingAttacker,
                RecordKind.VICTIM: DustingVictim,
                RecordKind.RISK_ANALYSIS: RiskAnalysisRow,
            }[f.kind]
            q = session.query(model)
            if f.address:
                q = q.filter(model.address == f.address)
            if f.min_risk_score is not None:
                q = q.filter(model.risk_score > f.min_risk_score)
            if f.updated_since is not None:
                column = model.analyzed_at if model is RiskAnalysisRow else model.updated_at
                q = q.filter(column >= int(f.updated_since))
            q = q.order_by(model.risk_score.desc(), model.address)
            return [row.to_dict() for row in q.limit(f.limit).all()]

    def count_dust_transfers(self, since: float, until: float) -> int:
        with self._session_scope() as session:
            count = (
                session.query(func.count(DustTransaction.id))
                .filter(DustTransaction.is_dust.is_(True))
                .filter(DustTransaction.timestamp > since)
                .filter(DustTransaction.timestamp <= until)
                .scalar()
            )
        return int(count or 0)

    def recent_dust_amounts(self, limit: int) -> list[float]:
        with self._session_scope() as session:
            rows = (
                session.query(DustTransaction.amount)
                .filter(DustTransaction.is_dust.is_(True))
                .order_by(DustTransaction.timestamp.desc())
                .limit(limit)
                .all()
            )
        return [float(r[0]) for r in rows]
