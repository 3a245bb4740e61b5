"""
SQLAlchemy models for detection results.

Attacker, victim and risk-analysis rows are keyed by address and overwritten
on every upsert. Dust transactions are append-only and unique by signature.
List / pattern fields are stored as JSON text.
"""

from __future__ import annotations

import json
from typing import Any

from sqlalchemy import Boolean, Column, Float, Integer, String, Text
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def _loads(raw: str | None, default: Any) -> Any:
    if not raw:
        return default
    try:
        return json.loads(raw)
    except ValueError:
        return default


class DustTransaction(Base):
    """One ingested transfer with its dust / poisoning verdicts."""

    __tablename__ = "dust_transactions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    signature = Column(String(128), unique=True, nullable=False, index=True)
    timestamp = Column(Integer, nullable=False, index=True)  # Unix seconds
    slot = Column(Integer, nullable=True)
    success = Column(Boolean, nullable=False, default=True)
    sender = Column(String(64), nullable=False, index=True)
    recipient = Column(String(64), nullable=False, index=True)
    amount = Column(Float, nullable=False)
    fee = Column(Float, nullable=False, default=0.0)
    token_type = Column(String(64), nullable=False, default="SOL")
    is_dust = Column(Boolean, nullable=False, default=False, index=True)
    dust_threshold = Column(Float, nullable=True)
    is_potential_poisoning = Column(Boolean, nullable=False, default=False)
    is_scam_url = Column(Boolean, nullable=False, default=False)
    memo = Column(Text, nullable=True)

    def to_dict(self) -> dict[str, Any]:
        return {
            "signature": self.signature,
            "timestamp": self.timestamp,
            "slot": self.slot,
            "success": self.success,
            "sender": self.sender,
            "recipient": self.recipient,
            "amount": self.amount,
            "fee": self.fee,
            "token_type": self.token_type,
            "is_dust": self.is_dust,
            "dust_threshold": self.dust_threshold,
            "is_potential_poisoning": self.is_potential_poisoning,
            "is_scam_url": self.is_scam_url,
            "memo": self.memo,
        }


class DustingAttacker(Base):
    __tablename__ = "dusting_attackers"

    id = Column(Integer, primary_key=True, autoincrement=True)
    address = Column(String(64), unique=True, nullable=False, index=True)
    small_transfers_count = Column(Integer, nullable=False, default=0)
    unique_victims_count = Column(Integer, nullable=False, default=0)
    unique_victims = Column(Text, nullable=True)  # JSON array
    timestamps = Column(Text, nullable=True)  # JSON array
    risk_score = Column(Float, nullable=False, default=0.0, index=True)
    first_seen = Column(Integer, nullable=True)
    last_seen = Column(Integer, nullable=True)
    updated_at = Column(Integer, nullable=False, index=True)

    def to_dict(self) -> dict[str, Any]:
        return {
            "address": self.address,
            "small_transfers_count": self.small_transfers_count,
            "unique_victims_count": self.unique_victims_count,
            "unique_victims": _loads(self.unique_victims, []),
            "timestamps": _loads(self.timestamps, []),
            "risk_score": self.risk_score,
            "first_seen": self.first_seen,
            "last_seen": self.last_seen,
            "updated_at": self.updated_at,
        }


class DustingVictim(Base):
    __tablename__ = "dusting_victims"

    id = Column(Integer, primary_key=True, autoincrement=True)
    address = Column(String(64), unique=True, nullable=False, index=True)
    dust_transactions_count = Column(Integer, nullable=False, default=0)
    unique_attackers_count = Column(Integer, nullable=False, default=0)
    unique_attackers = Column(Text, nullable=True)  # JSON array
    timestamps = Column(Text, nullable=True)  # JSON array
    risk_score = Column(Float, nullable=False, default=0.0, index=True)
    first_seen = Column(Integer, nullable=True)
    last_seen = Column(Integer, nullable=True)
    updated_at = Column(Integer, nullable=False, index=True)

    def to_dict(self) -> dict[str, Any]:
        return {
            "address": self.address,
            "dust_transactions_count": self.dust_transactions_count,
            "unique_attackers_count": self.unique_attackers_count,
            "unique_attackers": _loads(self.unique_attackers, []),
            "timestamps": _loads(self.timestamps, []),
            "risk_score": self.risk_score,
            "first_seen": self.first_seen,
            "last_seen": self.last_seen,
            "updated_at": self.updated_at,
        }


class RiskAnalysisRow(Base):
    __tablename__ = "risk_analysis"

    id = Column(Integer, primary_key=True, autoincrement=True)
    address = Column(String(64), unique=True, nullable=False, index=True)
    risk_score = Column(Float, nullable=False, default=0.0, index=True)
    temporal_pattern = Column(Text, nullable=True)  # JSON object
    network_pattern = Column(Text, nullable=True)  # JSON object
    signals = Column(Text, nullable=True)  # JSON object
    third_party_signal = Column(Text, nullable=True)  # JSON object
    analyzed_at = Column(Integer, nullable=False, index=True)

    def to_dict(self) -> dict[str, Any]:
        return {
            "address": self.address,
            "risk_score": self.risk_score,
            "temporal_pattern": _loads(self.temporal_pattern, {}),
            "network_pattern": _loads(self.network_pattern, {}),
            "signals": _loads(self.signals, {}),
            "third_party_signal": _loads(self.third_party_signal, None),
            "analyzed_at": self.analyzed_at,
        }
