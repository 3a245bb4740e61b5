"""
Composite risk for an investigated address.

Five signals, each clamped to [0, 1], are combined with RiskWeights
(default: dust_amount 0.3, transfer_pattern 0.2, address_similarity 0.2,
temporal_pattern 0.15, third_party_risk 0.15; weights must sum to 1.0):

- dust_amount: share of the address's transfers that were dust.
- transfer_pattern: degree centrality / 10.
- address_similarity: 1 when a homoglyph/keyboard variant of the address is a
  known address, else the share of its recipients also paid by other senders.
- temporal_pattern: burst regularity of its dust timestamps.
- third_party_risk: combined external threat-intel score, 0 when unavailable.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any

from backend_dustwatch.analytics.address_graph import NetworkPattern
from backend_dustwatch.analytics.candidate_tracker import TemporalPattern
from backend_dustwatch.core.exceptions import ConfigurationError
from backend_dustwatch.dustwatch_logging import get_logger

logger = get_logger(__name__)

CENTRALITY_NORMALIZER = 10.0
WEIGHT_SUM_TOLERANCE = 1e-6


@dataclass(frozen=True)
class RiskWeights:
    dust_amount: float = 0.3
    transfer_pattern: float = 0.2
    address_similarity: float = 0.2
    temporal_pattern: float = 0.15
    third_party_risk: float = 0.15

    def __post_init__(self) -> None:
        total = (
            self.dust_amount
            + self.transfer_pattern
            + self.address_similarity
            + self.temporal_pattern
            + self.third_party_risk
        )
        if abs(total - 1.0) > WEIGHT_SUM_TOLERANCE:
            raise ConfigurationError(f"risk weights must sum to 1.0, got {total:.4f}")

    def to_dict(self) -> dict[str, float]:
        return {
            "dust_amount": self.dust_amount,
            "transfer_pattern": self.transfer_pattern,
            "address_similarity": self.address_similarity,
            "temporal_pattern": self.temporal_pattern,
            "third_party_risk": self.third_party_risk,
        }


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, float(value)))


@dataclass
class RiskSignals:
    """Raw signal values; clamped to [0, 1] on construction."""

    dust_amount: float = 0.0
    transfer_pattern: float = 0.0
    address_similarity: float = 0.0
    temporal_pattern: float = 0.0
    third_party_risk: float = 0.0

    def __post_init__(self) -> None:
        self.dust_amount = _clamp(self.dust_amount)
        self.transfer_pattern = _clamp(self.transfer_pattern)
        self.address_similarity = _clamp(self.address_similarity)
        self.temporal_pattern = _clamp(self.temporal_pattern)
        self.third_party_risk = _clamp(self.third_party_risk)

    def to_dict(self) -> dict[str, float]:
        return {
            "dust_amount": self.dust_amount,
            "transfer_pattern": self.transfer_pattern,
            "address_similarity": self.address_similarity,
            "temporal_pattern": self.temporal_pattern,
            "third_party_risk": self.third_party_risk,
        }


def transfer_pattern_signal(centrality: float) -> float:
    return _clamp(centrality / CENTRALITY_NORMALIZER)


def dust_ratio(dust_transfers: int, total_transfers: int) -> float:
    if total_transfers <= 0:
        return 0.0
    return _clamp(dust_transfers / total_transfers)


def calculate_risk(signals: RiskSignals, weights: RiskWeights | None = None) -> float:
    """Weighted sum of signals, clamped to [0, 1]."""
    w = weights or RiskWeights()
    score = (
        w.dust_amount * signals.dust_amount
        + w.transfer_pattern * signals.transfer_pattern
        + w.address_similarity * signals.address_similarity
        + w.temporal_pattern * signals.temporal_pattern
        + w.third_party_risk * signals.third_party_risk
    )
    return _clamp(score)


@dataclass
class RiskAnalysis:
    """One investigated address per analysis cycle; upserted by address."""

    address: str
    risk_score: float
    temporal_pattern: TemporalPattern
    network_pattern: NetworkPattern
    signals: RiskSignals
    third_party_signal: dict[str, Any] | None = None
    analyzed_at: float = field(default_factory=time.time)

    def to_record(self) -> dict[str, Any]:
        return {
            "address": self.address,
            "risk_score": self.risk_score,
            "temporal_pattern": self.temporal_pattern.to_dict(),
            "network_pattern": self.network_pattern.to_dict(),
            "signals": self.signals.to_dict(),
            "third_party_signal": self.third_party_signal,
            "analyzed_at": self.analyzed_at,
        }


def build_risk_analysis(
    address: str,
    signals: RiskSignals,
    temporal_pattern: TemporalPattern,
    network_pattern: NetworkPattern,
    weights: RiskWeights | None = None,
    third_party_signal: dict[str, Any] | None = None,
    analyzed_at: float | None = None,
) -> RiskAnalysis:
    score = calculate_risk(signals, weights)
    logger.debug(
        "risk_engine_result",
        address=address,
        risk_score=score,
        signals=signals.to_dict(),
    )
    return RiskAnalysis(
        address=address,
        risk_score=score,
        temporal_pattern=temporal_pattern,
        network_pattern=network_pattern,
        signals=signals,
        third_party_signal=third_party_signal,
        analyzed_at=analyzed_at if analyzed_at is not None else time.time(),
    )
