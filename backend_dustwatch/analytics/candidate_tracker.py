"""
Incremental attacker / victim tracking from dust transfers.

Every dust transfer updates two records: the sender's AttackerStats and the
recipient's VictimStats. Records are created lazily and never deleted.

Risk formulas:
    attacker: 0 below min_transfers, else min(0.3 + count/100 + victims/50, 1)
    victim:   0 below 2 dust transfers, else min(0.2 + count/20 + attackers/10, 1)

Only confirmed attackers (count and unique victims both >= min_transfers) and
victims with at least 2 dust transfers are handed to persistence.

Owned by the detection pipeline; not thread-safe on its own.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable

from backend_dustwatch.dustwatch_logging import get_logger

logger = get_logger(__name__)

DEFAULT_MIN_TRANSFERS = 3
MIN_VICTIM_DUST_TRANSFERS = 2
BURST_GAP_SEC = 5 * 60
DEFAULT_MAX_TIMESTAMPS = 10_000

ATTACKER_BASE_RISK = 0.3
ATTACKER_COUNT_DIVISOR = 100
ATTACKER_VICTIM_DIVISOR = 50
VICTIM_BASE_RISK = 0.2
VICTIM_COUNT_DIVISOR = 20
VICTIM_ATTACKER_DIVISOR = 10


def attacker_risk(small_transfers_count: int, unique_victims: int, min_transfers: int = DEFAULT_MIN_TRANSFERS) -> float:
    if small_transfers_count < min_transfers:
        return 0.0
    score = ATTACKER_BASE_RISK + small_transfers_count / ATTACKER_COUNT_DIVISOR + unique_victims / ATTACKER_VICTIM_DIVISOR
    return max(0.0, min(score, 1.0))


def victim_risk(dust_transactions_count: int, unique_attackers: int) -> float:
    if dust_transactions_count < MIN_VICTIM_DUST_TRANSFERS:
        return 0.0
    score = VICTIM_BASE_RISK + dust_transactions_count / VICTIM_COUNT_DIVISOR + unique_attackers / VICTIM_ATTACKER_DIVISOR
    return max(0.0, min(score, 1.0))


@dataclass
class TemporalPattern:
    """Burst / cadence summary of an address's dust timestamps."""

    burst_count: int = 0
    """Consecutive gaps shorter than 5 minutes."""
    average_time_between_transfers: float = 0.0
    """Mean gap in seconds; 0 with fewer than two timestamps."""
    regularity_score: float = 0.0
    is_suspicious: bool = False
    hourly_distribution: list[int] = field(default_factory=lambda: [0] * 24)
    weekday_distribution: list[int] = field(default_factory=lambda: [0] * 7)

    def to_dict(self) -> dict[str, Any]:
        return {
            "burst_count": self.burst_count,
            "average_time_between_transfers": self.average_time_between_transfers,
            "regularity_score": self.regularity_score,
            "is_suspicious": self.is_suspicious,
            "hourly_distribution": list(self.hourly_distribution),
            "weekday_distribution": list(self.weekday_distribution),
        }


def analyze_temporal(timestamps: Iterable[float], time_window: float) -> TemporalPattern:
    """
    Sort timestamps, count gaps under 5 minutes as bursts, average the gaps.
    Suspicious when any burst exists or the mean gap is positive and below time_window.
    """
    ordered = sorted(timestamps)
    gaps = [b - a for a, b in zip(ordered, ordered[1:])]
    bursts = sum(1 for g in gaps if g < BURST_GAP_SEC)
    average = sum(gaps) / len(gaps) if gaps else 0.0

    hourly = [0] * 24
    weekday = [0] * 7
    for ts in ordered:
        moment = datetime.fromtimestamp(ts, tz=timezone.utc)
        hourly[moment.hour] += 1
        weekday[moment.weekday()] += 1

    return TemporalPattern(
        burst_count=bursts,
        average_time_between_transfers=average,
        regularity_score=1.0 if bursts > 0 else 0.0,
        is_suspicious=bursts > 0 or 0 < average < time_window,
        hourly_distribution=hourly,
        weekday_distribution=weekday,
    )


@dataclass
class AttackerStats:
    address: str
    small_transfers_count: int = 0
    unique_victims: set[str] = field(default_factory=set)
    timestamps: deque[float] = field(default_factory=lambda: deque(maxlen=DEFAULT_MAX_TIMESTAMPS))
    risk_score: float = 0.0
    first_seen: float | None = None
    last_seen: float | None = None

    def to_record(self) -> dict[str, Any]:
        """Persistable projection."""
        return {
            "address": self.address,
            "small_transfers_count": self.small_transfers_count,
            "unique_victims_count": len(self.unique_victims),
            "unique_victims": sorted(self.unique_victims),
            "timestamps": list(self.timestamps),
            "risk_score": self.risk_score,
            "first_seen": self.first_seen,
            "last_seen": self.last_seen,
        }


@dataclass
class VictimStats:
    address: str
    dust_transactions_count: int = 0
    unique_attackers: set[str] = field(default_factory=set)
    timestamps: deque[float] = field(default_factory=lambda: deque(maxlen=DEFAULT_MAX_TIMESTAMPS))
    risk_score: float = 0.0
    first_seen: float | None = None
    last_seen: float | None = None

    def to_record(self) -> dict[str, Any]:
        return {
            "address": self.address,
            "dust_transactions_count": self.dust_transactions_count,
            "unique_attackers_count": len(self.unique_attackers),
            "unique_attackers": sorted(self.unique_attackers),
            "timestamps": list(self.timestamps),
            "risk_score": self.risk_score,
            "first_seen": self.first_seen,
            "last_seen": self.last_seen,
        }


@dataclass
class TrackerUpdate:
    """What one observed dust transfer changed."""

    attacker: dict[str, Any]
    victim: dict[str, Any]
    attacker_confirmed: bool
    """Sender passes the confirmed-attacker filter after this transfer."""
    victim_tracked: bool
    """Recipient passes the victim persistence filter after this transfer."""
    newly_confirmed: bool = False


class CandidateTracker:
    """Owns address -> AttackerStats and address -> VictimStats."""

    def __init__(
        self,
        min_transfers: int = DEFAULT_MIN_TRANSFERS,
        max_timestamps: int = DEFAULT_MAX_TIMESTAMPS,
    ) -> None:
        self.min_transfers = min_transfers
        self.max_timestamps = max(1, max_timestamps)
        self._attackers: dict[str, AttackerStats] = {}
        self._victims: dict[str, VictimStats] = {}

    def __len__(self) -> int:
        return len(self._attackers) + len(self._victims)

    def is_confirmed_attacker(self, stats: AttackerStats) -> bool:
        return (
            stats.small_transfers_count >= self.min_transfers
            and len(stats.unique_victims) >= self.min_transfers
        )

    @staticmethod
    def is_tracked_victim(stats: VictimStats) -> bool:
        return stats.dust_transactions_count >= MIN_VICTIM_DUST_TRANSFERS

    def observe(self, sender: str, recipient: str, timestamp: float, is_dust: bool) -> TrackerUpdate | None:
        """Record one transfer. Non-dust transfers leave state untouched and return None."""
        if not is_dust:
            return None

        attacker = self._attackers.get(sender)
        if attacker is None:
            attacker = AttackerStats(address=sender, timestamps=deque(maxlen=self.max_timestamps))
            self._attackers[sender] = attacker
        victim = self._victims.get(recipient)
        if victim is None:
            victim = VictimStats(address=recipient, timestamps=deque(maxlen=self.max_timestamps))
            self._victims[recipient] = victim

        was_confirmed = self.is_confirmed_attacker(attacker)

        attacker.small_transfers_count += 1
        attacker.unique_victims.add(recipient)
        attacker.timestamps.append(timestamp)
        attacker.first_seen = timestamp if attacker.first_seen is None else min(attacker.first_seen, timestamp)
        attacker.last_seen = timestamp if attacker.last_seen is None else max(attacker.last_seen, timestamp)
        attacker.risk_score = attacker_risk(
            attacker.small_transfers_count, len(attacker.unique_victims), self.min_transfers
        )

        victim.dust_transactions_count += 1
        victim.unique_attackers.add(sender)
        victim.timestamps.append(timestamp)
        victim.first_seen = timestamp if victim.first_seen is None else min(victim.first_seen, timestamp)
        victim.last_seen = timestamp if victim.last_seen is None else max(victim.last_seen, timestamp)
        victim.risk_score = victim_risk(victim.dust_transactions_count, len(victim.unique_attackers))

        confirmed = self.is_confirmed_attacker(attacker)
        if confirmed and not was_confirmed:
            logger.info(
                "attacker_confirmed",
                address=sender,
                small_transfers_count=attacker.small_transfers_count,
                unique_victims=len(attacker.unique_victims),
                risk_score=attacker.risk_score,
            )
        return TrackerUpdate(
            attacker=attacker.to_record(),
            victim=victim.to_record(),
            attacker_confirmed=confirmed,
            victim_tracked=self.is_tracked_victim(victim),
            newly_confirmed=confirmed and not was_confirmed,
        )

    def attacker(self, address: str) -> dict[str, Any] | None:
        stats = self._attackers.get(address)
        return stats.to_record() if stats else None

    def victim(self, address: str) -> dict[str, Any] | None:
        stats = self._victims.get(address)
        return stats.to_record() if stats else None

    def attacker_timestamps(self, address: str) -> list[float]:
        stats = self._attackers.get(address)
        return list(stats.timestamps) if stats else []

    def potential_attackers(self) -> list[dict[str, Any]]:
        """Every sender of at least one dust transfer."""
        return [s.to_record() for s in self._attackers.values()]

    def potential_victims(self) -> list[dict[str, Any]]:
        return [s.to_record() for s in self._victims.values()]

    def confirmed_attackers(self) -> list[dict[str, Any]]:
        return [s.to_record() for s in self._attackers.values() if self.is_confirmed_attacker(s)]

    def tracked_victims(self) -> list[dict[str, Any]]:
        return [s.to_record() for s in self._victims.values() if self.is_tracked_victim(s)]

    def dust_counts(self, address: str) -> tuple[int, int]:
        """(dust transfers sent, dust transfers received) for address."""
        sent = self._attackers.get(address)
        received = self._victims.get(address)
        return (
            sent.small_transfers_count if sent else 0,
            received.dust_transactions_count if received else 0,
        )

    def temporal_pattern(self, address: str, time_window: float) -> TemporalPattern:
        return analyze_temporal(self.attacker_timestamps(address), time_window)

    def suspicious_patterns(self, time_window: float) -> dict[str, TemporalPattern]:
        """Temporal patterns of confirmed attackers flagged as suspicious."""
        out: dict[str, TemporalPattern] = {}
        for address, stats in self._attackers.items():
            if not self.is_confirmed_attacker(stats):
                continue
            pattern = analyze_temporal(stats.timestamps, time_window)
            if pattern.is_suspicious:
                out[address] = pattern
        return out

    def snapshot(self) -> dict[str, list[dict[str, Any]]]:
        return {
            "attackers": self.potential_attackers(),
            "victims": self.potential_victims(),
        }
