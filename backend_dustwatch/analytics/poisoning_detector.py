"""
Address-poisoning detection.

Poisoning attacks plant a look-alike of an address the victim already uses, so
the victim later copies the wrong one from history. The detector finds
look-alikes in a known-address pool (similarity >= similarity_threshold,
default 0.8) and scores how legitimate the address under test looks compared
with them:

    start 0.5
    +0.15 older than the oldest look-alike | -0.15 newer by more than 30 days
    +0.10 bidirectional history            | -0.05 incoming only
    +0.10 volume > 0.1 SOL                 | -0.10 volume <= 0.001 SOL
    +0.20 known label
    +0.05 at least 3 transactions
    clamp to [0, 1]; poisoned below 0.6

Address facts (first seen, counts, volume, labels) come from AddressBook, fed
by the ingestion path and an optional JSON label file.
"""

from __future__ import annotations

import json
import os
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Iterable

from backend_dustwatch.analytics.similarity import (
    SimilarityResult,
    bounded_levenshtein,
    similarity,
    similarity_upper_bound,
)
from backend_dustwatch.dustwatch_logging import get_logger
from backend_dustwatch.solana_listener.models import Transfer

logger = get_logger(__name__)

DEFAULT_SIMILARITY_THRESHOLD = 0.8
LEGITIMACY_THRESHOLD = 0.6
MONITOR_THRESHOLD = 0.7
BLOCK_SCORE_BELOW = 0.3
BLOCK_CONFIDENCE_ABOVE = 0.7
NEUTRAL_SCORE = 0.5

REFERENCE_DUST_AMOUNT = 0.001  # SOL
SUBSTANTIAL_VOLUME = REFERENCE_DUST_AMOUNT * 100
MIN_TRANSACTION_COUNT = 3
AGE_PENALTY_SEC = 30 * 24 * 3600
CONFIDENCE_TX_SATURATION = 10

AGE_DELTA = 0.15
BIDIRECTIONAL_BONUS = 0.10
INCOMING_ONLY_PENALTY = 0.05
VOLUME_DELTA = 0.10
LABEL_BONUS = 0.20
TX_COUNT_BONUS = 0.05

GROUP_DISTANCE_CUTOFF = 3
GROUP_TIME_GAP_SEC = 7 * 24 * 3600
GROUP_VOLUME_RATIO = 10
GROUP_CONFIDENCE_TX_SATURATION = 20
GROUP_LIKELIHOOD_THRESHOLD = 0.5

DEFAULT_LABELS_PATH = Path(__file__).resolve().parent.parent / "data" / "address_labels.json"
_SCORE_EPSILON = 1e-9


class SuggestedAction(str, Enum):
    BLOCK = "block"
    WARN = "warn"
    MONITOR = "monitor"
    SAFE = "safe"


class WarningLevel(str, Enum):
    NONE = "none"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


@dataclass
class AddressInfo:
    """On-chain facts about one address, as far as ingestion has seen."""

    address: str
    first_seen: float
    last_seen: float
    incoming_transaction_count: int = 0
    outgoing_transaction_count: int = 0
    total_transaction_volume: float = 0.0
    """Native SOL moved in either direction."""
    is_labeled: bool = False
    label: str | None = None

    @property
    def transaction_count(self) -> int:
        return self.incoming_transaction_count + self.outgoing_transaction_count

    @property
    def is_bidirectional(self) -> bool:
        return self.incoming_transaction_count > 0 and self.outgoing_transaction_count > 0


def load_address_labels(path: str | Path | None = None) -> dict[str, str]:
    """
    Load known address labels from JSON: either {address: label} or a list of
    addresses (labelled "known"). Returns {} when missing or unreadable.
    """
    path_str = str(path or os.getenv("ADDRESS_LABELS_PATH", "").strip() or DEFAULT_LABELS_PATH)
    label_path = Path(path_str)
    if not label_path.is_file():
        logger.debug("address_labels_missing", path=path_str)
        return {}
    try:
        with open(label_path, encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, ValueError) as e:
        logger.warning("address_labels_load_failed", path=path_str, error=str(e))
        return {}
    if isinstance(data, dict):
        return {str(k).strip(): str(v) for k, v in data.items() if k}
    if isinstance(data, list):
        return {str(a).strip(): "known" for a in data if a}
    return {}


class AddressBook:
    """
    Incremental AddressInfo registry. Insertion order of first appearance is
    the known-address pool order.
    """

    def __init__(
        self,
        labels: dict[str, str] | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._infos: dict[str, AddressInfo] = {}
        self._labels = dict(labels or {})
        self._clock = clock

    def __contains__(self, address: object) -> bool:
        return address in self._infos

    def __len__(self) -> int:
        return len(self._infos)

    def set_label(self, address: str, label: str) -> None:
        self._labels[address] = label
        info = self._infos.get(address)
        if info is not None:
            info.is_labeled = True
            info.label = label

    def _touch(self, address: str, timestamp: float) -> AddressInfo:
        info = self._infos.get(address)
        if info is None:
            label = self._labels.get(address)
            info = AddressInfo(
                address=address,
                first_seen=timestamp,
                last_seen=timestamp,
                is_labeled=label is not None,
                label=label,
            )
            self._infos[address] = info
        else:
            info.first_seen = min(info.first_seen, timestamp)
            info.last_seen = max(info.last_seen, timestamp)
        return info

    def record_transfer(self, transfer: Transfer) -> None:
        sender = self._touch(transfer.sender, transfer.timestamp)
        recipient = self._touch(transfer.recipient, transfer.timestamp)
        sender.outgoing_transaction_count += 1
        recipient.incoming_transaction_count += 1
        if transfer.is_native:
            sender.total_transaction_volume += transfer.amount
            recipient.total_transaction_volume += transfer.amount

    def get(self, address: str) -> AddressInfo:
        """Known info, or an empty record first seen now."""
        info = self._infos.get(address)
        if info is not None:
            return info
        now = self._clock()
        label = self._labels.get(address)
        return AddressInfo(
            address=address,
            first_seen=now,
            last_seen=now,
            is_labeled=label is not None,
            label=label,
        )

    def known_addresses(self) -> list[str]:
        return list(self._infos)


@dataclass
class SimilarAddress:
    address: str
    similarity_score: float
    is_likely_legitimate: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "address": self.address,
            "similarity_score": self.similarity_score,
            "is_likely_legitimate": self.is_likely_legitimate,
        }


@dataclass
class AddressClassification:
    address: str
    is_potentially_poisoned: bool
    legitimacy_score: float
    confidence: float
    suggested_action: SuggestedAction
    similar_addresses: list[SimilarAddress] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "address": self.address,
            "is_potentially_poisoned": self.is_potentially_poisoned,
            "legitimacy_score": self.legitimacy_score,
            "confidence": self.confidence,
            "suggested_action": self.suggested_action.value,
            "similar_addresses": [s.to_dict() for s in self.similar_addresses],
        }


@dataclass
class AddressValidation:
    """Pre-send check of a selected recipient against the user's history."""

    is_valid: bool
    warning_level: WarningLevel
    message: str | None = None
    suggested_address: str | None = None
    similar_addresses: list[SimilarAddress] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "is_valid": self.is_valid,
            "warning_level": self.warning_level.value,
            "message": self.message,
            "suggested_address": self.suggested_address,
            "similar_addresses": [s.to_dict() for s in self.similar_addresses],
        }


@dataclass
class AddressGroup:
    """Mutually similar addresses and their poisoning assessment."""

    addresses: list[str]
    oldest_address: str
    newest_address: str
    average_similarity: float
    is_potential_poisoning_group: bool
    confidence: float
    poisoning_likelihood: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "addresses": list(self.addresses),
            "oldest_address": self.oldest_address,
            "newest_address": self.newest_address,
            "average_similarity": self.average_similarity,
            "is_potential_poisoning_group": self.is_potential_poisoning_group,
            "confidence": self.confidence,
            "poisoning_likelihood": self.poisoning_likelihood,
        }


def is_address_likely_legitimate(info: AddressInfo) -> bool:
    """Labeled, or at least two of: bidirectional, substantial volume, >= 3 transactions."""
    if info.is_labeled:
        return True
    factors = sum(
        (
            info.is_bidirectional,
            info.total_transaction_volume > SUBSTANTIAL_VOLUME,
            info.transaction_count >= MIN_TRANSACTION_COUNT,
        )
    )
    return factors >= 2


def _suggested_action(score: float, confidence: float) -> SuggestedAction:
    if score < BLOCK_SCORE_BELOW and confidence > BLOCK_CONFIDENCE_ABOVE:
        return SuggestedAction.BLOCK
    if score < LEGITIMACY_THRESHOLD:
        return SuggestedAction.WARN
    if score < MONITOR_THRESHOLD:
        return SuggestedAction.MONITOR
    return SuggestedAction.SAFE


class _UnionFind:
    def __init__(self, size: int) -> None:
        self._parent = list(range(size))

    def find(self, i: int) -> int:
        while self._parent[i] != i:
            self._parent[i] = self._parent[self._parent[i]]
            i = self._parent[i]
        return i

    def union(self, i: int, j: int) -> None:
        ri, rj = self.find(i), self.find(j)
        if ri != rj:
            # Lower index stays root so groups list in input order
            if ri < rj:
                self._parent[rj] = ri
            else:
                self._parent[ri] = rj


class PoisoningDetector:
    def __init__(
        self,
        address_book: AddressBook | None = None,
        similarity_threshold: float = DEFAULT_SIMILARITY_THRESHOLD,
    ) -> None:
        self.address_book = address_book or AddressBook()
        self.similarity_threshold = similarity_threshold

    def similar_addresses(self, target: str, pool: Iterable[str]) -> list[SimilarityResult]:
        """Pool entries scoring >= similarity_threshold against target, best first."""
        results: list[SimilarityResult] = []
        for candidate in pool:
            if candidate == target:
                continue
            if similarity_upper_bound(target, candidate) + _SCORE_EPSILON < self.similarity_threshold:
                continue
            result = similarity(target, candidate)
            if result.similarity_score >= self.similarity_threshold:
                results.append(result)
        results.sort(key=lambda r: r.similarity_score, reverse=True)
        return results

    def check_recipient(self, recipient: str, pool: Iterable[str] | None = None) -> list[SimilarityResult]:
        """Look-alikes of recipient among known addresses (ingestion-time poisoning check)."""
        candidates = self.address_book.known_addresses() if pool is None else pool
        return self.similar_addresses(recipient, candidates)

    def classify(self, address: str, pool: Iterable[str]) -> AddressClassification:
        similar = self.similar_addresses(address, pool)
        if not similar:
            return AddressClassification(
                address=address,
                is_potentially_poisoned=False,
                legitimacy_score=1.0,
                confidence=1.0,
                suggested_action=SuggestedAction.SAFE,
            )

        info = self.address_book.get(address)
        similar_infos = sorted(
            ((s, self.address_book.get(s.address_b)) for s in similar),
            key=lambda pair: pair[1].first_seen,
        )
        oldest = similar_infos[0][1]

        score = NEUTRAL_SCORE
        if info.first_seen < oldest.first_seen:
            score += AGE_DELTA
        elif info.first_seen - oldest.first_seen > AGE_PENALTY_SEC:
            score -= AGE_DELTA

        if info.is_bidirectional:
            score += BIDIRECTIONAL_BONUS
        elif info.incoming_transaction_count > 0 and info.outgoing_transaction_count == 0:
            score -= INCOMING_ONLY_PENALTY

        if info.total_transaction_volume > SUBSTANTIAL_VOLUME:
            score += VOLUME_DELTA
        elif info.total_transaction_volume <= REFERENCE_DUST_AMOUNT:
            score -= VOLUME_DELTA

        if info.is_labeled:
            score += LABEL_BONUS
        if info.transaction_count >= MIN_TRANSACTION_COUNT:
            score += TX_COUNT_BONUS

        score = max(0.0, min(1.0, score))
        data_factor = min(1.0, info.transaction_count / CONFIDENCE_TX_SATURATION)
        sharpness = abs(score - NEUTRAL_SCORE) * 2
        confidence = max(0.0, min(1.0, (data_factor + sharpness) / 2))

        classification = AddressClassification(
            address=address,
            is_potentially_poisoned=score < LEGITIMACY_THRESHOLD,
            legitimacy_score=score,
            confidence=confidence,
            suggested_action=_suggested_action(score, confidence),
            similar_addresses=[
                SimilarAddress(
                    address=other.address,
                    similarity_score=result.similarity_score,
                    is_likely_legitimate=is_address_likely_legitimate(other),
                )
                for result, other in similar_infos
            ],
        )
        if classification.is_potentially_poisoned:
            logger.info(
                "poisoning_suspected",
                address=address,
                legitimacy_score=score,
                confidence=confidence,
                suggested_action=classification.suggested_action.value,
                similar_count=len(similar),
            )
        return classification

    def validate_transaction_address(self, selected: str, history: Iterable[str]) -> AddressValidation:
        """Warn before sending to selected when it looks like a poisoned copy of a history entry."""
        classification = self.classify(selected, history)
        similar = classification.similar_addresses
        if not similar:
            return AddressValidation(is_valid=True, warning_level=WarningLevel.NONE)

        legitimate = sorted(
            (s for s in similar if s.is_likely_legitimate),
            key=lambda s: s.similarity_score,
            reverse=True,
        )
        if classification.is_potentially_poisoned:
            if legitimate:
                return AddressValidation(
                    is_valid=False,
                    warning_level=WarningLevel.HIGH,
                    message=(
                        "This address is similar to another address you have used more frequently. "
                        "This could be an address poisoning attempt."
                    ),
                    suggested_address=legitimate[0].address,
                    similar_addresses=similar,
                )
            return AddressValidation(
                is_valid=False,
                warning_level=WarningLevel.MEDIUM,
                message=(
                    "This address is similar to others in your history but has suspicious "
                    "characteristics. Verify it before sending funds."
                ),
                similar_addresses=similar,
            )
        if classification.legitimacy_score < MONITOR_THRESHOLD:
            return AddressValidation(
                is_valid=True,
                warning_level=WarningLevel.LOW,
                message="This address is similar to others in your history. Verify it is the intended recipient.",
                similar_addresses=similar,
            )
        return AddressValidation(is_valid=True, warning_level=WarningLevel.NONE)

    def assess_group(self, infos: list[AddressInfo]) -> tuple[bool, float, float]:
        """
        (is_potential_poisoning, confidence, likelihood) for a group of look-alikes.

        Each newer member is compared with the oldest on: first-seen gap > 7 days,
        oldest volume > 10x newer, oldest bidirectional but newer not, and (only
        when the oldest is labeled) newer unlabeled.
        """
        if len(infos) < 2:
            return False, 1.0, 0.0
        ordered = sorted(infos, key=lambda i: i.first_seen)
        oldest, newer = ordered[0], ordered[1:]

        factors = 0
        applicable = 0
        for member in newer:
            applicable += 3
            if member.first_seen - oldest.first_seen > GROUP_TIME_GAP_SEC:
                factors += 1
            if oldest.total_transaction_volume > GROUP_VOLUME_RATIO * member.total_transaction_volume:
                factors += 1
            if oldest.is_bidirectional and not member.is_bidirectional:
                factors += 1
            if oldest.is_labeled:
                applicable += 1
                if not member.is_labeled:
                    factors += 1

        likelihood = factors / applicable if applicable else 0.0
        total_tx = sum(i.transaction_count for i in ordered)
        data_factor = min(1.0, total_tx / GROUP_CONFIDENCE_TX_SATURATION)
        confidence = (data_factor + abs(likelihood - 0.5) * 2) / 2
        return likelihood > GROUP_LIKELIHOOD_THRESHOLD, max(0.0, min(1.0, confidence)), likelihood

    def group_similar_addresses(self, addresses: Iterable[str]) -> list[AddressGroup]:
        """
        Union addresses whose edit distance is below GROUP_DISTANCE_CUTOFF,
        transitively, and assess every group of two or more.
        """
        members = list(dict.fromkeys(addresses))
        uf = _UnionFind(len(members))
        for i, first in enumerate(members):
            for j in range(i + 1, len(members)):
                if bounded_levenshtein(first, members[j], GROUP_DISTANCE_CUTOFF - 1) < GROUP_DISTANCE_CUTOFF:
                    uf.union(i, j)

        buckets: dict[int, list[str]] = {}
        for i, address in enumerate(members):
            buckets.setdefault(uf.find(i), []).append(address)

        groups: list[AddressGroup] = []
        for group in buckets.values():
            if len(group) < 2:
                continue
            infos = [self.address_book.get(a) for a in group]
            ordered = sorted(infos, key=lambda i: i.first_seen)
            pair_scores = [
                similarity(group[i], group[j]).similarity_score
                for i in range(len(group))
                for j in range(i + 1, len(group))
            ]
            is_poisoning, confidence, likelihood = self.assess_group(infos)
            groups.append(
                AddressGroup(
                    addresses=group,
                    oldest_address=ordered[0].address,
                    newest_address=ordered[-1].address,
                    average_similarity=sum(pair_scores) / len(pair_scores),
                    is_potential_poisoning_group=is_poisoning,
                    confidence=confidence,
                    poisoning_likelihood=likelihood,
                )
            )
        return groups
