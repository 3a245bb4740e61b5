"""
Dust predicate.

A transfer is dust when it moves the native token and its amount is strictly
between 0 and the active dust threshold. The verdict is taken once, at
ingestion, with the thresholds active at that moment; later threshold updates
never reclassify past transfers.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from backend_dustwatch.analytics.thresholds import Thresholds
from backend_dustwatch.solana_listener.models import NATIVE_TOKEN, Transfer


def is_dust(transfer: Transfer, thresholds: Thresholds | float) -> bool:
    """True iff transfer is a native-token transfer with 0 < amount < dust threshold."""
    limit = thresholds.dust_amount_threshold if isinstance(thresholds, Thresholds) else float(thresholds)
    return transfer.token_type == NATIVE_TOKEN and 0 < transfer.amount < limit


@dataclass(frozen=True)
class ClassifiedTransfer:
    """A transfer with its dust verdict and the threshold it was judged against."""

    transfer: Transfer
    is_dust: bool
    dust_threshold: float
    is_potential_poisoning: bool = False
    is_scam_url: bool = False
    similar_to: tuple[str, ...] = field(default_factory=tuple)
    """Known addresses the recipient looks like (when flagged as poisoning)."""

    @property
    def signature(self) -> str:
        return self.transfer.signature

    def to_dict(self) -> dict[str, Any]:
        out = self.transfer.to_dict()
        out.update(
            {
                "is_dust": self.is_dust,
                "dust_threshold": self.dust_threshold,
                "is_potential_poisoning": self.is_potential_poisoning,
                "is_scam_url": self.is_scam_url,
                "similar_to": list(self.similar_to),
            }
        )
        return out


def classify(transfer: Transfer, thresholds: Thresholds) -> ClassifiedTransfer:
    """Dust verdict for transfer under thresholds; poisoning flags are filled in by the pipeline."""
    return ClassifiedTransfer(
        transfer=transfer,
        is_dust=is_dust(transfer, thresholds),
        dust_threshold=thresholds.dust_amount_threshold,
    )
