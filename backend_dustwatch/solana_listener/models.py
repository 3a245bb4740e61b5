"""
Data models for ingested Solana activity.

Transfer is the unit of work handed to the detection pipeline; it is immutable
once built and uniquely identified by its signature.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any

NATIVE_TOKEN = "SOL"
LAMPORTS_PER_SOL = 1_000_000_000


@dataclass(frozen=True)
class SignatureInfo:
    """
    Transaction signature info from getSignaturesForAddress.

    Mirrors Solana RPC response fields.
    """

    signature: str
    slot: int
    err: Any  # None if success
    block_time: int | None  # Unix seconds
    memo: str | None
    confirmation_status: str | None

    @classmethod
    def from_rpc_item(cls, item: dict[str, Any]) -> SignatureInfo:
        """Build from a single getSignaturesForAddress result item."""
        return cls(
            signature=item["signature"],
            slot=int(item["slot"]),
            err=item.get("err"),
            block_time=item.get("blockTime"),
            memo=item.get("memo"),
            confirmation_status=item.get("confirmationStatus"),
        )


@dataclass(frozen=True)
class Transfer:
    """
    One value transfer extracted from a transaction.

    Amounts are in whole tokens (SOL for native transfers, ui amount for SPL).
    """

    signature: str
    timestamp: int
    """Unix seconds from blockTime."""
    slot: int
    success: bool
    sender: str
    recipient: str
    amount: float
    fee: float
    """Transaction fee in SOL."""
    token_type: str = NATIVE_TOKEN
    """"SOL" for native transfers, mint address for SPL token transfers."""
    memo: str | None = None

    @property
    def is_native(self) -> bool:
        return self.token_type == NATIVE_TOKEN

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
