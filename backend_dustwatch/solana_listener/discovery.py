"""
Active-address discovery from recent blocks.

Walks the most recent finalized blocks, counts how often each account key
appears, and keeps the busiest addresses as investigation candidates.
Well-known program accounts are skipped.
"""

from __future__ import annotations

import time
from collections import Counter
from typing import Callable, Protocol

from backend_dustwatch.core.exceptions import UpstreamError
from backend_dustwatch.dustwatch_logging import get_logger

logger = get_logger(__name__)

DEFAULT_BLOCKS_TO_ANALYZE = 50
DEFAULT_HIGH_ACTIVITY = 5
DEFAULT_MAX_ADDRESSES = 200

PROGRAM_ACCOUNTS = frozenset(
    {
        "11111111111111111111111111111111",
        "ComputeBudget111111111111111111111111111111",
        "TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA",
        "TokenzQdBNbLqP5VEhdkAS6EPFLC1PHnBqCXEpPxuEb",
        "ATokenGPvbdGVxr1b2hvZbsiqW5xWH25efTNsLJA8knL",
        "MemoSq4gqABAXKb96qnH8TysNcWxMyWCqXgDLGmfcHr",
        "Vote111111111111111111111111111111111111111",
        "SysvarC1ock11111111111111111111111111111111",
        "SysvarRent111111111111111111111111111111111",
    }
)


class BlockSource(Protocol):
    def latest_slot(self) -> int: ...

    def block_account_keys(self, slot: int) -> list[list[str]]: ...


def find_active_addresses(
    source: BlockSource,
    *,
    blocks: int = DEFAULT_BLOCKS_TO_ANALYZE,
    high_activity: int = DEFAULT_HIGH_ACTIVITY,
    max_addresses: int = DEFAULT_MAX_ADDRESSES,
    block_delay_sec: float = 0.0,
    sleep: Callable[[float], None] = time.sleep,
) -> list[str]:
    """
    Return up to max_addresses addresses seen in at least high_activity
    transactions over the last `blocks` slots, busiest first (ties keep first-seen order).

    A block that fails to load is logged and skipped.
    """
    start_slot = source.latest_slot()
    counts: Counter[str] = Counter()
    scanned = 0
    for offset in range(max(0, blocks)):
        slot = start_slot - offset
        if slot < 0:
            break
        try:
            txs = source.block_account_keys(slot)
        except UpstreamError as e:
            logger.warning("discovery_block_failed", slot=slot, error=str(e))
            continue
        scanned += 1
        for keys in txs:
            for key in keys:
                if key and key not in PROGRAM_ACCOUNTS:
                    counts[key] += 1
        if block_delay_sec > 0:
            sleep(block_delay_sec)

    active = [addr for addr, n in counts.most_common() if n >= high_activity]
    logger.info(
        "discovery_done",
        start_slot=start_slot,
        blocks_scanned=scanned,
        unique_addresses=len(counts),
        active_addresses=len(active),
    )
    return active[:max_addresses]
