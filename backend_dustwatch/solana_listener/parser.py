"""
Solana transaction parser: jsonParsed getTransaction payloads to Transfer.

Purely structural; no dust or risk logic. Recognises:
- system program `transfer` (native SOL, lamports converted to SOL),
- spl-token `transferChecked` (token type = mint, ui amount),
- spl-memo instructions (memo text).
When a transaction carries several transfer instructions the last one wins.
"""

from __future__ import annotations

from typing import Any

from backend_dustwatch.dustwatch_logging import get_logger
from backend_dustwatch.solana_listener.models import (
    LAMPORTS_PER_SOL,
    NATIVE_TOKEN,
    SignatureInfo,
    Transfer,
)

logger = get_logger(__name__)

SYSTEM_PROGRAM = "system"
SPL_TOKEN_PROGRAM = "spl-token"
SPL_MEMO_PROGRAM = "spl-memo"
UNKNOWN_SPL_TOKEN = "Unknown SPL"


def _instructions(raw: dict[str, Any]) -> list[dict[str, Any]]:
    tx = raw.get("transaction")
    if not isinstance(tx, dict):
        return []
    message = tx.get("message") or {}
    instructions = message.get("instructions") or []
    return [ix for ix in instructions if isinstance(ix, dict)]


def _signature_of(raw: dict[str, Any]) -> str | None:
    tx = raw.get("transaction") or {}
    sigs = tx.get("signatures") if isinstance(tx, dict) else None
    if sigs and isinstance(sigs, list):
        return str(sigs[0])
    return None


def parse_transfer(
    raw: dict[str, Any] | None,
    signature_info: SignatureInfo | None = None,
) -> Transfer | None:
    """
    Build a Transfer from one jsonParsed transaction.

    signature_info (from getSignaturesForAddress) supplies signature, slot and
    block time when the payload lacks them. Returns None when the payload is
    empty or has no recognised transfer instruction.
    """
    if not raw or not isinstance(raw, dict):
        return None

    signature = signature_info.signature if signature_info else _signature_of(raw)
    if not signature:
        logger.debug("parser_missing_signature")
        return None

    meta = raw.get("meta") or {}
    slot = raw.get("slot")
    if slot is None and signature_info is not None:
        slot = signature_info.slot
    block_time = raw.get("blockTime")
    if block_time is None and signature_info is not None:
        block_time = signature_info.block_time

    sender: str | None = None
    recipient: str | None = None
    amount = 0.0
    token_type = NATIVE_TOKEN
    memo: str | None = None

    for ix in _instructions(raw):
        program = ix.get("program")
        parsed = ix.get("parsed")
        if not parsed:
            continue
        if program == SYSTEM_PROGRAM and isinstance(parsed, dict) and parsed.get("type") == "transfer":
            info = parsed.get("info") or {}
            sender = info.get("source")
            recipient = info.get("destination")
            amount = int(info.get("lamports") or 0) / LAMPORTS_PER_SOL
            token_type = NATIVE_TOKEN
        elif program == SPL_TOKEN_PROGRAM and isinstance(parsed, dict) and parsed.get("type") == "transferChecked":
            info = parsed.get("info") or {}
            sender = info.get("source")
            recipient = info.get("destination")
            token_amount = info.get("tokenAmount") or {}
            amount = float(token_amount.get("uiAmount") or 0)
            token_type = info.get("mint") or UNKNOWN_SPL_TOKEN
        elif program == SPL_MEMO_PROGRAM:
            memo = parsed if isinstance(parsed, str) else str(parsed)

    if not sender or not recipient:
        return None

    return Transfer(
        signature=signature,
        timestamp=int(block_time or 0),
        slot=int(slot or 0),
        success=meta.get("err") is None,
        sender=sender,
        recipient=recipient,
        amount=amount,
        fee=int(meta.get("fee") or 0) / LAMPORTS_PER_SOL,
        token_type=token_type,
        memo=memo,
    )
