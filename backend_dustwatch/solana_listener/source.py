"""
Transaction sources for the ingestion path.

TransactionSource is the narrow interface the pipeline consumes; RpcTransactionSource
binds it to Solana JSON-RPC over httpx, rotating round-robin across the configured
endpoints (one per Helius key). Rate-limit and transport failures surface as
UpstreamError subclasses so callers can retry with fetch_with_retry.
"""

from __future__ import annotations

import itertools
import threading
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, TypeVar

import httpx

from backend_dustwatch.config.env import mask_rpc_url
from backend_dustwatch.core.exceptions import (
    MalformedResponseError,
    RateLimitedError,
    UpstreamError,
)
from backend_dustwatch.dustwatch_logging import get_logger
from backend_dustwatch.solana_listener.models import SignatureInfo, Transfer
from backend_dustwatch.solana_listener.parser import parse_transfer

logger = get_logger(__name__)

T = TypeVar("T")

DEFAULT_MAX_RETRIES = 3
DEFAULT_BASE_DELAY_SEC = 1.0
DEFAULT_TIMEOUT_SEC = 30.0
DEFAULT_SIGNATURES_LIMIT = 200
HTTP_TOO_MANY_REQUESTS = 429
# Slot skipped / block not available (long-term storage)
SKIPPED_SLOT_ERROR_CODES = (-32007, -32009, -32004)


class RpcError(MalformedResponseError):
    """JSON-RPC error object returned by the node."""

    def __init__(self, method: str, message: str, code: int | None = None) -> None:
        super().__init__(f"Solana RPC error in {method}: {message} (code={code})")
        self.method = method
        self.code = code


def _is_rate_limit_message(message: str) -> bool:
    text = message.lower()
    return "429" in text or "too many requests" in text or "rate limit" in text


def fetch_with_retry(
    call: Callable[[], T],
    *,
    max_retries: int = DEFAULT_MAX_RETRIES,
    base_delay: float = DEFAULT_BASE_DELAY_SEC,
    sleep: Callable[[float], None] = time.sleep,
    description: str = "rpc_call",
) -> T:
    """
    Run call(); on UpstreamError wait base_delay * 2**attempt and try again.

    max_retries is the total number of attempts. The last UpstreamError is
    re-raised when every attempt failed; other exceptions propagate immediately.
    """
    attempts = max(1, max_retries)
    for attempt in range(attempts):
        try:
            return call()
        except UpstreamError as e:
            if attempt + 1 >= attempts:
                logger.warning(
                    "upstream_give_up",
                    call=description,
                    attempts=attempts,
                    error=str(e),
                )
                raise
            delay = base_delay * (2 ** attempt)
            logger.info(
                "upstream_retry",
                call=description,
                attempt=attempt + 1,
                max_retries=attempts,
                delay_sec=delay,
                rate_limited=isinstance(e, RateLimitedError),
                error=str(e),
            )
            sleep(delay)
    raise AssertionError("unreachable")


class TransactionSource(ABC):
    """
    Source of signatures and transfers for an address.

    Implementations raise UpstreamError on transient failures; retry and
    backoff are the caller's job.
    """

    @abstractmethod
    def fetch_signatures_for(self, address: str, limit: int = DEFAULT_SIGNATURES_LIMIT) -> list[SignatureInfo]:
        """Most recent signatures involving address, newest first."""
        ...

    @abstractmethod
    def fetch_transaction(
        self,
        signature: str,
        signature_info: SignatureInfo | None = None,
    ) -> Transfer | None:
        """The transfer carried by signature, or None if it has none."""
        ...


class RpcTransactionSource(TransactionSource):
    """
    Solana JSON-RPC transaction source (httpx, sync).

    Endpoints are used round-robin, one per request, so several API keys share
    the load. Thread-safe: the pipeline's worker pool calls it concurrently.
    """

    def __init__(
        self,
        endpoints: list[str],
        *,
        timeout_sec: float = DEFAULT_TIMEOUT_SEC,
        client: httpx.Client | None = None,
    ) -> None:
        endpoints = [e.strip().rstrip("/") for e in endpoints if e and e.strip()]
        if not endpoints:
            raise ValueError("endpoints must be non-empty")
        self._endpoints = endpoints
        self._cycle = itertools.cycle(endpoints)
        self._cycle_lock = threading.Lock()
        self._client = client or httpx.Client(timeout=httpx.Timeout(timeout_sec))
        self._owns_client = client is None
        self._request_id = itertools.count(1)

    @property
    def endpoints(self) -> list[str]:
        return list(self._endpoints)

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def _next_endpoint(self) -> str:
        with self._cycle_lock:
            return next(self._cycle)

    def _rpc(self, method: str, params: list[Any]) -> Any:
        """Perform one JSON-RPC call; map failures onto the upstream error taxonomy."""
        endpoint = self._next_endpoint()
        body = {
            "jsonrpc": "2.0",
            "id": next(self._request_id),
            "method": method,
            "params": params,
        }
        try:
            resp = self._client.post(endpoint, json=body)
        except httpx.TimeoutException as e:
            raise UpstreamError(f"{method} timed out on {mask_rpc_url(endpoint)}") from e
        except httpx.TransportError as e:
            raise UpstreamError(f"{method} transport error: {e}") from e

        if resp.status_code == HTTP_TOO_MANY_REQUESTS:
            raise RateLimitedError(f"{method} rate limited (HTTP 429)")
        if resp.status_code >= 500:
            raise UpstreamError(f"{method} server error (HTTP {resp.status_code})")
        if resp.status_code >= 400:
            raise MalformedResponseError(f"{method} rejected (HTTP {resp.status_code})")
        try:
            data = resp.json()
        except ValueError as e:
            raise MalformedResponseError(f"{method} returned non-JSON body") from e
        if not isinstance(data, dict):
            raise MalformedResponseError(f"{method} returned unexpected payload")

        err = data.get("error")
        if err:
            message = str(err.get("message", err)) if isinstance(err, dict) else str(err)
            if _is_rate_limit_message(message):
                raise RateLimitedError(f"{method}: {message}")
            code = err.get("code") if isinstance(err, dict) else None
            raise RpcError(method, message, code)
        return data.get("result")

    def fetch_signatures_for(self, address: str, limit: int = DEFAULT_SIGNATURES_LIMIT) -> list[SignatureInfo]:
        result = self._rpc(
            "getSignaturesForAddress",
            [address, {"limit": max(1, min(limit, 1000)), "commitment": "finalized"}],
        )
        if result is None:
            return []
        if not isinstance(result, list):
            raise MalformedResponseError("getSignaturesForAddress result is not a list")
        infos: list[SignatureInfo] = []
        for item in result:
            if not isinstance(item, dict) or "signature" not in item:
                continue
            try:
                infos.append(SignatureInfo.from_rpc_item(item))
            except (KeyError, TypeError, ValueError) as e:
                logger.debug("source_skip_signature_item", error=str(e))
        return infos

    def fetch_transaction(
        self,
        signature: str,
        signature_info: SignatureInfo | None = None,
    ) -> Transfer | None:
        result = self._rpc(
            "getTransaction",
            [signature, {"encoding": "jsonParsed", "maxSupportedTransactionVersion": 0}],
        )
        if result is None:
            return None
        if not isinstance(result, dict):
            raise MalformedResponseError("getTransaction result is not an object")
        return parse_transfer(result, signature_info)

    def latest_slot(self) -> int:
        result = self._rpc("getSlot", [{"commitment": "finalized"}])
        if not isinstance(result, int):
            raise MalformedResponseError("getSlot result is not an integer")
        return result

    def block_account_keys(self, slot: int) -> list[list[str]]:
        """Account keys of every transaction in a block; empty for skipped slots."""
        try:
            result = self._rpc(
                "getBlock",
                [
                    slot,
                    {
                        "encoding": "json",
                        "transactionDetails": "accounts",
                        "rewards": False,
                        "maxSupportedTransactionVersion": 0,
                    },
                ],
            )
        except RpcError as e:
            if e.code in SKIPPED_SLOT_ERROR_CODES:
                return []
            raise
        if not isinstance(result, dict):
            return []
        out: list[list[str]] = []
        for tx in result.get("transactions") or []:
            keys = ((tx or {}).get("transaction") or {}).get("accountKeys") or []
            out.append([k.get("pubkey") if isinstance(k, dict) else str(k) for k in keys if k])
        return out

