"""
Adaptive dust thresholds.

Recomputes the dust-amount, transfer-count and time-window thresholds from the
current network fee, cluster congestion and the distribution of recently seen
dust amounts:

    base        = network_fee * network_fee_multiplier
    adjustment  = 1 + 0.5 * congestion                  (congestion in [0, 1])
    statistical = 10th percentile of the last history_size dust amounts
    dust        = 0.6 * base * adjustment + 0.4 * statistical
    transfers   = max(min_transfer_count, round(base_count * (1 + 0.3 * congestion)))
    window      = max(min_time_window, round(base_window * (1 - 0.2 * congestion)))

Recomputation is rate limited to once per update_interval. Fee and congestion
failures fall back to fixed defaults with a warning; update() never raises.
"""

from __future__ import annotations

import math
import threading
import time
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, replace
from typing import Any, Callable, Iterable

from backend_dustwatch.dustwatch_logging import get_logger

logger = get_logger(__name__)

LAMPORTS_PER_SOL = 1_000_000_000

DEFAULT_DUST_AMOUNT_THRESHOLD = 0.001  # SOL
DEFAULT_TRANSFER_COUNT_THRESHOLD = 3
DEFAULT_TIME_WINDOW_SEC = 24 * 3600
DEFAULT_NETWORK_FEE_MULTIPLIER = 10.0
DEFAULT_UPDATE_INTERVAL_SEC = 3600
MIN_TIME_WINDOW_SEC = 3600
MIN_TRANSFER_COUNT = 2
DEFAULT_PERFORMANCE_SAMPLES = 10
# Assumed peak cluster throughput used to normalize congestion
DEFAULT_PEAK_TPS = 20_000.0
DEFAULT_HISTORY_SIZE = 1000
MIN_HISTORY_SAMPLES = 10
STATISTICAL_PERCENTILE = 0.1
FALLBACK_NETWORK_FEE = 0.000005  # SOL, one signature at 5000 lamports
FALLBACK_STATISTICAL_THRESHOLD = 0.001
FALLBACK_CONGESTION = 1.0
CONGESTION_HISTORY_SIZE = 24

BASE_WEIGHT = 0.6
STATISTICAL_WEIGHT = 0.4
CONGESTION_DUST_FACTOR = 0.5
CONGESTION_TRANSFER_FACTOR = 0.3
CONGESTION_WINDOW_FACTOR = 0.2


@dataclass
class ThresholdConfig:
    """Base values and tuning constants for the adaptive threshold engine."""

    dust_amount_threshold: float = DEFAULT_DUST_AMOUNT_THRESHOLD
    """Initial dust threshold in SOL, used until the first update."""
    transfer_count_threshold: int = DEFAULT_TRANSFER_COUNT_THRESHOLD
    """Base transfer count before congestion scaling."""
    time_window_threshold: int = DEFAULT_TIME_WINDOW_SEC
    """Base time window (seconds) before congestion scaling."""
    network_fee_multiplier: float = DEFAULT_NETWORK_FEE_MULTIPLIER
    update_interval: int = DEFAULT_UPDATE_INTERVAL_SEC
    """Minimum seconds between two recomputations."""
    min_time_window: int = MIN_TIME_WINDOW_SEC
    min_transfer_count: int = MIN_TRANSFER_COUNT
    performance_samples: int = DEFAULT_PERFORMANCE_SAMPLES
    peak_tps: float = DEFAULT_PEAK_TPS
    history_size: int = DEFAULT_HISTORY_SIZE
    min_history_samples: int = MIN_HISTORY_SAMPLES
    fallback_fee: float = FALLBACK_NETWORK_FEE
    fallback_statistical_threshold: float = FALLBACK_STATISTICAL_THRESHOLD
    fallback_congestion: float = FALLBACK_CONGESTION
    congestion_history_size: int = CONGESTION_HISTORY_SIZE


@dataclass(frozen=True)
class Thresholds:
    """Immutable snapshot of the thresholds in force."""

    dust_amount_threshold: float = DEFAULT_DUST_AMOUNT_THRESHOLD
    transfer_count_threshold: int = DEFAULT_TRANSFER_COUNT_THRESHOLD
    time_window_threshold: int = DEFAULT_TIME_WINDOW_SEC
    network_fee_multiplier: float = DEFAULT_NETWORK_FEE_MULTIPLIER
    last_update: float = 0.0
    """Unix seconds of the last recomputation; 0 before the first one."""
    network_fee: float | None = None
    congestion: float | None = None
    statistical_threshold: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "dust_amount_threshold": self.dust_amount_threshold,
            "transfer_count_threshold": self.transfer_count_threshold,
            "time_window_threshold": self.time_window_threshold,
            "network_fee_multiplier": self.network_fee_multiplier,
            "last_update": self.last_update,
            "network_fee": self.network_fee,
            "congestion": self.congestion,
            "statistical_threshold": self.statistical_threshold,
        }


class NetworkStatsProvider(ABC):
    """Network fee and throughput readings."""

    @abstractmethod
    def current_fee(self) -> float:
        """Fee in SOL for a minimal one-signature transfer."""
        ...

    @abstractmethod
    def recent_tps(self, limit: int) -> list[float]:
        """Transactions per second for the most recent `limit` performance samples."""
        ...


class SolanaNetworkStats(NetworkStatsProvider):
    """NetworkStatsProvider backed by solana-py's RPC client."""

    PROBE_LAMPORTS = 1000

    def __init__(self, rpc_url: str, client: Any = None) -> None:
        self._rpc_url = rpc_url
        self._client = client

    def _get_client(self) -> Any:
        if self._client is None:
            from solana.rpc.api import Client

            self._client = Client(self._rpc_url)
        return self._client

    def current_fee(self) -> float:
        """Price a self-transfer message with getFeeForMessage."""
        from solders.message import Message
        from solders.pubkey import Pubkey
        from solders.system_program import TransferParams, transfer

        client = self._get_client()
        blockhash = client.get_latest_blockhash().value.blockhash
        payer = Pubkey.new_unique()
        ix = transfer(TransferParams(from_pubkey=payer, to_pubkey=payer, lamports=self.PROBE_LAMPORTS))
        message = Message.new_with_blockhash([ix], payer, blockhash)
        lamports = client.get_fee_for_message(message).value
        if lamports is None:
            raise ValueError("getFeeForMessage returned no value")
        return lamports / LAMPORTS_PER_SOL

    def recent_tps(self, limit: int) -> list[float]:
        samples = self._get_client().get_recent_performance_samples(limit).value or []
        return [
            s.num_transactions / s.sample_period_secs
            for s in samples
            if getattr(s, "sample_period_secs", 0)
        ]


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


class AdaptiveThresholdEngine:
    """
    Owns the current Thresholds snapshot and the dust-amount history.

    record_dust_amount() is called from the ingestion path; update() from the
    periodic loop. Both are safe to call concurrently; readers get immutable
    snapshots via current().
    """

    def __init__(
        self,
        config: ThresholdConfig | None = None,
        stats: NetworkStatsProvider | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._config = config or ThresholdConfig()
        self._stats = stats
        self._clock = clock
        self._lock = threading.Lock()
        cfg = self._config
        self._current = Thresholds(
            dust_amount_threshold=cfg.dust_amount_threshold,
            transfer_count_threshold=cfg.transfer_count_threshold,
            time_window_threshold=cfg.time_window_threshold,
            network_fee_multiplier=cfg.network_fee_multiplier,
        )
        self._history: deque[float] = deque(maxlen=max(1, cfg.history_size))
        self._congestion_history: deque[float] = deque(maxlen=max(1, cfg.congestion_history_size))

    @property
    def config(self) -> ThresholdConfig:
        return self._config

    def current(self) -> Thresholds:
        return self._current

    def congestion_history(self) -> list[float]:
        with self._lock:
            return list(self._congestion_history)

    def record_dust_amount(self, amount: float) -> None:
        if amount > 0:
            with self._lock:
                self._history.append(float(amount))

    def load_history(self, amounts: Iterable[float]) -> None:
        """Seed the history (e.g. from the store's most recent dust amounts)."""
        with self._lock:
            for amount in amounts:
                if amount and amount > 0:
                    self._history.append(float(amount))

    def statistical_threshold(self) -> float:
        """10th percentile (sorted-index) of the history; fallback below min_history_samples."""
        with self._lock:
            amounts = sorted(self._history)
        if len(amounts) < self._config.min_history_samples:
            return self._config.fallback_statistical_threshold
        return amounts[int(len(amounts) * STATISTICAL_PERCENTILE)]

    def _network_fee(self) -> float:
        if self._stats is None:
            return self._config.fallback_fee
        try:
            fee = float(self._stats.current_fee())
            if fee <= 0:
                raise ValueError(f"non-positive fee {fee}")
            return fee
        except Exception as e:
            logger.warning("thresholds_fee_fallback", fallback=self._config.fallback_fee, error=str(e))
            return self._config.fallback_fee

    def _congestion(self) -> float:
        fallback = self._config.fallback_congestion
        if self._stats is None:
            return fallback
        try:
            tps = self._stats.recent_tps(self._config.performance_samples)
        except Exception as e:
            logger.warning("thresholds_congestion_fallback", fallback=fallback, error=str(e))
            return fallback
        if not tps:
            logger.warning("thresholds_congestion_fallback", fallback=fallback, error="no performance samples")
            return fallback
        average = sum(tps) / len(tps)
        return max(0.0, min(1.0, average / self._config.peak_tps))

    def update(self, force: bool = False) -> Thresholds:
        """
        Recompute thresholds unless the last update is younger than update_interval.
        Returns the thresholds in force afterwards; on any failure, the previous ones.
        """
        now = self._clock()
        previous = self._current
        if not force and previous.last_update and now - previous.last_update < self._config.update_interval:
            return previous
        try:
            cfg = self._config
            fee = self._network_fee()
            congestion = self._congestion()
            with self._lock:
                self._congestion_history.append(congestion)

            base = fee * cfg.network_fee_multiplier
            adjustment = 1 + CONGESTION_DUST_FACTOR * congestion
            statistical = self.statistical_threshold()
            dust = BASE_WEIGHT * base * adjustment + STATISTICAL_WEIGHT * statistical
            transfers = max(
                cfg.min_transfer_count,
                _round_half_up(cfg.transfer_count_threshold * (1 + CONGESTION_TRANSFER_FACTOR * congestion)),
            )
            window = max(
                cfg.min_time_window,
                _round_half_up(cfg.time_window_threshold * (1 - CONGESTION_WINDOW_FACTOR * congestion)),
            )
            updated = replace(
                previous,
                dust_amount_threshold=dust,
                transfer_count_threshold=transfers,
                time_window_threshold=window,
                network_fee_multiplier=cfg.network_fee_multiplier,
                last_update=now,
                network_fee=fee,
                congestion=congestion,
                statistical_threshold=statistical,
            )
        except Exception as e:
            logger.exception("thresholds_update_failed", error=str(e))
            return previous

        self._current = updated
        logger.info(
            "thresholds_updated",
            dust_amount_threshold=updated.dust_amount_threshold,
            transfer_count_threshold=updated.transfer_count_threshold,
            time_window_threshold=updated.time_window_threshold,
            congestion=congestion,
            network_fee=fee,
        )
        return updated

    def run_forever(self, stop_event: threading.Event, check_interval_sec: float | None = None) -> None:
        """Update periodically until stop_event is set. Never raises."""
        interval = check_interval_sec if check_interval_sec is not None else float(self._config.update_interval)
        logger.info("thresholds_loop_started", interval_sec=interval)
        while not stop_event.is_set():
            try:
                self.update()
            except Exception as e:
                logger.exception("thresholds_loop_error", error=str(e))
            stop_event.wait(interval)
        logger.info("thresholds_loop_stopped")
