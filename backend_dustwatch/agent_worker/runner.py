"""
Long-running ingestion service.

Each round: collect addresses (configured wallets plus active addresses found
in recent blocks), fetch their recent transactions with bounded concurrency,
feed every transfer into the detection pipeline, then investigate confirmed
attackers and the riskiest victims. The threshold engine and the alert
evaluator run as independent background loops. Exception isolation per
address; the service loop never crashes. Clean shutdown on SIGTERM /
KeyboardInterrupt: no new work is accepted and in-flight fetches finish.

Usage: python main.py
"""

from __future__ import annotations

import signal
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Any, Callable

from backend_dustwatch.agent_worker.pipeline import DetectionPipeline
from backend_dustwatch.alerts.engine import AlertEvaluator
from backend_dustwatch.alerts.sinks import (
    AlertSink,
    EmailAlertSink,
    LoggingAlertSink,
    MultiSink,
    WebhookAlertSink,
)
from backend_dustwatch.analytics.candidate_tracker import CandidateTracker
from backend_dustwatch.analytics.poisoning_detector import AddressBook, PoisoningDetector, load_address_labels
from backend_dustwatch.analytics.scam_urls import load_scam_url_blocklist
from backend_dustwatch.analytics.threat_intel import ThreatIntelClient
from backend_dustwatch.analytics.thresholds import AdaptiveThresholdEngine, SolanaNetworkStats
from backend_dustwatch.config.env import mask_rpc_url, require_rpc_endpoints
from backend_dustwatch.config.settings import ProcessingSettings, Settings
from backend_dustwatch.core.exceptions import PersistenceError, UpstreamError
from backend_dustwatch.database.store import SqlAlchemyStore
from backend_dustwatch.dustwatch_logging import get_logger
from backend_dustwatch.solana_listener.discovery import find_active_addresses
from backend_dustwatch.solana_listener.source import RpcTransactionSource, TransactionSource, fetch_with_retry

logger = get_logger(__name__)

MAX_INVESTIGATED_ADDRESSES = 20
MAX_INVESTIGATED_VICTIMS = 10
THREAD_JOIN_TIMEOUT_SEC = 5.0


@dataclass
class RoundResult:
    addresses: int = 0
    failed_addresses: int = 0
    transfers: int = 0
    dropped_transactions: int = 0


class IngestionRunner:
    """
    Fetches per-address transactions with a bounded worker pool and feeds the
    pipeline. One address failing never affects the others.
    """

    def __init__(
        self,
        source: TransactionSource,
        pipeline: DetectionPipeline,
        config: ProcessingSettings | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._source = source
        self._pipeline = pipeline
        self._config = config or ProcessingSettings()
        self._sleep = sleep
        self._stopping = threading.Event()

    @property
    def stopping(self) -> bool:
        return self._stopping.is_set()

    def stop(self) -> None:
        """Stop accepting new addresses; work already running finishes."""
        self._stopping.set()

    def _retry(self, call: Callable[[], Any], description: str) -> Any:
        return fetch_with_retry(
            call,
            max_retries=self._config.max_retries,
            base_delay=self._config.initial_backoff_sec,
            sleep=self._sleep,
            description=description,
        )

    def process_address(self, address: str) -> tuple[int, int]:
        """
        Ingest the recent transactions of one address.
        Returns (transfers ingested, transactions dropped after retries).
        Raises UpstreamError when the signature list itself cannot be fetched.
        """
        infos = self._retry(
            lambda: self._source.fetch_signatures_for(address, self._config.signatures_limit),
            "getSignaturesForAddress",
        )
        ingested = 0
        dropped = 0
        for info in infos:
            if self._pipeline.is_ingested(info.signature):
                continue
            try:
                transfer = self._retry(
                    lambda info=info: self._source.fetch_transaction(info.signature, info),
                    "getTransaction",
                )
            except UpstreamError as e:
                dropped += 1
                logger.warning("transaction_dropped", address=address, signature=info.signature, error=str(e))
                continue
            if transfer is not None and self._pipeline.ingest(transfer) is not None:
                ingested += 1
            if self._config.request_delay_sec > 0:
                self._sleep(self._config.request_delay_sec)
        return ingested, dropped

    def _process_address_safe(self, address: str) -> tuple[bool, int, int]:
        if self._stopping.is_set():
            return True, 0, 0
        try:
            ingested, dropped = self.process_address(address)
            return True, ingested, dropped
        except Exception as e:
            logger.warning("ingest_address_failed", address=address, error=str(e), exc_info=True)
            return False, 0, 0

    def run_round(self, addresses: list[str]) -> RoundResult:
        result = RoundResult()
        members = list(dict.fromkeys(addresses))
        if not members or self._stopping.is_set():
            return result
        with ThreadPoolExecutor(max_workers=self._config.max_concurrency) as executor:
            futures = {executor.submit(self._process_address_safe, a): a for a in members}
            for fut in as_completed(futures):
                ok, ingested, dropped = fut.result()
                result.addresses += 1
                result.transfers += ingested
                result.dropped_transactions += dropped
                if not ok:
                    result.failed_addresses += 1
        return result


class PeriodicTask:
    """Runs target(stop_event) on a daemon thread; target owns its own timer."""

    def __init__(self, name: str, target: Callable[[threading.Event], None], stop_event: threading.Event) -> None:
        self.name = name
        self._target = target
        self._stop_event = stop_event
        self._thread = threading.Thread(target=self._run, name=name, daemon=True)

    def _run(self) -> None:
        try:
            self._target(self._stop_event)
        except Exception as e:
            logger.exception("periodic_task_crashed", task=self.name, error=str(e))

    def start(self) -> None:
        self._thread.start()

    def join(self, timeout: float | None = None) -> None:
        self._thread.join(timeout)

    def is_alive(self) -> bool:
        return self._thread.is_alive()


def investigation_targets(pipeline: DetectionPipeline) -> list[str]:
    """Confirmed attackers first, then the riskiest tracked victims; capped."""
    attackers = [a["address"] for a in pipeline.tracker.confirmed_attackers()]
    victims = sorted(pipeline.tracker.tracked_victims(), key=lambda v: v["risk_score"], reverse=True)
    targets = attackers + [v["address"] for v in victims[:MAX_INVESTIGATED_VICTIMS]]
    return list(dict.fromkeys(targets))[:MAX_INVESTIGATED_ADDRESSES]


def build_alert_sink(settings: Settings) -> AlertSink:
    sinks: list[AlertSink] = [LoggingAlertSink()]
    if settings.alert_webhook_url:
        sinks.append(WebhookAlertSink(settings.alert_webhook_url))
    if settings.smtp is not None:
        sinks.append(EmailAlertSink(settings.smtp))
    return MultiSink(sinks)


def build_pipeline(settings: Settings, store: SqlAlchemyStore, stats: SolanaNetworkStats | None) -> DetectionPipeline:
    thresholds = AdaptiveThresholdEngine(settings.thresholds, stats)
    try:
        thresholds.load_history(store.recent_dust_amounts(settings.thresholds.history_size))
    except PersistenceError as e:
        logger.warning("threshold_history_load_failed", error=str(e))
    detector = PoisoningDetector(
        AddressBook(load_address_labels(settings.labels_path)),
        similarity_threshold=settings.detection.similarity_threshold,
    )
    tracker = CandidateTracker(
        min_transfers=settings.detection.min_transfers,
        max_timestamps=settings.detection.max_timestamps_per_address,
    )
    return DetectionPipeline(
        thresholds,
        store,
        tracker=tracker,
        detector=detector,
        scam_blocklist=load_scam_url_blocklist(settings.scam_urls_path),
        risk_weights=settings.risk_weights,
    )


def _round_addresses(settings: Settings, source: RpcTransactionSource) -> list[str]:
    addresses = list(settings.wallets)
    try:
        addresses += find_active_addresses(
            source,
            blocks=settings.detection.blocks_to_analyze,
            high_activity=settings.detection.high_activity,
            max_addresses=settings.detection.max_addresses,
        )
    except UpstreamError as e:
        logger.warning("discovery_failed", error=str(e))
    return list(dict.fromkeys(addresses))


def run_service(settings: Settings) -> None:
    """
    Wire source, store, pipeline and background loops, then ingest until
    SIGTERM / KeyboardInterrupt. Raises ConfigurationError without RPC endpoints.
    """
    endpoints = settings.rpc_endpoints or require_rpc_endpoints()
    source = RpcTransactionSource(endpoints, timeout_sec=settings.processing.request_timeout_sec)
    store = SqlAlchemyStore(settings.database_url)
    store.init_db()
    pipeline = build_pipeline(settings, store, SolanaNetworkStats(endpoints[0]))
    runner = IngestionRunner(source, pipeline, settings.processing)
    evaluator = AlertEvaluator(store, build_alert_sink(settings), settings.alerts)
    threat_intel = ThreatIntelClient(settings.chainalysis_api_key, settings.trm_labs_api_key)

    stop_event = threading.Event()

    def request_shutdown(*args: Any, **kwargs: Any) -> None:
        stop_event.set()
        runner.stop()

    try:
        signal.signal(signal.SIGTERM, request_shutdown)
    except (AttributeError, ValueError):
        # Windows or not the main thread
        pass

    tasks = [
        PeriodicTask("thresholds", pipeline.thresholds.run_forever, stop_event),
        PeriodicTask("alerts", evaluator.run_forever, stop_event),
    ]
    for task in tasks:
        task.start()

    logger.info(
        "service_started",
        endpoints=[mask_rpc_url(e) for e in endpoints],
        wallets=len(settings.wallets),
        max_concurrency=settings.processing.max_concurrency,
        threat_intel=threat_intel.enabled,
    )

    cycle = 0
    try:
        while not stop_event.is_set():
            cycle += 1
            cycle_start = time.monotonic()
            try:
                addresses = _round_addresses(settings, source)
                result = runner.run_round(addresses)
                targets = investigation_targets(pipeline)
                report = pipeline.analyze(targets, threat_intel if threat_intel.enabled else None)
                logger.info(
                    "service_cycle_done",
                    cycle=cycle,
                    addresses=result.addresses,
                    failed_addresses=result.failed_addresses,
                    transfers=result.transfers,
                    dropped_transactions=result.dropped_transactions,
                    investigated=len(report.analyses),
                    duration_sec=round(time.monotonic() - cycle_start, 2),
                )
            except Exception as e:
                logger.exception("service_cycle_failed", cycle=cycle, error=str(e))
            stop_event.wait(settings.detection.poll_interval_sec)
    except KeyboardInterrupt:
        logger.info("service_shutdown_signal")
    finally:
        request_shutdown()
        for task in tasks:
            task.join(THREAD_JOIN_TIMEOUT_SEC)
        source.close()
        store.dispose()
        logger.info("service_stopped", cycles=cycle)
