"""
Detection pipeline: one owner for tracker, graph and address-book state.

ingest() may be called from several fetch workers; every mutation of shared
state happens under a single lock so counts, sets and graph edges are updated
as if by one writer. Persistence happens outside that lock, ordered per address:
a snapshot older than the last one written for an address is skipped. A failed
write is logged and the in-memory state is kept (upserts make a later retry
safe).
"""

from __future__ import annotations

import itertools
import threading
import time
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Iterable, Iterator

from backend_dustwatch.analytics.address_graph import AddressGraph
from backend_dustwatch.analytics.candidate_tracker import CandidateTracker, TemporalPattern
from backend_dustwatch.analytics.dust_classifier import ClassifiedTransfer, classify
from backend_dustwatch.analytics.poisoning_detector import AddressBook, AddressGroup, PoisoningDetector
from backend_dustwatch.analytics.risk_engine import (
    RiskAnalysis,
    RiskSignals,
    RiskWeights,
    build_risk_analysis,
    dust_ratio,
    transfer_pattern_signal,
)
from backend_dustwatch.analytics.scam_urls import is_scam_url_present
from backend_dustwatch.analytics.similarity import homoglyph_variants
from backend_dustwatch.analytics.threat_intel import ThreatIntelClient
from backend_dustwatch.analytics.thresholds import AdaptiveThresholdEngine
from backend_dustwatch.core.exceptions import PersistenceError
from backend_dustwatch.database.store import PersistenceStore
from backend_dustwatch.dustwatch_logging import get_logger

logger = get_logger(__name__)


@dataclass
class AnalysisReport:
    """Result of one analysis pass over a set of investigated addresses."""

    analyses: list[RiskAnalysis] = field(default_factory=list)
    clusters: list[set[str]] = field(default_factory=list)
    similar_groups: list[AddressGroup] = field(default_factory=list)
    confirmed_attackers: list[dict[str, Any]] = field(default_factory=list)
    tracked_victims: list[dict[str, Any]] = field(default_factory=list)
    suspicious_patterns: dict[str, TemporalPattern] = field(default_factory=dict)
    common_funding_sources: dict[str, list[str]] = field(default_factory=dict)
    generated_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "analyses": [a.to_record() for a in self.analyses],
            "clusters": [sorted(c) for c in self.clusters],
            "similar_groups": [g.to_dict() for g in self.similar_groups],
            "confirmed_attackers": self.confirmed_attackers,
            "tracked_victims": self.tracked_victims,
            "suspicious_patterns": {a: p.to_dict() for a, p in self.suspicious_patterns.items()},
            "common_funding_sources": self.common_funding_sources,
            "generated_at": self.generated_at,
        }


class DetectionPipeline:
    def __init__(
        self,
        thresholds: AdaptiveThresholdEngine | None = None,
        store: PersistenceStore | None = None,
        *,
        tracker: CandidateTracker | None = None,
        graph: AddressGraph | None = None,
        detector: PoisoningDetector | None = None,
        scam_blocklist: Iterable[str] = (),
        risk_weights: RiskWeights | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.thresholds = thresholds or AdaptiveThresholdEngine()
        self.store = store
        self.tracker = tracker or CandidateTracker()
        self.graph = graph or AddressGraph()
        self.detector = detector or PoisoningDetector(AddressBook(clock=clock))
        self.scam_blocklist = set(scam_blocklist)
        self.risk_weights = risk_weights or RiskWeights()
        self._clock = clock
        self._lock = threading.Lock()
        self._persist_lock = threading.Lock()
        self._sequence = itertools.count()
        self._persisted_seq: dict[tuple[str, str], int] = {}
        self._seen: set[str] = set()
        self._classified: list[ClassifiedTransfer] = []

    @property
    def address_book(self) -> AddressBook:
        return self.detector.address_book

    def is_ingested(self, signature: str) -> bool:
        with self._lock:
            return signature in self._seen

    def ingest(self, transfer: Any) -> ClassifiedTransfer | None:
        """
        Classify and record one transfer. Returns None for a signature already
        ingested; a signature is classified at most once.
        """
        if transfer is None:
            return None
        current = self.thresholds.current()
        with self._lock:
            if transfer.signature in self._seen:
                return None
            self._seen.add(transfer.signature)
            seq = next(self._sequence)

            classified = classify(transfer, current)
            lookalikes = self.detector.check_recipient(transfer.recipient)
            update = self.tracker.observe(
                transfer.sender, transfer.recipient, transfer.timestamp, classified.is_dust
            )
            self.graph.add_edge(transfer.sender, transfer.recipient, transfer.amount)
            self.address_book.record_transfer(transfer)

            scam = bool(transfer.memo) and is_scam_url_present(transfer.memo, self.scam_blocklist)
            if lookalikes or scam:
                classified = replace(
                    classified,
                    is_potential_poisoning=bool(lookalikes),
                    is_scam_url=scam,
                    similar_to=tuple(r.address_b for r in lookalikes),
                )
            self._classified.append(classified)

        if classified.is_dust:
            self.thresholds.record_dust_amount(transfer.amount)
        if classified.is_potential_poisoning:
            logger.warning(
                "recipient_lookalike_detected",
                signature=transfer.signature,
                recipient=transfer.recipient,
                similar_to=list(classified.similar_to),
            )
        if classified.is_scam_url:
            logger.warning("scam_url_in_memo", signature=transfer.signature, sender=transfer.sender)

        self._persist(classified, update, seq)
        return classified

    def _persist(self, classified: ClassifiedTransfer, update: Any, seq: int) -> None:
        if self.store is None:
            return
        try:
            self.store.insert_transfer(classified)
            if update is not None:
                if update.attacker_confirmed:
                    self._write_snapshot("attacker", update.attacker, seq, self.store.upsert_attacker)
                if update.victim_tracked:
                    self._write_snapshot("victim", update.victim, seq, self.store.upsert_victim)
        except PersistenceError as e:
            logger.warning("persist_failed", signature=classified.signature, error=str(e))

    def _write_snapshot(
        self, kind: str, record: dict[str, Any], seq: int, upsert: Callable[[dict[str, Any]], None]
    ) -> None:
        """Upsert record unless a snapshot taken later for the same address was already written."""
        key = (kind, record["address"])
        with self._persist_lock:
            if seq < self._persisted_seq.get(key, -1):
                logger.debug("persist_stale_snapshot_skipped", kind=kind, address=record["address"], seq=seq)
                return
            upsert(record)
            self._persisted_seq[key] = seq

    def ingest_many(self, transfers: Iterable[Any]) -> list[ClassifiedTransfer]:
        out: list[ClassifiedTransfer] = []
        for t in transfers:
            c = self.ingest(t)
            if c is not None:
                out.append(c)
        return out

    def classified(self) -> Iterator[ClassifiedTransfer]:
        """Classified transfers in ingestion order (snapshot at call time)."""
        with self._lock:
            items = list(self._classified)
        return iter(items)

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            tracked = self.tracker.snapshot()
            return {
                "attackers": tracked["attackers"],
                "victims": tracked["victims"],
                "confirmed_attackers": self.tracker.confirmed_attackers(),
                "tracked_victims": self.tracker.tracked_victims(),
                "thresholds": self.thresholds.current().to_dict(),
                "graph_nodes": len(self.graph),
                "graph_edges": self.graph.edge_count(),
                "ingested": len(self._seen),
            }

    def _similarity_signal(self, address: str, known: set[str]) -> float:
        if any(v in known for v in homoglyph_variants(address)):
            return 1.0
        return self.graph.recipient_overlap(address)

    def _analyze_one(
        self,
        address: str,
        known: set[str],
        time_window: float,
        threat_intel: ThreatIntelClient | None,
        now: float,
    ) -> RiskAnalysis:
        sent, received = self.tracker.dust_counts(address)
        total = self.address_book.get(address).transaction_count
        temporal = self.tracker.temporal_pattern(address, time_window)
        network = self.graph.network_pattern(address)

        third_party = None
        third_party_score = 0.0
        if threat_intel is not None and threat_intel.enabled:
            intel = threat_intel.check_address(address)
            third_party = intel.to_dict()
            third_party_score = intel.combined_risk

        signals = RiskSignals(
            dust_amount=dust_ratio(sent + received, total),
            transfer_pattern=transfer_pattern_signal(network.centrality_score),
            address_similarity=self._similarity_signal(address, known),
            temporal_pattern=temporal.regularity_score,
            third_party_risk=third_party_score,
        )
        return build_risk_analysis(
            address,
            signals,
            temporal,
            network,
            weights=self.risk_weights,
            third_party_signal=third_party,
            analyzed_at=now,
        )

    def analyze(
        self,
        addresses: Iterable[str],
        threat_intel: ThreatIntelClient | None = None,
    ) -> AnalysisReport:
        """
        Build and persist a RiskAnalysis per address. Threat-intel calls happen
        under the lock, so keep the address list short.
        """
        members = list(dict.fromkeys(addresses))
        now = self._clock()
        time_window = float(self.thresholds.current().time_window_threshold)
        report = AnalysisReport(generated_at=now)

        with self._lock:
            known = set(self.address_book.known_addresses())
            for address in members:
                try:
                    report.analyses.append(self._analyze_one(address, known, time_window, threat_intel, now))
                except Exception as e:
                    logger.exception("analyze_address_failed", address=address, error=str(e))
            report.clusters = self.graph.find_clusters()
            report.similar_groups = self.detector.group_similar_addresses(members)
            report.confirmed_attackers = self.tracker.confirmed_attackers()
            report.tracked_victims = self.tracker.tracked_victims()
            report.suspicious_patterns = self.tracker.suspicious_patterns(time_window)
            report.common_funding_sources = self.graph.common_funding_sources(members)

        if self.store is not None:
            for analysis in report.analyses:
                try:
                    self.store.upsert_risk_analysis(analysis.to_record())
                except PersistenceError as e:
                    logger.warning("persist_risk_failed", address=analysis.address, error=str(e))

        logger.info(
            "analysis_complete",
            addresses=len(members),
            clusters=len(report.clusters),
            similar_groups=len(report.similar_groups),
            confirmed_attackers=len(report.confirmed_attackers),
        )
        return report
