"""
Alert engine: risk thresholds, activity-spike detection, 24h dedup.

Each poll runs three independent checks against the persistence store:

- attackers with risk_score above new_attacker_risk_score
- victims with risk_score above new_victim_risk_score
- dust count in the last hour vs. the hourly average of the 24 hours before it

An address (or the spike condition) is alerted at most once per dedup window.
A failing check is logged and does not skip the others; the polling loop
never exits on error, it backs off and retries.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

from backend_dustwatch.core.exceptions import AlertEvaluationError
from backend_dustwatch.database.store import PersistenceStore, RecordFilter, RecordKind
from backend_dustwatch.dustwatch_logging import get_logger

logger = get_logger(__name__)

DEFAULT_NEW_ATTACKER_RISK_SCORE = 0.7
DEFAULT_NEW_VICTIM_RISK_SCORE = 0.5
DEFAULT_ACTIVITY_SPIKE = 3.0
DEFAULT_VICTIM_EXPOSURE_LEVEL = 0.8
DEFAULT_POLL_INTERVAL_SEC = 60
DEFAULT_ERROR_BACKOFF_SEC = 30
DEFAULT_DEDUP_WINDOW_SEC = 24 * 3600

RECENT_WINDOW_SEC = 3600
BASELINE_HOURS = 24
MAX_FIELDS = 10
ALERT_QUERY_LIMIT = 1000
SPIKE_DEDUP_KEY = "activity_spike"

COLOR_ATTACKERS = 0xFF0000
COLOR_VICTIMS = 0xFFAA00
COLOR_SPIKE = 0xFF5500


class AlertType(str, Enum):
    NEW_HIGH_RISK_ATTACKERS = "new_high_risk_attackers"
    NEW_HIGH_RISK_VICTIMS = "new_high_risk_victims"
    ACTIVITY_SPIKE = "activity_spike"


@dataclass
class AlertConfig:
    """Thresholds and timing for the alert evaluator."""

    enabled: bool = True
    """When False, checks still run and dedup state advances, but nothing is sent."""
    new_attacker_risk_score: float = DEFAULT_NEW_ATTACKER_RISK_SCORE
    new_victim_risk_score: float = DEFAULT_NEW_VICTIM_RISK_SCORE
    activity_spike: float = DEFAULT_ACTIVITY_SPIKE
    """Fire when last-hour count / trailing hourly average >= this."""
    victim_exposure_level: float = DEFAULT_VICTIM_EXPOSURE_LEVEL
    """Victims at or above this risk are marked exposed in the alert payload."""
    poll_interval_sec: float = DEFAULT_POLL_INTERVAL_SEC
    error_backoff_sec: float = DEFAULT_ERROR_BACKOFF_SEC
    dedup_window_sec: float = DEFAULT_DEDUP_WINDOW_SEC


@dataclass
class AlertEvent:
    alert_type: AlertType
    payload: Any
    created_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "alert_type": self.alert_type.value,
            "payload": self.payload,
            "created_at": self.created_at,
        }


def short_address(address: str) -> str:
    if len(address) <= 16:
        return address
    return f"{address[:8]}...{address[-8:]}"


def format_alert_message(alert_type: AlertType | str, payload: Any) -> dict[str, Any]:
    """Render an alert as title / description / color / fields (Discord embed shape)."""
    kind = AlertType(alert_type)
    if kind == AlertType.NEW_HIGH_RISK_ATTACKERS:
        return {
            "title": "New High-Risk Dusting Attackers Detected",
            "description": f"Detected {len(payload)} new high-risk dusting attackers.",
            "color": COLOR_ATTACKERS,
            "fields": [
                {
                    "name": f"Attacker: {short_address(a['address'])}",
                    "value": (
                        f"Risk Score: {a['risk_score'] * 100:.1f}%\n"
                        f"Victims: {a.get('unique_victims_count', 0)}\n"
                        f"Transfers: {a.get('small_transfers_count', 0)}"
                    ),
                    "inline": True,
                }
                for a in payload[:MAX_FIELDS]
            ],
        }
    if kind == AlertType.NEW_HIGH_RISK_VICTIMS:
        return {
            "title": "New Potential Dusting Victims Detected",
            "description": f"Detected {len(payload)} new potential dusting victims.",
            "color": COLOR_VICTIMS,
            "fields": [
                {
                    "name": f"Victim: {short_address(v['address'])}" + (" (exposed)" if v.get("exposed") else ""),
                    "value": (
                        f"Risk Score: {v['risk_score'] * 100:.1f}%\n"
                        f"Attackers: {v.get('unique_attackers_count', 0)}\n"
                        f"Dust Txs: {v.get('dust_transactions_count', 0)}"
                    ),
                    "inline": True,
                }
                for v in payload[:MAX_FIELDS]
            ],
        }
    return {
        "title": "Dust Attack Activity Spike Detected",
        "description": "Unusual increase in dusting activity detected in the last hour.",
        "color": COLOR_SPIKE,
        "fields": [
            {
                "name": "Recent Activity",
                "value": f"{payload['recent_count']} dust transactions in the last hour",
                "inline": True,
            },
            {
                "name": "Previous Average",
                "value": f"{payload['previous_avg_count']:.1f} dust transactions per hour",
                "inline": True,
            },
            {
                "name": "Spike Ratio",
                "value": f"{payload['spike_ratio']:.1f}x normal activity",
                "inline": True,
            },
        ],
    }


class AlertEvaluator:
    """
    Polls the store and emits AlertEvents through a sink.

    Only reads from the store; dedup state (last alert time per key) is
    in-memory and owned by the evaluator.
    """

    def __init__(
        self,
        store: PersistenceStore,
        sink: Any,
        config: AlertConfig | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._sink = sink
        self._config = config or AlertConfig()
        self._clock = clock
        self._last_alert: dict[str, float] = {}

    @property
    def config(self) -> AlertConfig:
        return self._config

    def last_alert_at(self, key: str) -> float | None:
        return self._last_alert.get(key)

    def _is_fresh(self, key: str, now: float) -> bool:
        last = self._last_alert.get(key)
        return last is None or now - last > self._config.dedup_window_sec

    def _emit(self, alert_type: AlertType, payload: Any, now: float) -> AlertEvent:
        event = AlertEvent(alert_type=alert_type, payload=payload, created_at=now)
        if not self._config.enabled:
            logger.info("alert_suppressed_disabled", alert_type=alert_type.value)
            return event
        try:
            self._sink.send(alert_type.value, payload)
        except Exception as e:
            logger.exception("alert_sink_failed", alert_type=alert_type.value, error=str(e))
        return event

    def check_attackers(self, now: float) -> AlertEvent | None:
        rows = self._store.query(
            RecordFilter(
                kind=RecordKind.ATTACKER,
                min_risk_score=self._config.new_attacker_risk_score,
                limit=ALERT_QUERY_LIMIT,
            )
        )
        fresh = [r for r in rows if self._is_fresh(f"attacker_{r['address']}", now)]
        if not fresh:
            return None
        event = self._emit(AlertType.NEW_HIGH_RISK_ATTACKERS, fresh, now)
        for r in fresh:
            self._last_alert[f"attacker_{r['address']}"] = now
        return event

    def check_victims(self, now: float) -> AlertEvent | None:
        rows = self._store.query(
            RecordFilter(
                kind=RecordKind.VICTIM,
                min_risk_score=self._config.new_victim_risk_score,
                limit=ALERT_QUERY_LIMIT,
            )
        )
        fresh = [
            {**r, "exposed": r["risk_score"] >= self._config.victim_exposure_level}
            for r in rows
            if self._is_fresh(f"victim_{r['address']}", now)
        ]
        if not fresh:
            return None
        event = self._emit(AlertType.NEW_HIGH_RISK_VICTIMS, fresh, now)
        for r in fresh:
            self._last_alert[f"victim_{r['address']}"] = now
        return event

    def check_activity_spike(self, now: float) -> AlertEvent | None:
        recent = self._store.count_dust_transfers(now - RECENT_WINDOW_SEC, now)
        baseline_total = self._store.count_dust_transfers(
            now - RECENT_WINDOW_SEC * (BASELINE_HOURS + 1),
            now - RECENT_WINDOW_SEC - 1e-6,
        )
        previous_avg = baseline_total / BASELINE_HOURS
        if previous_avg <= 0:
            return None
        ratio = recent / previous_avg
        if ratio < self._config.activity_spike or not self._is_fresh(SPIKE_DEDUP_KEY, now):
            return None
        payload = {"recent_count": recent, "previous_avg_count": previous_avg, "spike_ratio": ratio}
        logger.warning("activity_spike_detected", recent_count=recent, spike_ratio=ratio)
        event = self._emit(AlertType.ACTIVITY_SPIKE, payload, now)
        self._last_alert[SPIKE_DEDUP_KEY] = now
        return event

    def evaluate_once(self, now: float | None = None) -> list[AlertEvent]:
        """
        Run all three checks; a failing check is logged and the others still run.

        Raises AlertEvaluationError when every check failed; run_forever then
        waits error_backoff_sec instead of poll_interval_sec.
        """
        now = self._clock() if now is None else now
        events: list[AlertEvent] = []
        checks = (
            ("attackers", self.check_attackers),
            ("victims", self.check_victims),
            ("activity_spike", self.check_activity_spike),
        )
        failed: list[str] = []
        for name, check in checks:
            try:
                event = check(now)
            except Exception as e:
                logger.exception("alert_check_failed", check=name, error=str(e))
                failed.append(name)
                continue
            if event is not None:
                events.append(event)
        if len(failed) == len(checks):
            raise AlertEvaluationError(f"all alert checks failed: {', '.join(failed)}")
        return events

    def run_forever(self, stop_event: threading.Event) -> None:
        """Poll until stop_event is set; back off after an unexpected failure."""
        logger.info("alert_loop_started", poll_interval_sec=self._config.poll_interval_sec)
        while not stop_event.is_set():
            try:
                self.evaluate_once()
                wait = self._config.poll_interval_sec
            except Exception as e:
                logger.exception("alert_loop_error", error=str(e))
                wait = self._config.error_backoff_sec
            stop_event.wait(wait)
        logger.info("alert_loop_stopped")
