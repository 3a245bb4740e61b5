"""
Typed application settings built from the environment.

All time values are seconds. Defaults are documented on each field; the
environment variable that overrides a field is listed in get_settings().
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field

from backend_dustwatch.alerts.engine import AlertConfig
from backend_dustwatch.alerts.sinks import DEFAULT_SMTP_PORT, SmtpConfig
from backend_dustwatch.analytics.risk_engine import RiskWeights
from backend_dustwatch.analytics.thresholds import ThresholdConfig
from backend_dustwatch.config.env import (
    get_env_bool,
    get_env_float,
    get_env_int,
    get_env_list,
    get_rpc_endpoints,
    load_dustwatch_env,
)
from backend_dustwatch.core.exceptions import ConfigurationError
from backend_dustwatch.database.store import get_database_url

DEFAULT_MAX_CONCURRENCY = 3
DEFAULT_MAX_RETRIES = 3
DEFAULT_INITIAL_BACKOFF_SEC = 1.0
DEFAULT_SIGNATURES_LIMIT = 200
DEFAULT_REQUEST_TIMEOUT_SEC = 30.0

DEFAULT_MIN_TRANSFERS = 3
DEFAULT_SIMILARITY_THRESHOLD = 0.8
DEFAULT_BLOCKS_TO_ANALYZE = 50
DEFAULT_HIGH_ACTIVITY = 5
DEFAULT_MAX_ADDRESSES = 200
DEFAULT_POLL_INTERVAL_SEC = 300.0
DEFAULT_MAX_TIMESTAMPS = 10_000


@dataclass
class ProcessingSettings:
    """Upstream fetch behaviour."""

    max_concurrency: int = DEFAULT_MAX_CONCURRENCY
    max_retries: int = DEFAULT_MAX_RETRIES
    """Total attempts per upstream call, including the first."""
    initial_backoff_sec: float = DEFAULT_INITIAL_BACKOFF_SEC
    request_delay_sec: float = 0.0
    """Pause between consecutive transaction fetches for one address."""
    signatures_limit: int = DEFAULT_SIGNATURES_LIMIT
    request_timeout_sec: float = DEFAULT_REQUEST_TIMEOUT_SEC

    def __post_init__(self) -> None:
        self.max_concurrency = max(1, int(self.max_concurrency))
        self.max_retries = max(1, int(self.max_retries))


@dataclass
class DetectionSettings:
    min_transfers: int = DEFAULT_MIN_TRANSFERS
    similarity_threshold: float = DEFAULT_SIMILARITY_THRESHOLD
    blocks_to_analyze: int = DEFAULT_BLOCKS_TO_ANALYZE
    high_activity: int = DEFAULT_HIGH_ACTIVITY
    max_addresses: int = DEFAULT_MAX_ADDRESSES
    poll_interval_sec: float = DEFAULT_POLL_INTERVAL_SEC
    """Pause between two ingestion rounds."""
    max_timestamps_per_address: int = DEFAULT_MAX_TIMESTAMPS

    def __post_init__(self) -> None:
        if not 0.0 <= self.similarity_threshold <= 1.0:
            raise ConfigurationError(f"similarity_threshold must be in [0, 1], got {self.similarity_threshold}")


@dataclass
class Settings:
    processing: ProcessingSettings = field(default_factory=ProcessingSettings)
    detection: DetectionSettings = field(default_factory=DetectionSettings)
    thresholds: ThresholdConfig = field(default_factory=ThresholdConfig)
    alerts: AlertConfig = field(default_factory=AlertConfig)
    risk_weights: RiskWeights = field(default_factory=RiskWeights)
    database_url: str = ""
    rpc_endpoints: list[str] = field(default_factory=list)
    wallets: list[str] = field(default_factory=list)
    """Addresses to watch in addition to discovered active addresses."""
    labels_path: str | None = None
    scam_urls_path: str | None = None
    alert_webhook_url: str | None = None
    smtp: SmtpConfig | None = None
    """Email alert delivery; None unless ALERT_SMTP_HOST and ALERT_EMAIL_TO are set."""
    chainalysis_api_key: str | None = None
    trm_labs_api_key: str | None = None


def _optional(name: str) -> str | None:
    return (os.getenv(name) or "").strip() or None


def _smtp_config() -> SmtpConfig | None:
    host = _optional("ALERT_SMTP_HOST")
    recipients = get_env_list("ALERT_EMAIL_TO")
    if not host or not recipients:
        return None
    username = _optional("ALERT_SMTP_USER")
    return SmtpConfig(
        host=host,
        port=get_env_int("ALERT_SMTP_PORT", DEFAULT_SMTP_PORT),
        sender=_optional("ALERT_EMAIL_FROM") or username or "dustwatch@localhost",
        recipients=recipients,
        username=username,
        password=_optional("ALERT_SMTP_PASSWORD"),
        starttls=get_env_bool("ALERT_SMTP_STARTTLS", True),
    )


def get_settings() -> Settings:
    """
    Build Settings from env (.env loaded first, real env wins).

    Raises ConfigurationError on malformed numeric values. Missing RPC
    credentials are not checked here; see require_rpc_endpoints().
    """
    load_dustwatch_env()
    base = ThresholdConfig()
    thresholds = ThresholdConfig(
        dust_amount_threshold=get_env_float("DUST_THRESHOLD_SOL", base.dust_amount_threshold),
        time_window_threshold=get_env_int("TIME_WINDOW", base.time_window_threshold),
        network_fee_multiplier=get_env_float("NETWORK_FEE_MULTIPLIER", base.network_fee_multiplier),
        update_interval=get_env_int("UPDATE_INTERVAL", base.update_interval),
    )
    alerts = AlertConfig(
        enabled=get_env_bool("ENABLE_ALERTS", True),
        new_attacker_risk_score=get_env_float("ALERT_ATTACKER_RISK_SCORE", AlertConfig.new_attacker_risk_score),
        new_victim_risk_score=get_env_float("ALERT_VICTIM_RISK_SCORE", AlertConfig.new_victim_risk_score),
        activity_spike=get_env_float("ALERT_ACTIVITY_SPIKE", AlertConfig.activity_spike),
        poll_interval_sec=get_env_float("ALERT_POLL_INTERVAL", AlertConfig.poll_interval_sec),
    )
    processing = ProcessingSettings(
        max_concurrency=get_env_int("MAX_CONCURRENCY", DEFAULT_MAX_CONCURRENCY),
        max_retries=get_env_int("MAX_RETRIES", DEFAULT_MAX_RETRIES),
        initial_backoff_sec=get_env_float("INITIAL_BACKOFF", DEFAULT_INITIAL_BACKOFF_SEC),
        request_delay_sec=get_env_float("REQUEST_DELAY", 0.0),
        signatures_limit=get_env_int("SIGNATURES_LIMIT", DEFAULT_SIGNATURES_LIMIT),
        request_timeout_sec=get_env_float("REQUEST_TIMEOUT", DEFAULT_REQUEST_TIMEOUT_SEC),
    )
    detection = DetectionSettings(
        min_transfers=get_env_int("MIN_TRANSFERS", DEFAULT_MIN_TRANSFERS),
        similarity_threshold=get_env_float("ADDRESS_SIMILARITY", DEFAULT_SIMILARITY_THRESHOLD),
        blocks_to_analyze=get_env_int("BLOCKS_TO_ANALYZE", DEFAULT_BLOCKS_TO_ANALYZE),
        high_activity=get_env_int("HIGH_ACTIVITY", DEFAULT_HIGH_ACTIVITY),
        max_addresses=get_env_int("MAX_ADDRESSES", DEFAULT_MAX_ADDRESSES),
        poll_interval_sec=get_env_float("POLL_INTERVAL", DEFAULT_POLL_INTERVAL_SEC),
    )
    return Settings(
        processing=processing,
        detection=detection,
        thresholds=thresholds,
        alerts=alerts,
        database_url=get_database_url(),
        rpc_endpoints=get_rpc_endpoints(),
        wallets=get_env_list("WALLETS"),
        labels_path=_optional("ADDRESS_LABELS_PATH"),
        scam_urls_path=_optional("SCAM_URLS_PATH"),
        alert_webhook_url=_optional("ALERT_WEBHOOK_URL"),
        smtp=_smtp_config(),
        chainalysis_api_key=_optional("CHAINALYSIS_API_KEY"),
        trm_labs_api_key=_optional("TRM_LABS_API_KEY"),
    )
