"""
Alert delivery. Fire-and-forget: failures are logged, never retried or raised.
"""

from __future__ import annotations

import smtplib
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.mime.text import MIMEText
from typing import Any, Callable, Iterable

import httpx

from backend_dustwatch.alerts.engine import format_alert_message
from backend_dustwatch.dustwatch_logging import get_logger

logger = get_logger(__name__)

DEFAULT_WEBHOOK_TIMEOUT_SEC = 10.0
DEFAULT_SMTP_PORT = 587
DEFAULT_SMTP_TIMEOUT_SEC = 10.0


class AlertSink(ABC):
    @abstractmethod
    def send(self, alert_type: str, payload: Any) -> None:
        ...


class LoggingAlertSink(AlertSink):
    """Writes each alert as a structured log line."""

    def send(self, alert_type: str, payload: Any) -> None:
        message = format_alert_message(alert_type, payload)
        logger.warning(
            "dust_alert",
            alert_type=alert_type,
            title=message["title"],
            description=message["description"],
            fields=len(message["fields"]),
        )


class WebhookAlertSink(AlertSink):
    """POSTs a Discord-style embed to a webhook URL."""

    def __init__(
        self,
        webhook_url: str,
        *,
        timeout_sec: float = DEFAULT_WEBHOOK_TIMEOUT_SEC,
        client: httpx.Client | None = None,
    ) -> None:
        self._url = webhook_url
        self._client = client or httpx.Client(timeout=timeout_sec)

    def send(self, alert_type: str, payload: Any) -> None:
        message = format_alert_message(alert_type, payload)
        body = {
            "content": message["title"],
            "embeds": [
                {
                    "title": message["title"],
                    "description": message["description"],
                    "color": message["color"],
                    "fields": message["fields"],
                    "timestamp": datetime.now(timezone.utc).isoformat(),
                }
            ],
        }
        try:
            r = self._client.post(self._url, json=body)
            r.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning("alert_webhook_failed", alert_type=alert_type, error=str(e))
            return
        logger.info("alert_webhook_sent", alert_type=alert_type, status=r.status_code)

    def close(self) -> None:
        self._client.close()


@dataclass
class SmtpConfig:
    host: str
    sender: str
    recipients: list[str] = field(default_factory=list)
    port: int = DEFAULT_SMTP_PORT
    username: str | None = None
    password: str | None = None
    starttls: bool = True
    timeout_sec: float = DEFAULT_SMTP_TIMEOUT_SEC


def render_email_body(message: dict[str, Any]) -> str:
    lines = [message["title"], "", message["description"]]
    for f in message["fields"]:
        lines.append("")
        lines.append(f["name"])
        lines.extend(f"  {line}" for line in str(f["value"]).splitlines())
    return "\n".join(lines) + "\n"


class EmailAlertSink(AlertSink):
    """Sends each alert as a plain-text email over SMTP (STARTTLS + login when configured)."""

    def __init__(self, config: SmtpConfig, *, smtp_factory: Callable[..., smtplib.SMTP] = smtplib.SMTP) -> None:
        self._config = config
        self._smtp_factory = smtp_factory

    def send(self, alert_type: str, payload: Any) -> None:
        cfg = self._config
        if not cfg.recipients:
            return
        message = format_alert_message(alert_type, payload)
        msg = MIMEText(render_email_body(message))
        msg["Subject"] = f"[Dustwatch] {message['title']}"
        msg["From"] = cfg.sender
        msg["To"] = ", ".join(cfg.recipients)
        try:
            with self._smtp_factory(cfg.host, cfg.port, timeout=cfg.timeout_sec) as server:
                if cfg.starttls:
                    server.starttls()
                if cfg.username:
                    server.login(cfg.username, cfg.password or "")
                server.send_message(msg)
        except (smtplib.SMTPException, OSError) as e:
            logger.warning("alert_email_failed", alert_type=alert_type, host=cfg.host, error=str(e))
            return
        logger.info("alert_email_sent", alert_type=alert_type, recipients=len(cfg.recipients))


class MultiSink(AlertSink):
    """Fans an alert out to several sinks; one failing sink does not affect the others."""

    def __init__(self, sinks: Iterable[AlertSink]) -> None:
        self._sinks = list(sinks)

    def send(self, alert_type: str, payload: Any) -> None:
        for sink in self._sinks:
            try:
                sink.send(alert_type, payload)
            except Exception as e:
                logger.exception("alert_sink_failed", sink=type(sink).__name__, error=str(e))
