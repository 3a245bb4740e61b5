"""
Structured logging for detection events.

Every record carries event_type, level, ISO timestamp and the emitting module;
detection events add address / signature / score keys so log aggregation can
pivot on a single wallet. Score-like floats are rounded so JSON lines stay
diffable between runs.

No backend_dustwatch imports here to avoid circular imports.
"""

from __future__ import annotations

import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any

import structlog

DEFAULT_LOG_LEVEL = "INFO"
DEFAULT_LOG_FORMAT = "json"
SCORE_DECIMALS = 4


def _add_timestamp(
    logger: Any,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    if "timestamp" not in event_dict:
        event_dict["timestamp"] = datetime.now(timezone.utc).isoformat()
    return event_dict


def _normalize_event(
    logger: Any,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    """Rename structlog 'event' to event_type."""
    if "event" in event_dict and "event_type" not in event_dict:
        event_dict["event_type"] = event_dict.pop("event")
    return event_dict


def _round_scores(
    logger: Any,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    """Round *_score / *_threshold / ratio floats."""
    for key, value in event_dict.items():
        if isinstance(value, float) and (
            key.endswith("_score") or key.endswith("_threshold") or key.endswith("ratio")
        ):
            event_dict[key] = round(value, SCORE_DECIMALS)
    return event_dict


def configure_structlog(level: str | None = None, fmt: str | None = None) -> None:
    """
    Configure structlog. Called once at import with LOG_LEVEL / LOG_FORMAT;
    main() may call it again after settings are loaded.
    """
    level_name = (level or os.getenv("LOG_LEVEL") or DEFAULT_LOG_LEVEL).upper()
    level_value = getattr(logging, level_name, logging.INFO)
    log_format = (fmt or os.getenv("LOG_FORMAT") or DEFAULT_LOG_FORMAT).strip().lower()

    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        _add_timestamp,
        _normalize_event,
        _round_scores,
    ]
    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()))
    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level_value),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stdout),
        cache_logger_on_first_use=True,
    )


if not structlog.is_configured():
    configure_structlog()


def get_logger(name: str) -> structlog.BoundLogger:
    """
    Return a structured logger for the given module name.

        logger = get_logger(__name__)
        logger.info("attacker_confirmed", address=addr, risk_score=0.42)
    """
    return structlog.get_logger(name).bind(logger=name)


def bind_address(address: str, name: str = "backend_dustwatch") -> structlog.BoundLogger:
    """Return a logger with address bound to all subsequent log calls."""
    return get_logger(name).bind(address=address)
