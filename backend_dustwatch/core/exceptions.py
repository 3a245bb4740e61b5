"""
Application-level exceptions.

Three failure classes drive error handling across the pipeline:
- upstream transient (rate limit, timeout, malformed response): retried with
  backoff, then the single transaction is dropped;
- persistence failure: logged, in-memory state is kept;
- configuration: fatal at startup.
"""

from __future__ import annotations


class DustwatchError(Exception):
    """Base class for all Dustwatch errors."""


class ConfigurationError(DustwatchError):
    """Missing or invalid configuration (e.g. no data source credentials)."""


class UpstreamError(DustwatchError):
    """Transient failure talking to an upstream data source; safe to retry."""


class RateLimitedError(UpstreamError):
    """Upstream answered HTTP 429 or 'too many requests'."""


class MalformedResponseError(UpstreamError):
    """Upstream answered with a payload we cannot interpret."""


class PersistenceError(DustwatchError):
    """A persistence store operation failed."""


class AlertEvaluationError(DustwatchError):
    """Every alert check in one evaluation pass failed."""
