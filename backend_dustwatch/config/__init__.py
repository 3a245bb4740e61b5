"""
Configuration management for the Dustwatch service.

Loads settings from environment variables and the project .env file.
Exposes a single source of truth for ingestion, detection and alerting.
"""

from backend_dustwatch.config.settings import Settings, get_settings  # noqa: F401

__all__ = ["Settings", "get_settings"]
