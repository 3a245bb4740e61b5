"""
Environment variable loading for Dustwatch.

- SOLANA_RPC_URL: explicit RPC endpoint (comma-separated for several).
- HELIUS_API_KEYS: comma-separated Helius keys; one mainnet endpoint per key,
  used round-robin by the transaction source.
- Loads .env from project root when available.
"""

from __future__ import annotations

import os
from pathlib import Path

from dotenv import load_dotenv

from backend_dustwatch.core.exceptions import ConfigurationError

# Project root: config is backend_dustwatch/config/, root is 2 levels up
_CONFIG_DIR = Path(__file__).resolve().parent
_BACKEND_DIR = _CONFIG_DIR.parent
_ROOT = _BACKEND_DIR.parent
_ENV_PATH = _ROOT / ".env"

HELIUS_MAINNET_URL_TEMPLATE = "https://mainnet.helius-rpc.com/?api-key={key}"


def load_dustwatch_env() -> None:
    """Load .env from project root. Safe to call multiple times; never overrides real env."""
    load_dotenv(_ENV_PATH, override=False)


def _split_csv(raw: str | None) -> list[str]:
    return [part.strip() for part in (raw or "").split(",") if part.strip()]


def get_helius_api_keys() -> list[str]:
    """Return HELIUS_API_KEYS (falls back to the single HELIUS_API_KEY)."""
    load_dustwatch_env()
    keys = _split_csv(os.getenv("HELIUS_API_KEYS"))
    if not keys:
        keys = _split_csv(os.getenv("HELIUS_API_KEY"))
    return keys


def get_rpc_endpoints() -> list[str]:
    """
    Resolve RPC endpoints from env.
    Order: SOLANA_RPC_URL > HELIUS_API_KEYS. Empty list when neither is set.
    """
    load_dustwatch_env()
    urls = _split_csv(os.getenv("SOLANA_RPC_URL"))
    if urls:
        return urls
    return [HELIUS_MAINNET_URL_TEMPLATE.format(key=key) for key in get_helius_api_keys()]


def require_rpc_endpoints() -> list[str]:
    """Return RPC endpoints or raise ConfigurationError; the service cannot run without them."""
    endpoints = get_rpc_endpoints()
    if not endpoints:
        raise ConfigurationError(
            "No data source credentials: set HELIUS_API_KEYS or SOLANA_RPC_URL in the environment or .env"
        )
    return endpoints


def mask_rpc_url(url: str) -> str:
    """Hide the api-key query value for logging."""
    if "api-key=" in url:
        return url.split("api-key=")[0] + "api-key=***"
    return url


def get_env_float(name: str, default: float) -> float:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError as e:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}") from e


def get_env_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}") from e


def get_env_bool(name: str, default: bool) -> bool:
    raw = (os.getenv(name) or "").strip().lower()
    if not raw:
        return default
    return raw in ("1", "true", "yes", "on")


def get_env_list(name: str) -> list[str]:
    return _split_csv(os.getenv(name))
