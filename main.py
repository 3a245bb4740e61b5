"""
Main entrypoint: dust and address-poisoning detection service (24/7).

Ingests recent transactions for configured and discovered addresses, keeps
attacker / victim / graph state in memory, persists snapshots, and runs the
adaptive threshold and alert loops in background threads. SIGINT/SIGTERM stop
the service cleanly.

Env: HELIUS_API_KEYS or SOLANA_RPC_URL (required), WALLETS, DUSTWATCH_DB_URL,
ALERT_WEBHOOK_URL, LOG_LEVEL, LOG_FORMAT, etc.
"""

import sys

# Configure structured logging before other imports that may log
from backend_dustwatch.dustwatch_logging import get_logger

logger = get_logger("main")


def main() -> int:
    """Load settings, verify data source credentials, run the service."""
    from backend_dustwatch.agent_worker.runner import run_service
    from backend_dustwatch.config import get_settings
    from backend_dustwatch.config.env import require_rpc_endpoints
    from backend_dustwatch.core.exceptions import ConfigurationError

    try:
        settings = get_settings()
        if not settings.rpc_endpoints:
            settings.rpc_endpoints = require_rpc_endpoints()
    except ConfigurationError as e:
        logger.error("main_config_error", message=str(e))
        return 1

    try:
        run_service(settings)
    except KeyboardInterrupt:
        logger.info("main_shutdown_signal")
    except Exception as e:
        logger.exception("main_fatal", error=str(e))
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
