"""
Main entrypoint: FastAPI server with the ingestion scheduler running in the
server's event loop (started by the app lifespan when INGESTION_ENABLED).

Env: SOLANA_RPC_URL, USDT_MINT, DB_PATH / DATABASE_URL, INGESTION_ENABLED,
INGESTION_INTERVAL_SEC, API_HOST, API_PORT, LOG_LEVEL, LOG_FORMAT, etc.

Scheduler only (no API): ledger-watchdog-poll
"""

import os
import sys

# Configure structured JSON logging before other imports that may log
from ledger_watchdog.logging import get_logger

logger = get_logger("main")


def main() -> int:
    """Load settings, then run the API (and scheduler) in the main thread."""
    from ledger_watchdog.api_server.server import create_app
    from ledger_watchdog.config import get_settings
    from ledger_watchdog.config.env import redact_rpc_url
    from ledger_watchdog.core.exceptions import ConfigError
    import uvicorn

    try:
        settings = get_settings()
    except ConfigError as e:
        logger.error("main_config_error", error=str(e))
        return 1

    logger.info(
        "main_server_starting",
        host=settings.api_host,
        port=settings.api_port,
        rpc_url=redact_rpc_url(settings.rpc_url),
        mint=settings.tracked_mint,
        ingestion_enabled=settings.ingestion_enabled,
    )
    uvicorn.run(
        create_app(settings),
        host=settings.api_host,
        port=settings.api_port,
        log_level=os.getenv("LOG_LEVEL", "info").lower(),
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
