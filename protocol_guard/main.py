"""
Protocol Guard service entry point.

Usage:
    protocol-guard                      # console script
    python -m protocol_guard.main

Environment:
    PG_HOST / PG_PORT   bind address (default 0.0.0.0:8010)
    PG_LOG_LEVEL        root log level (default INFO)
    PG_LOG_FILE         optional log file
    PG_*                see AppConfig.from_env
"""

import logging
import os

from .api.app import SERVICE_NAME, create_app
from .core.config import AppConfig
from .core.logging_setup import configure_logging

logger = logging.getLogger(__name__)

SERVICE_HOST = os.getenv("PG_HOST", "0.0.0.0")
SERVICE_PORT = int(os.getenv("PG_PORT", "8010"))


def main() -> None:
    configure_logging(
        level=getattr(logging, os.getenv("PG_LOG_LEVEL", "INFO").upper(), logging.INFO),
        log_file=os.getenv("PG_LOG_FILE"),
    )

    import uvicorn

    app = create_app(AppConfig.from_env())
    logger.info(f"Starting {SERVICE_NAME} on {SERVICE_HOST}:{SERVICE_PORT}")
    uvicorn.run(app, host=SERVICE_HOST, port=SERVICE_PORT, log_level="info", access_log=True)


if __name__ == "__main__":
    main()
