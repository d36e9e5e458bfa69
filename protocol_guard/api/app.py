"""
FastAPI application factory.

Usage:
    from protocol_guard.api.app import create_app
    app = create_app()          # configuration from PG_* environment variables
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from ..core.config import AppConfig
from ..core.health import HealthChecker
from ..rag.protocol_service import ProtocolRetrievalService, build_service
from .routes import create_router

logger = logging.getLogger(__name__)

SERVICE_NAME = "protocol-guard"


def create_app(
    config: Optional[AppConfig] = None,
    service: Optional[ProtocolRetrievalService] = None,
) -> FastAPI:
    config = config or AppConfig.from_env()
    service = service or build_service(config)
    health_checker = HealthChecker(
        service.recovery.primary,
        service.recovery,
        embeddings_expected=service.retriever.embedder is not None,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(f"🚀 Starting {SERVICE_NAME}")
        await service.refresh_reference()
        yield
        # let abandoned store calls finish warming the cache, then drain telemetry
        await service.recovery.drain()
        if service.telemetry is not None:
            await service.telemetry.flush()
        logger.info(f"Shutting down {SERVICE_NAME}")

    app = FastAPI(title=SERVICE_NAME, lifespan=lifespan)
    app.include_router(create_router(service, health_checker))
    app.state.service = service
    return app
