"""FastAPI application factory."""

from __future__ import annotations

from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI

from spendwise_ingest.config import IngestSettings
from spendwise_ingest.service import IngestionService

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup: build the ingestion service unless one was injected. Shutdown: close it."""
    service: IngestionService | None = getattr(app.state, "service", None)
    owns_service = service is None
    if owns_service:
        service = IngestionService(app.state.settings)
        app.state.service = service
    await service.start()
    yield
    if owns_service:
        await service.close()
    logger.info("shutdown_complete")


def create_app(
    settings: IngestSettings | None = None,
    service: IngestionService | None = None,
) -> FastAPI:
    """Build and return the FastAPI application."""
    if settings is None:
        settings = service.settings if service is not None else IngestSettings()

    app = FastAPI(
        title="Spendwise Mail Ingestion",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.settings = settings
    if service is not None:
        app.state.service = service

    from spendwise_ingest.routers.accounts import router as accounts_router

    app.include_router(accounts_router)

    @app.get("/health")
    async def health():
        return {"status": "ok", "service": "spendwise-ingest"}

    return app
