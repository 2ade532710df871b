"""FastAPI application entry-point for the Zeus review-request service."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from api import __version__
from api.config import APISettings, PlatformEnv
from api.dependencies import (
    dispose_clients,
    dispose_engine,
    get_google_refresher,
    get_settings,
    get_xero_refresher,
    init_clients,
    init_engine,
    init_fingerprint_caches,
)
from api.middleware.logging import RequestLoggingMiddleware
from api.routers import health, webhooks
from api.services.token_refresh_scheduler import RefreshJob, TokenRefreshScheduler

logger = logging.getLogger(__name__)


def _build_scheduler(settings: APISettings) -> TokenRefreshScheduler:
    jobs = [RefreshJob(get_xero_refresher(), settings.xero_refresh_lookahead_seconds)]
    if settings.google_client_id:
        jobs.append(RefreshJob(get_google_refresher(), settings.google_refresh_lookahead_seconds))
    return TokenRefreshScheduler(
        jobs,
        interval_seconds=settings.token_refresh_interval_seconds,
        initial_delay_seconds=settings.token_refresh_initial_delay_seconds,
    )


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application startup / shutdown lifecycle.

    On startup:
    - Load and validate settings (missing secrets abort start-up outside dev).
    - Initialise the async database engine.
    - Create database tables if they do not exist (dev / SQLite only).
    - Initialise provider clients, token refreshers and dedup caches.
    - Start the background token refresh scheduler.

    On shutdown the scheduler is stopped before the clients and engine
    it depends on are disposed.
    """
    settings = get_settings()

    if settings.structured_logging:
        from api.middleware.json_formatter import configure_json_logging

        configure_json_logging()
        logger.info("Structured JSON logging enabled")

    engine = init_engine(settings)
    is_local = settings.database_url.startswith("sqlite")
    logger.info(
        "Database engine initialised (%s)",
        "local" if is_local else "postgres",
    )

    if settings.platform_env == PlatformEnv.DEV or is_local:
        from zeus_core.state.tables import Base

        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database tables ensured (%s)", "local SQLite" if is_local else "dev auto-create")

    init_clients(settings)
    init_fingerprint_caches(settings)
    logger.info(
        "Webhook intake ready (dedup capacity=%d retain=%d)",
        settings.webhook_dedup_capacity,
        settings.webhook_dedup_retain,
    )

    scheduler: TokenRefreshScheduler | None = None
    if settings.token_refresh_enabled:
        scheduler = _build_scheduler(settings)
        await scheduler.start()

    yield

    if scheduler is not None:
        await scheduler.stop()
    await dispose_clients()
    await dispose_engine()
    logger.info("Application shutdown complete")


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def create_app() -> FastAPI:
    """Construct and configure the FastAPI application."""
    app = FastAPI(
        title="Zeus Review Requests",
        description="Sends review-request SMS messages when accounting invoices are paid.",
        version=__version__,
        lifespan=lifespan,
    )

    app.add_middleware(RequestLoggingMiddleware)

    app.include_router(health.router)
    app.include_router(webhooks.router)

    # -- Exception handlers --------------------------------------------------

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
        # Log the full error for debugging; return a safe message to the client.
        logger.warning("ValueError on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=400, content={"detail": "Invalid request"})

    @app.exception_handler(SQLAlchemyError)
    async def sqlalchemy_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
        logger.error("Database error: %s", exc, exc_info=True)
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal database error"},
        )

    return app


# Module-level application instance used by ``uvicorn api.main:app``.
app = create_app()
