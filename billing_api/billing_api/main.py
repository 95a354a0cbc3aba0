"""FastAPI application entry-point for the billing API."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from billing_api import __version__
from billing_api.config import APISettings, PlatformEnv, load_api_settings
from billing_api.dependencies import (
    dispose_billing,
    dispose_engine,
    get_session_factory,
    init_billing,
    init_digest_scheduler,
    init_engine,
)
from billing_api.middleware.logging import RequestLoggingMiddleware
from billing_api.middleware.trace_context import TraceContextMiddleware, TraceLoggingFilter
from billing_api.routers import billing, health

logger = logging.getLogger(__name__)


def configure_logging(settings: APISettings) -> None:
    """Install the JSON formatter on the root logger when structured logging is on."""
    if not settings.structured_logging:
        return
    from billing_api.middleware.json_formatter import JSONFormatter

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter())
    handler.addFilter(TraceLoggingFilter())
    root_logger.addHandler(handler)
    root_logger.setLevel(logging.DEBUG if settings.debug else logging.INFO)
    logger.info("Structured JSON logging enabled")


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application startup / shutdown lifecycle.

    On startup:
    - Configure logging.
    - Initialise the async database engine.
    - Create database tables if they do not exist (dev and local SQLite;
      other environments use Alembic migrations).
    - Build the plan catalog, mailer and billing service.
    - Start the digest scheduler when enabled.

    On shutdown:
    - Stop the scheduler, close the mailer, dispose the engine.
    """
    settings: APISettings = load_api_settings()
    configure_logging(settings)

    if settings.billing_enabled and not settings.stripe_webhook_secret.get_secret_value():
        raise RuntimeError("API_STRIPE_WEBHOOK_SECRET is required when billing is enabled. Refusing to start.")

    engine = init_engine(settings)
    is_local = settings.database_url.startswith("sqlite")
    logger.info("Database engine initialised (%s)", "local" if is_local else "postgres")

    if settings.platform_env == PlatformEnv.DEV or is_local:
        from billing_core.state.tables import Base

        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database tables ensured (%s)", "local SQLite" if is_local else "dev auto-migration")

    session_factory = get_session_factory()
    init_billing(settings, session_factory)

    if settings.digest_enabled:
        scheduler = init_digest_scheduler(settings, session_factory)
        await scheduler.start()

    yield

    await dispose_billing()
    await dispose_engine()
    logger.info("Application shutdown complete")


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def create_app() -> FastAPI:
    """Construct and configure the FastAPI application."""
    settings = load_api_settings()

    app = FastAPI(
        title="Billing API",
        description="Stripe webhook reconciliation, entitlements and notification digests.",
        version=__version__,
        lifespan=lifespan,
    )

    # -- Middleware (outermost first) ----------------------------------------

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=settings.cors_allow_credentials,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", "X-Correlation-ID", "Accept"],
    )
    app.add_middleware(TraceContextMiddleware)
    app.add_middleware(RequestLoggingMiddleware)

    # -- Routers -------------------------------------------------------------

    app.include_router(health.router, prefix="/api/v1")
    app.include_router(billing.router, prefix="/api/v1")
    app.include_router(health.readiness_router)

    # -- Exception handlers --------------------------------------------------

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
        logger.warning("ValueError on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=400, content={"detail": "Invalid request"})

    @app.exception_handler(SQLAlchemyError)
    async def sqlalchemy_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
        logger.error("Database error: %s", exc, exc_info=True)
        return JSONResponse(status_code=500, content={"detail": "Internal database error"})

    return app


# Module-level application instance used by ``uvicorn billing_api.main:app``.
app = create_app()
