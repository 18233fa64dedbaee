"""FastAPI application entry-point for the billing and entitlement API."""

from __future__ import annotations

import logging
import os
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from billing_engine.errors import BillingError
from billing_engine.state.database import create_tables
from billing_engine.trial import drain_abuse_alerts
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from api import __version__
from api.config import APISettings, PlatformEnv, load_api_settings
from api.dependencies import (
    dispose_engine,
    dispose_notifier,
    dispose_razorpay_client,
    init_engine,
    init_notifier,
    init_razorpay_client,
)
from api.middleware.auth import AuthenticationMiddleware
from api.middleware.logging import RequestLoggingMiddleware
from api.middleware.rate_limit import RateLimitConfig, RateLimitMiddleware
from api.routers import admin, billing, health, referrals, reports, seats, trial

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application startup / shutdown lifecycle.

    On startup:
    - Initialise the async database engine.
    - Create database tables if they do not exist (dev and SQLite only).
    - Initialise the Razorpay and e-mail HTTP clients.

    On shutdown:
    - Wait for abuse alerts still being sent.
    - Close both HTTP clients.
    - Dispose the database engine connection pool.
    """
    settings: APISettings = load_api_settings()

    # Fail fast: refuse to start in production/staging without JWT_SECRET.
    if settings.platform_env in (PlatformEnv.STAGING, PlatformEnv.PRODUCTION) and not os.environ.get("JWT_SECRET"):
        raise RuntimeError(
            f"JWT_SECRET environment variable is required in {settings.platform_env.value} mode. Refusing to start."
        )

    engine = init_engine(settings)
    is_local = settings.database_url.startswith("sqlite")
    logger.info(
        "Database engine initialised (%s, %s)",
        settings.database_url[:40] + "...",
        "local" if is_local else "postgres",
    )

    if settings.platform_env == PlatformEnv.DEV or is_local:
        await create_tables(engine)
        logger.info("Database tables ensured (%s)", "local SQLite" if is_local else "dev auto-migration")

    init_razorpay_client(settings)
    if not settings.payments_configured:
        logger.warning("Razorpay credentials not set; payment endpoints will return 503")

    notifier = init_notifier(settings)
    if not notifier.enabled:
        logger.info("E-mail notifications disabled (no Resend API key or admin address)")

    if settings.structured_logging:
        from api.middleware.json_formatter import JSONFormatter

        root_logger = logging.getLogger()
        root_logger.handlers.clear()
        handler = logging.StreamHandler()
        handler.setFormatter(JSONFormatter())
        root_logger.addHandler(handler)
        root_logger.setLevel(logging.INFO)
        logger.info("Structured JSON logging enabled")

    yield

    # Shutdown.
    await drain_abuse_alerts()
    await dispose_notifier()
    await dispose_razorpay_client()
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
        description="Subscription billing, seat licensing and trial entitlement.",
        version=__version__,
        lifespan=lifespan,
    )

    # -- Middleware (innermost first) ----------------------------------------

    # Rate limiting runs inside authentication so budgets key on the user.
    app.add_middleware(
        RateLimitMiddleware,
        config=RateLimitConfig(
            enabled=settings.rate_limit_enabled,
            standard_per_minute=settings.rate_limit_standard_per_minute,
            payment_per_minute=settings.rate_limit_payment_per_minute,
            expensive_per_minute=settings.rate_limit_expensive_per_minute,
            auth_per_minute=settings.rate_limit_auth_per_minute,
        ),
    )
    app.add_middleware(AuthenticationMiddleware)
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=settings.cors_allow_credentials,
        allow_methods=["GET", "POST", "PUT", "OPTIONS"],
        allow_headers=[
            "Authorization",
            "Content-Type",
            "X-Correlation-ID",
            "Accept",
        ],
    )

    # -- Routers -------------------------------------------------------------

    app.include_router(health.router, prefix="/api/v1")
    app.include_router(billing.router, prefix="/api/v1")
    app.include_router(seats.router, prefix="/api/v1")
    app.include_router(trial.router, prefix="/api/v1")
    app.include_router(reports.router, prefix="/api/v1")
    app.include_router(referrals.router, prefix="/api/v1")
    app.include_router(admin.router, prefix="/api/v1")

    # Readiness check lives outside versioning.
    app.include_router(health.readiness_router)

    # -- Exception handlers --------------------------------------------------

    @app.exception_handler(BillingError)
    async def billing_error_handler(request: Request, exc: BillingError) -> JSONResponse:
        log = logger.error if exc.status_code >= 500 else logger.info
        log("%s on %s: %s", type(exc).__name__, request.url.path, exc)
        return JSONResponse(status_code=exc.status_code, content={"detail": str(exc)})

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
        # Log the full error for debugging; return a safe message to the client.
        logger.warning("ValueError on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=400, content={"detail": "Invalid request"})

    @app.exception_handler(PermissionError)
    async def permission_error_handler(request: Request, exc: PermissionError) -> JSONResponse:
        logger.warning("PermissionError on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=403, content={"detail": "Permission denied"})

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
