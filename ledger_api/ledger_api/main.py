"""FastAPI application entry-point for the FleetLedger billing service."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from ledger_api import __version__
from ledger_api.config import APISettings, PlatformEnv, load_api_settings
from ledger_api.dependencies import dispose_engine, get_session_factory, init_engine
from ledger_api.middleware import (
    AuthenticationMiddleware,
    PrometheusMiddleware,
    RequestLoggingMiddleware,
    TraceContextMiddleware,
    TraceLoggingFilter,
)
from ledger_api.middleware.trace_context import get_trace_id
from ledger_api.routers import billing, health, webhooks
from ledger_api.routers import metrics as metrics_router
from ledger_api.services.downgrade_scheduler import DowngradeScheduler
from ledger_core.billing.errors import BillingError

logger = logging.getLogger(__name__)

# Third-party loggers that are chatty at INFO.
_QUIET_LOGGERS = ("stripe", "uvicorn.access", "aiosqlite")


def _configure_logging(settings: APISettings) -> None:
    root = logging.getLogger()
    if settings.structured_logging:
        from ledger_api.middleware.json_formatter import JSONFormatter

        handler = logging.StreamHandler()
        handler.setFormatter(JSONFormatter())
        handler.addFilter(TraceLoggingFilter())
        root.handlers[:] = [handler]
    root.setLevel(logging.DEBUG if settings.debug else logging.INFO)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    logger.info("Logging configured (structured=%s, debug=%s)", settings.structured_logging, settings.debug)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application startup / shutdown lifecycle.

    On startup:
    - Configure logging.
    - Initialise the async database engine.
    - Create the billing tables for local SQLite (production uses Alembic).
    - Start the downgrade sweep.

    On shutdown:
    - Stop the sweep, then dispose the engine connection pool.
    """
    settings: APISettings = load_api_settings()
    _configure_logging(settings)

    engine = init_engine(settings)
    is_local = settings.database_url.startswith("sqlite")
    logger.info("Database engine initialised (%s)", "local" if is_local else "postgres")

    if is_local and settings.platform_env == PlatformEnv.DEV:
        from ledger_core.state.sqlite_adapter import create_local_tables

        await create_local_tables(engine, include_crud_tables=True)

    if not settings.billing_enabled:
        logger.warning("Billing is disabled; checkout and webhook endpoints are inert")

    scheduler: DowngradeScheduler | None = None
    if settings.downgrade_sweep_enabled:
        scheduler = DowngradeScheduler(
            get_session_factory(),
            interval_seconds=settings.downgrade_sweep_interval_seconds,
        )
        await scheduler.start()

    yield

    if scheduler is not None:
        await scheduler.stop()
    await dispose_engine()
    logger.info("Application shutdown complete")


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------

# Headers the platform gateway and browser clients may send.
_ALLOWED_HEADERS = [
    "Accept",
    "Content-Type",
    "X-Correlation-ID",
    "X-Gateway-Token",
    "X-Tenant-ID",
    "X-User-ID",
]


def _install_middleware(app: FastAPI, settings: APISettings) -> None:
    # Starlette wraps in reverse order: CORS sees the request first and
    # authentication last, so rejected calls are still traced and counted.
    app.add_middleware(AuthenticationMiddleware, gateway_token=settings.gateway_token.get_secret_value())
    app.add_middleware(PrometheusMiddleware)
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(TraceContextMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=settings.cors_allow_credentials,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=_ALLOWED_HEADERS,
    )


def _install_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(BillingError)
    async def on_billing_error(request: Request, exc: BillingError) -> JSONResponse:
        logger.info("%s on %s: %s", exc.code, request.url.path, exc.message)
        # Processor outages are transient; tell the client when to come back.
        headers = {"Retry-After": "5"} if exc.status_code == 503 else None
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)

    @app.exception_handler(ValueError)
    async def on_value_error(request: Request, exc: ValueError) -> JSONResponse:
        logger.warning("Rejected %s %s: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    @app.exception_handler(SQLAlchemyError)
    async def on_database_error(request: Request, exc: SQLAlchemyError) -> JSONResponse:
        # Never echo driver messages; the trace id links the client to the log line.
        logger.error("Billing store error on %s", request.url.path, exc_info=exc)
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal database error", "trace_id": get_trace_id()},
        )


def create_app(settings: APISettings | None = None) -> FastAPI:
    """Build the billing API with its middleware stack and routers."""
    settings = settings or load_api_settings()

    app = FastAPI(
        title="FleetLedger Billing API",
        description="Plans, credit ledger and payment reconciliation for fleet compliance tenants.",
        version=__version__,
        lifespan=lifespan,
    )
    _install_middleware(app, settings)

    for module in (health, billing, webhooks):
        app.include_router(module.router, prefix="/api/v1")
    # Prometheus scrape target, outside /api/v1 versioning.
    app.include_router(metrics_router.router)

    _install_exception_handlers(app)
    return app


# Module-level application instance used by ``uvicorn ledger_api.main:app``.
app = create_app()
