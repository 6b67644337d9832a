"""
EchoVault — FastAPI application factory.

Application lifecycle:
  create   → build key ring, audit recorder and note store onto app.state
  startup  → configure logging, run DB migrations
  shutdown → dispose DB engine pool
"""

from __future__ import annotations

import asyncio
from pathlib import Path

import sqlalchemy as sa
import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.api.v1.router import router as v1_router
from app.config.logging_config import configure_logging
from app.config.settings import Environment, Settings, get_settings
from app.core.errors import AppError
from app.core.middleware import (
    CorrelationIDMiddleware,
    SecurityHeadersMiddleware,
    app_error_handler,
    unhandled_exception_handler,
)
from app.core.rate_limit import create_limiter
from app.db.session import dispose_engine, get_session_factory
from app.services.audit.telemetry import TelemetrySink
from app.services.container import build_services

_log = structlog.get_logger(__name__)

_ALEMBIC_INI = Path(__file__).resolve().parents[1] / "alembic.ini"


def _run_migrations(settings: Settings) -> None:
    from alembic import command
    from alembic.config import Config

    alembic_cfg = Config(str(_ALEMBIC_INI))
    alembic_cfg.attributes["configure_logger"] = False
    alembic_cfg.set_main_option("script_location", str(_ALEMBIC_INI.parent / "alembic"))
    alembic_cfg.set_main_option("sqlalchemy.url", settings.database_url)
    command.upgrade(alembic_cfg, "head")


async def _startup(settings: Settings) -> None:
    configure_logging(log_level=settings.log_level.value, json_logs=settings.log_json)
    _log.info(
        "echovault_starting",
        version=settings.app_version,
        environment=settings.environment.value,
    )

    if settings.run_migrations_on_startup:
        # env.py drives its own event loop, so it runs off the main one.
        await asyncio.to_thread(_run_migrations, settings)
        _log.info("migrations_applied")

    _log.info("echovault_ready", host=settings.host, port=settings.port)


async def _shutdown() -> None:
    await dispose_engine()
    _log.info("echovault_shutdown")


def create_app(
    settings: Settings | None = None,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    telemetry: TelemetrySink | None = None,
) -> FastAPI:
    """Application factory. Returns a configured FastAPI instance."""
    settings = settings or get_settings()
    session_factory = session_factory or get_session_factory(settings)
    production = settings.environment == Environment.PRODUCTION

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description=(
            "EchoVault — encrypted clinical notes with a tamper-evident audit trail. "
            "Every read and write of a note is justified and audited."
        ),
        docs_url=None if production else "/docs",
        redoc_url=None if production else "/redoc",
        openapi_url=None if production else "/openapi.json",
    )
    app.state.settings = settings
    app.state.session_factory = session_factory
    app.state.services = build_services(settings, session_factory, telemetry=telemetry)

    # ── Startup / Shutdown ────────────────────────────────────────────── #
    @app.on_event("startup")
    async def on_startup() -> None:
        await _startup(settings)

    @app.on_event("shutdown")
    async def on_shutdown() -> None:
        await _shutdown()

    # ── Rate Limiting ─────────────────────────────────────────────────── #
    app.state.limiter = create_limiter(settings)
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_middleware(SlowAPIMiddleware)

    # ── CORS ──────────────────────────────────────────────────────────── #
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT"],
        allow_headers=["Authorization", "Content-Type", "X-Correlation-ID"],
        expose_headers=["X-Correlation-ID"],
    )

    # ── Custom Middleware (applied in reverse order) ───────────────────── #
    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(CorrelationIDMiddleware)

    # ── Exception Handlers ────────────────────────────────────────────── #
    app.add_exception_handler(AppError, app_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(Exception, unhandled_exception_handler)

    # ── Routes ────────────────────────────────────────────────────────── #
    app.include_router(v1_router)

    # ── Health ────────────────────────────────────────────────────────── #
    @app.get("/health", tags=["health"], summary="Health check")
    async def health() -> dict[str, object]:
        """Returns service health including DB reachability."""
        db_ok = False
        try:
            async with session_factory() as db:
                await db.execute(sa.text("SELECT 1"))
            db_ok = True
        except sa.exc.SQLAlchemyError as exc:
            _log.warning("health_db_unavailable", error=exc.__class__.__name__)

        return {
            "status": "healthy" if db_ok else "degraded",
            "database": "ok" if db_ok else "unavailable",
            "version": settings.app_version,
        }

    # ── Metrics (Prometheus) ──────────────────────────────────────────── #
    @app.get("/metrics", tags=["observability"], summary="Prometheus metrics")
    async def metrics() -> Response:
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    return app
