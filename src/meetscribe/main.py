"""FastAPI application factory.

Creates the app with logging middleware, metrics middleware, CORS, Sentry,
lifespan events for database initialization and the pipeline workers, the
health routes, and the v1 API router.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from collections.abc import AsyncGenerator

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.requests import Request
from fastapi.responses import Response

from src.meetscribe.config import get_settings
from src.meetscribe.core.database import close_db, get_engine, init_db, session_factory_for
from src.meetscribe.core.monitoring import MetricsMiddleware, get_metrics_response, init_sentry
from src.meetscribe.api.errors import register_exception_handlers
from src.meetscribe.api.middleware.logging import LoggingMiddleware, configure_structlog
from src.meetscribe.api.v1 import health
from src.meetscribe.api.v1.router import router as v1_router
from src.meetscribe.pipeline.repository import PipelineRepository
from src.meetscribe.pipeline.service import build_pipeline


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: init DB, Sentry and the pipeline; stop them on shutdown."""
    log = structlog.get_logger(__name__)
    settings = get_settings()
    configure_structlog()
    await init_db()

    # Initialize Sentry if DSN is configured
    if settings.SENTRY_DSN:
        init_sentry(dsn=settings.SENTRY_DSN, environment=settings.ENVIRONMENT.value)

    # Tests may install their own pipeline before startup
    pipeline = getattr(app.state, "pipeline", None)
    if pipeline is None:
        pipeline = build_pipeline(
            settings, PipelineRepository(session_factory_for(get_engine()))
        )
        app.state.pipeline = pipeline
    await pipeline.start()
    log.info("app.started", environment=settings.ENVIRONMENT.value)

    yield

    # ── Shutdown ──────────────────────────────────────────────────────────
    await pipeline.stop()
    await close_db()
    log.info("app.stopped")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="Meetscribe API",
        version="0.1.0",
        description="Chunked meeting audio to ordered transcripts, summaries and share links",
        lifespan=lifespan,
    )

    # Middleware is added in reverse order (last added = outermost)

    # CORS middleware
    if settings.CORS_ALLOWED_ORIGINS == "*":
        origins = ["*"]
    else:
        origins = [o.strip() for o in settings.CORS_ALLOWED_ORIGINS.split(",")]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Logging middleware (logs every request with timing)
    app.add_middleware(LoggingMiddleware)

    # Metrics middleware (outermost -- records Prometheus metrics for all requests)
    app.add_middleware(MetricsMiddleware)

    register_exception_handlers(app)

    app.include_router(health.router)
    app.include_router(v1_router)

    # Prometheus metrics endpoint (infrastructure route, outside v1 router)
    @app.get("/metrics", include_in_schema=False)
    async def metrics(request: Request) -> Response:
        """Prometheus metrics endpoint."""
        return get_metrics_response()

    return app


# Module-level app for uvicorn
app = create_app()
