"""Structured request logging middleware.

Every request gets a request id (the caller's X-Request-ID when supplied,
otherwise a fresh UUID) which is echoed on the response. The id and the
caller's X-Owner-Id are bound into structlog's contextvars for the
duration of the request, so chunk, transcript, and summary events logged
while serving it carry them too.

Health-check and scrape traffic (/health, /metrics) is logged at debug level.
"""

from __future__ import annotations

import logging
import time
import uuid

import structlog
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from src.meetscribe.config import Environment, get_settings

logger = structlog.get_logger(__name__)

OWNER_HEADER = "X-Owner-Id"
REQUEST_ID_HEADER = "X-Request-ID"
QUIET_PATH_PREFIXES = ("/health", "/metrics")


def configure_structlog() -> None:
    """Route structlog through stdlib logging; JSON in production, console otherwise."""
    settings = get_settings()
    logging.basicConfig(format="%(message)s", level=settings.LOG_LEVEL.upper())

    renderer = (
        structlog.processors.JSONRenderer()
        if settings.ENVIRONMENT == Environment.production
        else structlog.dev.ConsoleRenderer()
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def _level_for(path: str, status_code: int) -> str:
    if status_code >= 500:
        return "error"
    if status_code >= 400:
        return "warning"
    if path.startswith(QUIET_PATH_PREFIXES):
        return "debug"
    return "info"


class LoggingMiddleware(BaseHTTPMiddleware):
    """Log each request once, with timing and the caller's identity."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        started = time.monotonic()
        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            owner_id=request.headers.get(OWNER_HEADER),
        )
        try:
            try:
                response = await call_next(request)
            except Exception:
                logger.exception(
                    "request_error",
                    method=request.method,
                    path=request.url.path,
                    duration_ms=round((time.monotonic() - started) * 1000, 2),
                )
                raise

            response.headers[REQUEST_ID_HEADER] = request_id
            getattr(logger, _level_for(request.url.path, response.status_code))(
                "request_completed",
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
                duration_ms=round((time.monotonic() - started) * 1000, 2),
            )
            return response
        finally:
            structlog.contextvars.unbind_contextvars("request_id", "owner_id")
