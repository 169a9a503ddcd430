"""Prometheus metrics, Sentry integration, and upstream call tracking.

Provides:
- MetricsMiddleware: ASGI middleware for HTTP request metrics
- Pipeline counters for chunks, segments, and summary job transitions
- track_upstream_call(): Context manager for STT / text-generation metrics
- init_sentry(): Initialize Sentry when a DSN is configured
- get_metrics_response(): Prometheus exposition for /metrics
"""

from __future__ import annotations

import time
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from prometheus_client import (
    REGISTRY,
    Counter,
    Histogram,
    generate_latest,
)
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

# ── HTTP Metrics ─────────────────────────────────────────────────────────────

http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status_code"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

# ── Pipeline Metrics ─────────────────────────────────────────────────────────

pipeline_chunks_total = Counter(
    "pipeline_chunks_total",
    "Chunk submissions by result",
    ["result"],
)

pipeline_segments_total = Counter(
    "pipeline_segments_total",
    "Transcript segments appended by outcome",
    ["outcome"],
)

summary_job_transitions_total = Counter(
    "summary_job_transitions_total",
    "Summary job state transitions by target state",
    ["state"],
)

upstream_requests_total = Counter(
    "upstream_requests_total",
    "External collaborator calls by service and outcome",
    ["service", "outcome"],
)

upstream_request_duration_seconds = Histogram(
    "upstream_request_duration_seconds",
    "External collaborator call duration in seconds",
    ["service"],
    buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0),
)


# ── Metrics Middleware ───────────────────────────────────────────────────────


class MetricsMiddleware(BaseHTTPMiddleware):
    """Records request count and duration per method/endpoint.

    Skips the /metrics endpoint itself to avoid self-referential counting.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if request.url.path == "/metrics":
            return await call_next(request)

        # Route pattern keeps meeting ids out of label cardinality
        start_time = time.perf_counter()
        response = await call_next(request)
        duration = time.perf_counter() - start_time

        route = request.scope.get("route")
        endpoint = getattr(route, "path", request.url.path)

        http_requests_total.labels(
            method=request.method,
            endpoint=endpoint,
            status_code=str(response.status_code),
        ).inc()

        http_request_duration_seconds.labels(
            method=request.method,
            endpoint=endpoint,
        ).observe(duration)

        return response


# ── Upstream Call Helper ─────────────────────────────────────────────────────


@asynccontextmanager
async def track_upstream_call(service: str) -> AsyncGenerator[None, None]:
    """Record duration and outcome of an external collaborator call.

    Usage:
        async with track_upstream_call("stt"):
            text = await client.transcribe(...)
    """
    start_time = time.perf_counter()
    outcome = "success"
    try:
        yield
    except Exception as exc:
        outcome = getattr(exc, "code", "error")
        raise
    finally:
        upstream_requests_total.labels(service=service, outcome=outcome).inc()
        upstream_request_duration_seconds.labels(service=service).observe(
            time.perf_counter() - start_time
        )


# ── Sentry Integration ───────────────────────────────────────────────────────


def init_sentry(dsn: str, environment: str) -> None:
    """Initialize Sentry SDK.

    Args:
        dsn: Sentry DSN string.
        environment: Deployment environment (development, staging, production).
    """
    import sentry_sdk
    from sentry_sdk.integrations.fastapi import FastApiIntegration
    from sentry_sdk.integrations.starlette import StarletteIntegration

    traces_sample_rate = 0.1 if environment == "production" else 1.0

    sentry_sdk.init(
        dsn=dsn,
        environment=environment,
        traces_sample_rate=traces_sample_rate,
        integrations=[
            StarletteIntegration(),
            FastApiIntegration(),
        ],
    )


# ── Metrics Endpoint ─────────────────────────────────────────────────────────


def get_metrics_response() -> Response:
    """Generate Prometheus exposition format response."""
    return Response(
        content=generate_latest(REGISTRY),
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )
