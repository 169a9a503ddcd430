"""Health check endpoints.

Provides liveness (/health) and readiness (/health/ready) checks.
"""

from __future__ import annotations

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy import text

from src.meetscribe.config import get_settings
from src.meetscribe.core.database import get_engine

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check():
    """Basic liveness check.

    No external dependencies are checked -- just that the server is running.
    """
    settings = get_settings()
    return {"status": "ok", "environment": settings.ENVIRONMENT.value}


async def _check_dependencies(request: Request) -> dict:
    """Check database connectivity, pipeline workers, and provider keys."""
    checks: dict = {"database": "ok", "pipeline": "ok", "stt": "ok", "llm": "ok"}

    try:
        engine = get_engine()
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception as e:
        checks["database"] = "error"
        checks["database_error"] = str(e)

    pipeline = getattr(request.app.state, "pipeline", None)
    if pipeline is None:
        checks["pipeline"] = "error"
    elif not pipeline.workers.running:
        checks["pipeline"] = "stopped"

    settings = get_settings()
    if not settings.DEEPGRAM_API_KEY:
        checks["stt"] = "no_keys"
    if not (settings.ANTHROPIC_API_KEY or settings.OPENAI_API_KEY):
        checks["llm"] = "no_keys"

    return checks


@router.get("/health/ready")
async def readiness_check(request: Request):
    """Readiness check: verifies the database and the pipeline workers.

    Returns 200 if both pass, 503 otherwise. Missing provider keys are
    reported but do not fail readiness.
    """
    checks = await _check_dependencies(request)
    all_healthy = checks.get("database") == "ok" and checks.get("pipeline") == "ok"

    return JSONResponse(
        status_code=status.HTTP_200_OK if all_healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={
            "status": "ready" if all_healthy else "degraded",
            "checks": checks,
        },
    )
