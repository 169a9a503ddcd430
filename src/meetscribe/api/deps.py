"""FastAPI dependency injection for the pipeline and caller identity.

Identity is established upstream (the auth layer in front of this service)
and arrives as an already-validated X-Owner-Id header.
"""

from __future__ import annotations

from fastapi import Header, HTTPException, Request, status

from src.meetscribe.pipeline.service import MeetingPipeline


def get_pipeline(request: Request) -> MeetingPipeline:
    """Retrieve MeetingPipeline from app.state, 503 if not available."""
    pipeline = getattr(request.app.state, "pipeline", None)
    if pipeline is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Meeting pipeline not initialized",
        )
    return pipeline


async def get_owner_id(
    x_owner_id: str | None = Header(default=None, alias="X-Owner-Id"),
) -> str:
    """Return the caller's owner id.

    Raises:
        HTTPException(401): If the identity header is missing or blank.
    """
    if not x_owner_id or not x_owner_id.strip():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing X-Owner-Id header",
        )
    return x_owner_id.strip()
