"""V1 API router -- aggregates the meeting and share link routers."""

from __future__ import annotations

from fastapi import APIRouter

from src.meetscribe.api.v1 import meetings, share

router = APIRouter(prefix="/api/v1")

router.include_router(meetings.router)
router.include_router(share.router)
