"""Public share link resolution.

No identity header is required: possession of the share id is the
capability.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from src.meetscribe.api.deps import get_pipeline
from src.meetscribe.pipeline.schemas import ShareLink
from src.meetscribe.pipeline.service import MeetingPipeline

router = APIRouter(prefix="/share", tags=["share"])


class SharedSummaryResponse(BaseModel):
    share_id: str
    meeting_id: str
    summary: str
    created_at: str


def share_link_to_response(link: ShareLink) -> SharedSummaryResponse:
    return SharedSummaryResponse(
        share_id=link.share_id,
        meeting_id=link.meeting_id,
        summary=link.summary_text,
        created_at=link.created_at.isoformat(),
    )


@router.get("/{share_id}", response_model=SharedSummaryResponse)
async def resolve_share_link(
    share_id: str,
    pipeline: MeetingPipeline = Depends(get_pipeline),
) -> SharedSummaryResponse:
    """Return the summary snapshot a share link was minted with."""
    link = await pipeline.resolve_share(share_id)
    return share_link_to_response(link)
