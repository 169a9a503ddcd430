"""Share link registry -- public, immutable summary snapshots.

Creation is idempotent per (meeting_id, fingerprint of the summary text):
repeated requests for an unchanged summary return the same share id, and a
regenerated summary gets a new id while older links keep resolving to the
snapshot they were minted with.
"""

from __future__ import annotations

import secrets

import structlog

from src.meetscribe.pipeline.coordinator import CoordinatorRegistry
from src.meetscribe.pipeline.errors import NotReady, ShareLinkNotFound
from src.meetscribe.pipeline.repository import PipelineRepository
from src.meetscribe.pipeline.schemas import ShareLink, SummaryState, fingerprint

logger = structlog.get_logger(__name__)

SHARE_ID_BYTES = 16


class ShareLinkRegistry:
    """Issues and resolves share links.

    Args:
        repository: PipelineRepository for share link persistence.
        coordinators: Registry of per-meeting coordinators (current job).
    """

    def __init__(
        self,
        repository: PipelineRepository,
        coordinators: CoordinatorRegistry,
    ) -> None:
        self._repository = repository
        self._coordinators = coordinators

    async def create_share_link(self, meeting_id: str) -> ShareLink:
        """Return the share link for the meeting's current summary.

        Raises:
            NotReady: The current summary job is not COMPLETED.
        """
        coordinator = await self._coordinators.get(meeting_id)
        async with coordinator.job_lock:
            job = coordinator.current_job
            if job is None or job.state != SummaryState.COMPLETED or job.result_text is None:
                raise NotReady("Summary is not ready to share")
            summary = job.result_text

        summary_fingerprint = fingerprint(summary)
        existing = await self._repository.find_share_link(meeting_id, summary_fingerprint)
        if existing is not None:
            logger.info(
                "share_link.reused",
                meeting_id=meeting_id,
                share_id=existing.share_id,
            )
            return existing

        link = await self._repository.save_share_link(
            ShareLink(
                share_id=secrets.token_urlsafe(SHARE_ID_BYTES),
                meeting_id=meeting_id,
                summary_text=summary,
                fingerprint=summary_fingerprint,
            )
        )
        logger.info("share_link.created", meeting_id=meeting_id, share_id=link.share_id)
        return link

    async def resolve_share_link(self, share_id: str) -> ShareLink:
        """Public lookup; requires no owner identity.

        Raises:
            ShareLinkNotFound: Unknown share id.
        """
        link = await self._repository.get_share_link(share_id)
        if link is None:
            raise ShareLinkNotFound("Share link not found")
        return link
