"""Status publisher -- read-only projection of a meeting's pipeline state.

status() builds a PipelineStatus straight from the meeting coordinator, so
it reflects every transition as soon as the transition has been applied.
publish() fans the same projection out to subscribers (the WebSocket status
stream); subscribers get their own bounded queue and a slow subscriber only
ever loses intermediate snapshots, never the latest one.
"""

from __future__ import annotations

import asyncio
from collections import defaultdict
from collections.abc import AsyncIterator

import structlog

from src.meetscribe.pipeline.coordinator import CoordinatorRegistry, MeetingCoordinator
from src.meetscribe.pipeline.schemas import PipelineStatus, SummaryState

logger = structlog.get_logger(__name__)

SUBSCRIBER_QUEUE_SIZE = 16


def project(coordinator: MeetingCoordinator) -> PipelineStatus:
    job = coordinator.current_job
    return PipelineStatus(
        meeting_id=coordinator.meeting_id,
        job_id=job.id if job else None,
        job_state=job.state if job else SummaryState.IDLE,
        attempts=job.attempts if job else 0,
        watermark=coordinator.watermark,
        last_error=job.last_error if job else None,
        failed_segments=coordinator.failed_segments,
        has_summary=coordinator.has_summary,
    )


class StatusPublisher:
    """Read view over the job controller and assembler state.

    Args:
        coordinators: Registry of per-meeting coordinators.
    """

    def __init__(self, coordinators: CoordinatorRegistry) -> None:
        self._coordinators = coordinators
        self._subscribers: dict[str, set[asyncio.Queue[PipelineStatus]]] = defaultdict(set)

    async def status(self, meeting_id: str) -> PipelineStatus:
        coordinator = await self._coordinators.get(meeting_id)
        return project(coordinator)

    def publish(self, coordinator: MeetingCoordinator) -> PipelineStatus:
        """Push the current projection to every subscriber of the meeting."""
        snapshot = project(coordinator)
        for queue in list(self._subscribers.get(coordinator.meeting_id, ())):
            if queue.full():
                queue.get_nowait()
            queue.put_nowait(snapshot)
        return snapshot

    async def subscribe(self, meeting_id: str) -> AsyncIterator[PipelineStatus]:
        """Yield the current status, then one status per transition."""
        queue: asyncio.Queue[PipelineStatus] = asyncio.Queue(maxsize=SUBSCRIBER_QUEUE_SIZE)
        self._subscribers[meeting_id].add(queue)
        logger.debug("status.subscribed", meeting_id=meeting_id)
        try:
            yield await self.status(meeting_id)
            while True:
                yield await queue.get()
        finally:
            self._subscribers[meeting_id].discard(queue)
            if not self._subscribers[meeting_id]:
                del self._subscribers[meeting_id]
