"""Per-meeting coordinators -- explicit ownership of pipeline state.

Each meeting id maps to exactly one MeetingCoordinator holding the locks
and the in-memory view of that meeting's pipeline (watermark, current
summary job, last activity). Operations on different meetings never share
a lock.

Coordinators hydrate lazily from the repository the first time a meeting
is touched in this process, so a restart resumes from persisted segments
and jobs. The idle sweep releases coordinators nobody is using; the next
touch hydrates them again.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from dataclasses import dataclass, field

import structlog

from src.meetscribe.pipeline.repository import PipelineRepository
from src.meetscribe.pipeline.schemas import SummaryJob, TranscriptSegment

logger = structlog.get_logger(__name__)


@dataclass
class MeetingCoordinator:
    """Mutable pipeline state for one meeting.

    ``ingest_lock`` serializes chunk admission (limits, duplicates).
    ``assembly_lock`` serializes assembler steps (the watermark).
    ``job_lock`` serializes summary job transitions.
    ``cancelled`` is set when the active job is cancelled, waking its backoff.
    """

    meeting_id: str
    ingest_lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    assembly_lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    job_lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    hydrate_lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    cancelled: asyncio.Event = field(default_factory=asyncio.Event)
    hydrated: bool = False
    watermark: int = 0
    segments: list[TranscriptSegment] = field(default_factory=list)
    current_job: SummaryJob | None = None
    has_summary: bool = False
    last_activity: float | None = None
    # Fingerprint of the transcript the idle sweep last triggered on
    idle_fingerprint: str | None = None

    @property
    def failed_segments(self) -> list[int]:
        return [s.sequence_number for s in self.segments if s.failed or s.skipped]


def contiguous_watermark(sequence_numbers: list[int]) -> int:
    """Highest n such that 1..n are all present."""
    present = set(sequence_numbers)
    watermark = 0
    while watermark + 1 in present:
        watermark += 1
    return watermark


class CoordinatorRegistry:
    """Creates and hands out one coordinator per meeting id.

    Args:
        repository: PipelineRepository used to hydrate coordinators.
        clock: Monotonic clock used for activity tracking.
    """

    def __init__(
        self,
        repository: PipelineRepository,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._repository = repository
        self._coordinators: dict[str, MeetingCoordinator] = {}
        self.clock = clock

    def __len__(self) -> int:
        return len(self._coordinators)

    def __iter__(self):
        return iter(list(self._coordinators.values()))

    def release(self, meeting_id: str, *, idle_for: float = 0.0) -> bool:
        """Forget a meeting's coordinator if nothing is using it.

        Keeps it (and returns False) while any of its locks is held, its
        summary job is QUEUED or PROCESSING, or it saw activity within the
        last ``idle_for`` seconds.
        """
        coordinator = self._coordinators.get(meeting_id)
        if coordinator is None or not coordinator.hydrated:
            return False
        locks = (
            coordinator.ingest_lock,
            coordinator.assembly_lock,
            coordinator.job_lock,
            coordinator.hydrate_lock,
        )
        if any(lock.locked() for lock in locks):
            return False
        job = coordinator.current_job
        if job is not None and job.state.is_active:
            return False
        last_activity = coordinator.last_activity
        if last_activity is not None and self.clock() - last_activity < idle_for:
            return False
        del self._coordinators[meeting_id]
        logger.debug("coordinator.released", meeting_id=meeting_id)
        return True

    async def get(self, meeting_id: str) -> MeetingCoordinator:
        """Return the hydrated coordinator for a meeting."""
        coordinator = self._coordinators.get(meeting_id)
        if coordinator is None:
            coordinator = self._coordinators.setdefault(
                meeting_id, MeetingCoordinator(meeting_id=meeting_id)
            )
        if not coordinator.hydrated:
            async with coordinator.hydrate_lock:
                if not coordinator.hydrated:
                    await self._hydrate(coordinator)
        return coordinator

    def touch(self, coordinator: MeetingCoordinator) -> None:
        coordinator.last_activity = self.clock()

    async def _hydrate(self, coordinator: MeetingCoordinator) -> None:
        segments = await self._repository.list_segments(coordinator.meeting_id)
        watermark = contiguous_watermark([s.sequence_number for s in segments])
        coordinator.segments = [s for s in segments if s.sequence_number <= watermark]
        coordinator.watermark = watermark
        coordinator.current_job = await self._repository.get_current_job(
            coordinator.meeting_id
        )
        meeting = await self._repository.get_meeting(coordinator.meeting_id)
        coordinator.has_summary = bool(meeting and meeting.summary_text is not None)
        coordinator.last_activity = self.clock()
        if coordinator.current_job is not None:
            coordinator.idle_fingerprint = coordinator.current_job.input_fingerprint
        coordinator.hydrated = True
        logger.debug(
            "coordinator.hydrated",
            meeting_id=coordinator.meeting_id,
            watermark=watermark,
            job_state=(
                coordinator.current_job.state.value if coordinator.current_job else None
            ),
        )
