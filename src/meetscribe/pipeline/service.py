"""MeetingPipeline -- owner-facing facade over the pipeline components.

Wires the chunk store, assembler, job controller, share registry, status
publisher and background workers around one repository and one coordinator
registry, and enforces meeting ownership: a meeting owned by someone else
is reported as not found.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import AsyncIterator, Awaitable, Callable

import structlog

from src.meetscribe.config import Settings
from src.meetscribe.pipeline.assembler import SpeechToText, TranscriptAssembler
from src.meetscribe.pipeline.chunk_store import ChunkStore
from src.meetscribe.pipeline.controller import CANCELLED_ERROR, Summarizer, SummaryJobController
from src.meetscribe.pipeline.coordinator import CoordinatorRegistry
from src.meetscribe.pipeline.errors import MeetingNotFound, NotReady
from src.meetscribe.pipeline.repository import PipelineRepository
from src.meetscribe.pipeline.schemas import (
    AssembledTranscript,
    ChunkReceipt,
    Meeting,
    PipelineStatus,
    ShareLink,
    SummaryJob,
)
from src.meetscribe.pipeline.share_links import ShareLinkRegistry
from src.meetscribe.pipeline.status import StatusPublisher
from src.meetscribe.pipeline.worker import IdleFinalizer, SummaryWorkerPool

logger = structlog.get_logger(__name__)


class MeetingPipeline:
    """Entry point used by the API layer.

    Args:
        repository: Shared PipelineRepository.
        coordinators: Shared CoordinatorRegistry.
        publisher: StatusPublisher.
        chunk_store: ChunkStore (the assembler is registered as listener).
        assembler: TranscriptAssembler.
        controller: SummaryJobController.
        share_links: ShareLinkRegistry.
        workers: SummaryWorkerPool started by start().
        idle_finalizer: Optional IdleFinalizer started by start().
    """

    def __init__(
        self,
        repository: PipelineRepository,
        coordinators: CoordinatorRegistry,
        publisher: StatusPublisher,
        chunk_store: ChunkStore,
        assembler: TranscriptAssembler,
        controller: SummaryJobController,
        share_links: ShareLinkRegistry,
        workers: SummaryWorkerPool,
        idle_finalizer: IdleFinalizer | None = None,
    ) -> None:
        self.repository = repository
        self.coordinators = coordinators
        self.publisher = publisher
        self.chunk_store = chunk_store
        self.assembler = assembler
        self.controller = controller
        self.share_links = share_links
        self.workers = workers
        self.idle_finalizer = idle_finalizer

    # ── Lifecycle ────────────────────────────────────────────────────────

    async def start(self) -> None:
        """Re-queue interrupted jobs and start the background tasks."""
        await self.controller.recover()
        self.workers.start()
        if self.idle_finalizer is not None:
            self.idle_finalizer.start()
        logger.info("pipeline.started")

    async def stop(self) -> None:
        if self.idle_finalizer is not None:
            await self.idle_finalizer.stop()
        await self.workers.stop()
        logger.info("pipeline.stopped")

    # ── Meetings ─────────────────────────────────────────────────────────

    async def start_meeting(self, owner_id: str, title: str | None = None) -> Meeting:
        meeting = await self.repository.create_meeting(Meeting(owner_id=owner_id, title=title))
        logger.info("meeting.created", meeting_id=meeting.id, owner_id=owner_id)
        return meeting

    async def get_meeting(self, owner_id: str, meeting_id: str) -> Meeting:
        """Return the meeting if it exists and belongs to owner_id.

        Raises:
            MeetingNotFound: Unknown meeting or different owner.
        """
        meeting = await self.repository.get_meeting(meeting_id)
        if meeting is None or meeting.owner_id != owner_id:
            raise MeetingNotFound(f"Meeting not found: {meeting_id}")
        return meeting

    async def list_meetings(self, owner_id: str) -> list[Meeting]:
        return await self.repository.list_meetings(owner_id)

    # ── Chunks & Transcript ──────────────────────────────────────────────

    async def submit_chunk(
        self,
        owner_id: str,
        meeting_id: str | None,
        sequence_number: int,
        payload: bytes,
        *,
        duration_ms: int | None = None,
        content_type: str | None = None,
    ) -> ChunkReceipt:
        """Submit a chunk; without a meeting_id a new meeting is started first."""
        if meeting_id is None:
            self.chunk_store.validate(sequence_number, payload, duration_ms)
            meeting_id = (await self.start_meeting(owner_id)).id
        else:
            await self.get_meeting(owner_id, meeting_id)
        return await self.chunk_store.submit(
            meeting_id,
            sequence_number,
            payload,
            duration_ms=duration_ms,
            content_type=content_type,
        )

    async def skip_chunk(self, owner_id: str, meeting_id: str, sequence_number: int) -> int:
        await self.get_meeting(owner_id, meeting_id)
        watermark = await self.assembler.skip(meeting_id, sequence_number)
        logger.info(
            "chunk.skipped",
            meeting_id=meeting_id,
            sequence_number=sequence_number,
            watermark=watermark,
        )
        return watermark

    async def transcript(self, owner_id: str, meeting_id: str) -> AssembledTranscript:
        await self.get_meeting(owner_id, meeting_id)
        return await self.assembler.assembled_transcript(meeting_id)

    # ── Summaries ────────────────────────────────────────────────────────

    async def finalize(self, owner_id: str, meeting_id: str) -> SummaryJob:
        """Trigger summarization of the transcript as it stands."""
        await self.get_meeting(owner_id, meeting_id)
        return await self.controller.trigger(meeting_id)

    async def cancel(
        self, owner_id: str, meeting_id: str, reason: str = CANCELLED_ERROR
    ) -> SummaryJob:
        await self.get_meeting(owner_id, meeting_id)
        return await self.controller.cancel(meeting_id, reason)

    async def summary(self, owner_id: str, meeting_id: str) -> Meeting:
        """Return the meeting carrying its latest completed summary.

        Raises:
            NotReady: No summary has completed yet.
        """
        meeting = await self.get_meeting(owner_id, meeting_id)
        if meeting.summary_text is None:
            raise NotReady("No summary has been generated yet")
        return meeting

    async def status(self, owner_id: str, meeting_id: str) -> PipelineStatus:
        await self.get_meeting(owner_id, meeting_id)
        return await self.publisher.status(meeting_id)

    async def subscribe(self, owner_id: str, meeting_id: str) -> AsyncIterator[PipelineStatus]:
        """Ownership-checked status stream (see StatusPublisher.subscribe)."""
        await self.get_meeting(owner_id, meeting_id)
        return self.publisher.subscribe(meeting_id)

    # ── Share Links ──────────────────────────────────────────────────────

    async def share(self, owner_id: str, meeting_id: str) -> ShareLink:
        await self.get_meeting(owner_id, meeting_id)
        return await self.share_links.create_share_link(meeting_id)

    async def resolve_share(self, share_id: str) -> ShareLink:
        return await self.share_links.resolve_share_link(share_id)


def build_pipeline(
    settings: Settings,
    repository: PipelineRepository,
    *,
    stt: SpeechToText | None = None,
    summarizer: Summarizer | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> MeetingPipeline:
    """Assemble a MeetingPipeline from settings.

    Upstream clients default to Deepgram and the LiteLLM Router; tests pass
    their own.
    """
    if stt is None:
        from src.meetscribe.pipeline.clients.deepgram import DeepgramTranscriber

        stt = DeepgramTranscriber(
            api_key=settings.DEEPGRAM_API_KEY,
            model=settings.DEEPGRAM_MODEL,
            language=settings.DEEPGRAM_LANGUAGE,
        )
    if summarizer is None:
        from src.meetscribe.pipeline.clients.llm import LiteLLMSummarizer

        summarizer = LiteLLMSummarizer(settings)

    coordinators = CoordinatorRegistry(repository, clock=clock)
    publisher = StatusPublisher(coordinators)
    chunk_store = ChunkStore(
        repository,
        coordinators,
        max_chunk_bytes=settings.MAX_CHUNK_BYTES,
        max_chunks=settings.MAX_CHUNKS_PER_MEETING,
        max_duration_seconds=settings.MAX_MEETING_DURATION_SECONDS,
    )
    assembler = TranscriptAssembler(repository, coordinators, stt, publisher)
    chunk_store.add_listener(assembler.on_chunk_available)
    controller = SummaryJobController(
        repository,
        coordinators,
        assembler,
        summarizer,
        publisher,
        max_attempts=settings.SUMMARY_MAX_ATTEMPTS,
        backoff_base=settings.SUMMARY_BACKOFF_BASE,
        backoff_max=settings.SUMMARY_BACKOFF_MAX,
        sleep=sleep,
    )
    idle_finalizer = None
    if settings.IDLE_FINALIZE_SECONDS > 0:
        idle_finalizer = IdleFinalizer(
            coordinators,
            assembler,
            controller,
            idle_seconds=settings.IDLE_FINALIZE_SECONDS,
            interval=settings.IDLE_SWEEP_INTERVAL,
        )
    return MeetingPipeline(
        repository=repository,
        coordinators=coordinators,
        publisher=publisher,
        chunk_store=chunk_store,
        assembler=assembler,
        controller=controller,
        share_links=ShareLinkRegistry(repository, coordinators),
        workers=SummaryWorkerPool(controller, workers=settings.SUMMARY_WORKERS),
        idle_finalizer=idle_finalizer,
    )
