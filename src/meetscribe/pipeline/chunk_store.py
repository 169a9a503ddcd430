"""Chunk store -- admission and persistence of uploaded audio chunks.

Validates a submission against the size, count, and total-duration limits,
persists it keyed by (meeting_id, sequence_number), and signals listeners
that the sequence number is available. Ordering is not this module's
concern; the assembler consumes availability signals.

Duplicate submissions are rejected rather than overwritten so that client
retries cannot corrupt ordering. A sequence number at or below the watermark
that was never stored has been skipped; a late upload of it is rejected and
not persisted.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable

import structlog

from src.meetscribe.core.monitoring import pipeline_chunks_total
from src.meetscribe.pipeline.coordinator import CoordinatorRegistry
from src.meetscribe.pipeline.errors import (
    DuplicateRequest,
    InvalidInput,
    MeetingNotFound,
    PayloadTooLarge,
)
from src.meetscribe.pipeline.repository import PipelineRepository
from src.meetscribe.pipeline.schemas import AudioChunk, ChunkDecision, ChunkReceipt

logger = structlog.get_logger(__name__)

ChunkListener = Callable[[str, int], Awaitable[None]]

DEFAULT_CONTENT_TYPE = "application/octet-stream"
SKIPPED = "skipped"


class ChunkStore:
    """Stores audio chunks and reports their availability.

    Args:
        repository: PipelineRepository for chunk persistence.
        coordinators: Registry of per-meeting coordinators.
        max_chunk_bytes: Upper bound for a single payload.
        max_chunks: Upper bound for the number of chunks per meeting.
        max_duration_seconds: Upper bound for the summed chunk durations.
    """

    def __init__(
        self,
        repository: PipelineRepository,
        coordinators: CoordinatorRegistry,
        *,
        max_chunk_bytes: int,
        max_chunks: int,
        max_duration_seconds: float,
    ) -> None:
        self._repository = repository
        self._coordinators = coordinators
        self._max_chunk_bytes = max_chunk_bytes
        self._max_chunks = max_chunks
        self._max_duration_ms = int(max_duration_seconds * 1000)
        self._listeners: list[ChunkListener] = []

    @property
    def max_chunk_bytes(self) -> int:
        return self._max_chunk_bytes

    def add_listener(self, listener: ChunkListener) -> None:
        self._listeners.append(listener)

    async def submit(
        self,
        meeting_id: str,
        sequence_number: int,
        payload: bytes,
        *,
        duration_ms: int | None = None,
        content_type: str | None = None,
    ) -> ChunkReceipt:
        """Accept or reject one chunk.

        Raises:
            InvalidInput: Bad sequence number, empty payload, or a limit
                would be exceeded.
            PayloadTooLarge: Payload exceeds max_chunk_bytes.
            MeetingNotFound: No such meeting.

        Returns:
            ChunkReceipt; duplicates and already-skipped sequence numbers
            come back as a REJECTED receipt with reason ``duplicate`` or
            ``skipped`` rather than an exception.
        """
        try:
            self.validate(sequence_number, payload, duration_ms)
            if await self._repository.get_meeting(meeting_id) is None:
                raise MeetingNotFound(f"Unknown meeting: {meeting_id}")
        except InvalidInput as exc:
            self._log_rejection(meeting_id, sequence_number, exc.code)
            raise

        coordinator = await self._coordinators.get(meeting_id)
        async with coordinator.ingest_lock:
            existing = await self._repository.list_chunks(meeting_id)
            if any(c.sequence_number == sequence_number for c in existing):
                return self._rejected(
                    meeting_id, sequence_number, coordinator.watermark, DuplicateRequest.code
                )
            if sequence_number <= coordinator.watermark:
                return self._rejected(
                    meeting_id, sequence_number, coordinator.watermark, SKIPPED
                )
            try:
                self._check_limits(existing, duration_ms)
            except InvalidInput as exc:
                self._log_rejection(meeting_id, sequence_number, exc.code)
                raise

            chunk = AudioChunk(
                meeting_id=meeting_id,
                sequence_number=sequence_number,
                size_bytes=len(payload),
                duration_ms=duration_ms,
                content_type=content_type or DEFAULT_CONTENT_TYPE,
                payload=payload,
            )
            if not await self._repository.add_chunk(chunk):
                return self._rejected(
                    meeting_id, sequence_number, coordinator.watermark, DuplicateRequest.code
                )
            self._coordinators.touch(coordinator)

        pipeline_chunks_total.labels(result="accepted").inc()
        logger.info(
            "chunk.accepted",
            meeting_id=meeting_id,
            sequence_number=sequence_number,
            size_bytes=len(payload),
        )

        for listener in self._listeners:
            await listener(meeting_id, sequence_number)

        return ChunkReceipt(
            meeting_id=meeting_id,
            sequence_number=sequence_number,
            decision=ChunkDecision.ACCEPTED,
            watermark=coordinator.watermark,
        )

    def validate(self, sequence_number: int, payload: bytes, duration_ms: int | None) -> None:
        """Check a submission against the per-chunk rules (no lookups)."""
        if sequence_number < 1:
            raise InvalidInput(f"Sequence numbers start at 1, got {sequence_number}")
        if not payload:
            raise InvalidInput("Empty chunk payload")
        if len(payload) > self._max_chunk_bytes:
            raise PayloadTooLarge(
                f"Chunk of {len(payload)} bytes exceeds limit of {self._max_chunk_bytes}"
            )
        if duration_ms is not None and duration_ms < 0:
            raise InvalidInput("duration_ms must not be negative")

    def _check_limits(self, existing: list[AudioChunk], duration_ms: int | None) -> None:
        if len(existing) >= self._max_chunks:
            raise InvalidInput(f"Meeting already holds {self._max_chunks} chunks")
        total_ms = sum(c.duration_ms or 0 for c in existing) + (duration_ms or 0)
        if total_ms > self._max_duration_ms:
            raise InvalidInput(
                f"Meeting audio would exceed {self._max_duration_ms // 1000} seconds"
            )

    def _rejected(
        self, meeting_id: str, sequence_number: int, watermark: int, reason: str
    ) -> ChunkReceipt:
        self._log_rejection(meeting_id, sequence_number, reason)
        return ChunkReceipt(
            meeting_id=meeting_id,
            sequence_number=sequence_number,
            decision=ChunkDecision.REJECTED,
            reason=reason,
            watermark=watermark,
        )

    @staticmethod
    def _log_rejection(meeting_id: str, sequence_number: int, reason: str) -> None:
        pipeline_chunks_total.labels(result=reason).inc()
        logger.info(
            "chunk.rejected",
            meeting_id=meeting_id,
            sequence_number=sequence_number,
            reason=reason,
        )
