"""Transcript assembler -- ordered transcript from out-of-order chunks.

Keeps, per meeting, the watermark: the highest sequence number n such that
segments 1..n all exist. Each availability signal drains every chunk sitting
at watermark + 1, so a late chunk that fills a gap releases all buffered
chunks behind it in one pass.

A failed speech-to-text call still produces a segment (flagged ``failed``)
and advances the watermark; one bad chunk must not stall the meeting. A
chunk that never arrives can be skipped explicitly.

Lock order is ingest_lock before assembly_lock; nothing takes them the
other way round.
"""

from __future__ import annotations

from typing import Protocol

import structlog

from src.meetscribe.core.monitoring import pipeline_segments_total
from src.meetscribe.pipeline.coordinator import CoordinatorRegistry, MeetingCoordinator
from src.meetscribe.pipeline.errors import InvalidInput
from src.meetscribe.pipeline.repository import PipelineRepository
from src.meetscribe.pipeline.schemas import (
    AssembledTranscript,
    AudioChunk,
    TranscriptSegment,
)
from src.meetscribe.pipeline.status import StatusPublisher

logger = structlog.get_logger(__name__)


class SpeechToText(Protocol):
    """Speech-to-text capability: chunk payload -> text, or raise."""

    async def transcribe(self, payload: bytes, content_type: str) -> str: ...


class TranscriptAssembler:
    """Consumes chunks in sequence order and extends the transcript.

    Args:
        repository: PipelineRepository for chunks and segments.
        coordinators: Registry of per-meeting coordinators.
        stt: Speech-to-text client.
        publisher: StatusPublisher notified after each watermark advance.
    """

    def __init__(
        self,
        repository: PipelineRepository,
        coordinators: CoordinatorRegistry,
        stt: SpeechToText,
        publisher: StatusPublisher,
    ) -> None:
        self._repository = repository
        self._coordinators = coordinators
        self._stt = stt
        self._publisher = publisher

    async def on_chunk_available(self, meeting_id: str, sequence_number: int) -> None:
        """Chunk store listener."""
        coordinator = await self._coordinators.get(meeting_id)
        if sequence_number > coordinator.watermark + 1:
            logger.debug(
                "assembler.chunk_buffered",
                meeting_id=meeting_id,
                sequence_number=sequence_number,
                watermark=coordinator.watermark,
            )
            return
        await self.drain(meeting_id)

    async def drain(self, meeting_id: str) -> int:
        """Transcribe every contiguous chunk after the watermark.

        Returns:
            The watermark after draining.
        """
        coordinator = await self._coordinators.get(meeting_id)
        async with coordinator.assembly_lock:
            await self._drain_locked(coordinator)
            return coordinator.watermark

    async def skip(self, meeting_id: str, sequence_number: int) -> int:
        """Skip a missing chunk at watermark + 1 and keep draining.

        Holds the ingest lock while the skip is recorded, so an upload of the
        same sequence number either lands first (and the skip is refused) or
        is rejected as ``skipped`` afterwards.

        Raises:
            InvalidInput: sequence_number is not the next expected one, or
                the chunk is actually available.
        """
        coordinator = await self._coordinators.get(meeting_id)
        async with coordinator.ingest_lock, coordinator.assembly_lock:
            expected = coordinator.watermark + 1
            if sequence_number != expected:
                raise InvalidInput(
                    f"Only the next expected chunk ({expected}) can be skipped"
                )
            if await self._repository.get_chunk(meeting_id, sequence_number) is not None:
                raise InvalidInput(f"Chunk {sequence_number} is available; nothing to skip")

            segment = TranscriptSegment(
                meeting_id=meeting_id,
                sequence_number=sequence_number,
                skipped=True,
                error="skipped",
            )
            await self._append(coordinator, segment, outcome="skipped")
        return await self.drain(meeting_id)

    async def assembled_transcript(self, meeting_id: str) -> AssembledTranscript:
        """Ordered transcript up to the current watermark (a snapshot)."""
        coordinator = await self._coordinators.get(meeting_id)
        return AssembledTranscript(
            meeting_id=meeting_id,
            watermark=coordinator.watermark,
            segments=list(coordinator.segments),
        )

    # ── Internals ────────────────────────────────────────────────────────

    async def _drain_locked(self, coordinator: MeetingCoordinator) -> None:
        while True:
            next_sequence = coordinator.watermark + 1
            chunk = await self._repository.get_chunk(coordinator.meeting_id, next_sequence)
            if chunk is None:
                return
            segment = await self._transcribe(chunk)
            await self._append(
                coordinator,
                segment,
                outcome="failed" if segment.failed else "transcribed",
            )

    async def _transcribe(self, chunk: AudioChunk) -> TranscriptSegment:
        try:
            text = await self._stt.transcribe(chunk.payload, chunk.content_type)
        except Exception as exc:
            logger.warning(
                "assembler.transcription_failed",
                meeting_id=chunk.meeting_id,
                sequence_number=chunk.sequence_number,
                error=str(exc),
            )
            return TranscriptSegment(
                meeting_id=chunk.meeting_id,
                sequence_number=chunk.sequence_number,
                failed=True,
                error=str(exc) or type(exc).__name__,
            )
        return TranscriptSegment(
            meeting_id=chunk.meeting_id,
            sequence_number=chunk.sequence_number,
            text=text.strip(),
        )

    async def _append(
        self,
        coordinator: MeetingCoordinator,
        segment: TranscriptSegment,
        outcome: str,
    ) -> None:
        await self._repository.save_segment(segment)
        coordinator.segments.append(segment)
        coordinator.watermark = segment.sequence_number
        self._coordinators.touch(coordinator)
        pipeline_segments_total.labels(outcome=outcome).inc()
        logger.info(
            "assembler.segment_appended",
            meeting_id=coordinator.meeting_id,
            sequence_number=segment.sequence_number,
            outcome=outcome,
        )
        self._publisher.publish(coordinator)
