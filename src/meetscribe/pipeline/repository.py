"""Pipeline repository -- async persistence for all pipeline entities.

Provides PipelineRepository with the session_factory callable pattern.
Handles serialization between Pydantic schemas and SQLAlchemy models for
meetings, chunks, transcript segments, summary jobs, and share links.

Duplicate chunks and duplicate share links are detected through the unique
constraints on the models, so first-writer-wins holds even across
processes sharing one database.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, Callable

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from src.meetscribe.pipeline.models import (
    ChunkModel,
    MeetingModel,
    SegmentModel,
    ShareLinkModel,
    SummaryJobModel,
)
from src.meetscribe.pipeline.schemas import (
    AudioChunk,
    Meeting,
    ShareLink,
    SummaryJob,
    SummaryState,
    TranscriptSegment,
)

logger = structlog.get_logger(__name__)


# ── Serialization Helpers ───────────────────────────────────────────────────


def _model_to_meeting(model: MeetingModel) -> Meeting:
    return Meeting(
        id=model.id,
        owner_id=model.owner_id,
        title=model.title,
        created_at=model.created_at,
        summary_text=model.summary_text,
        summary_job_id=model.summary_job_id,
        summarized_at=model.summarized_at,
    )


def _model_to_segment(model: SegmentModel) -> TranscriptSegment:
    return TranscriptSegment(
        meeting_id=model.meeting_id,
        sequence_number=model.sequence_number,
        text=model.text or "",
        failed=bool(model.failed),
        skipped=bool(model.skipped),
        error=model.error,
        created_at=model.created_at,
    )


def _model_to_job(model: SummaryJobModel) -> SummaryJob:
    return SummaryJob(
        id=model.id,
        meeting_id=model.meeting_id,
        state=SummaryState(model.state),
        attempts=model.attempts or 0,
        last_error=model.last_error,
        result_text=model.result_text,
        input_text=model.input_text or "",
        input_fingerprint=model.input_fingerprint or "",
        created_at=model.created_at,
        started_at=model.started_at,
        finished_at=model.finished_at,
    )


def _job_to_model(job: SummaryJob) -> SummaryJobModel:
    return SummaryJobModel(
        id=job.id,
        meeting_id=job.meeting_id,
        state=job.state.value,
        attempts=job.attempts,
        last_error=job.last_error,
        result_text=job.result_text,
        input_text=job.input_text,
        input_fingerprint=job.input_fingerprint,
        created_at=job.created_at,
        started_at=job.started_at,
        finished_at=job.finished_at,
    )


def _model_to_share_link(model: ShareLinkModel) -> ShareLink:
    return ShareLink(
        share_id=model.share_id,
        meeting_id=model.meeting_id,
        summary_text=model.summary_text,
        fingerprint=model.fingerprint,
        created_at=model.created_at,
    )


# ── Repository ──────────────────────────────────────────────────────────────


class PipelineRepository:
    """Async CRUD operations for all pipeline entities.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(
        self, session_factory: Callable[..., AsyncGenerator[AsyncSession, None]]
    ) -> None:
        self._session_factory = session_factory

    # ── Meetings ─────────────────────────────────────────────────────────

    async def create_meeting(self, meeting: Meeting) -> Meeting:
        async for session in self._session_factory():
            model = MeetingModel(
                id=meeting.id,
                owner_id=meeting.owner_id,
                title=meeting.title,
                created_at=meeting.created_at,
            )
            session.add(model)
            await session.commit()
            await session.refresh(model)
            return _model_to_meeting(model)

    async def get_meeting(self, meeting_id: str) -> Meeting | None:
        async for session in self._session_factory():
            model = await session.get(MeetingModel, meeting_id)
            if model is None:
                return None
            return _model_to_meeting(model)

    async def list_meetings(self, owner_id: str) -> list[Meeting]:
        async for session in self._session_factory():
            stmt = (
                select(MeetingModel)
                .where(MeetingModel.owner_id == owner_id)
                .order_by(MeetingModel.created_at)
            )
            result = await session.execute(stmt)
            return [_model_to_meeting(m) for m in result.scalars().all()]

    # ── Chunks ───────────────────────────────────────────────────────────

    async def add_chunk(self, chunk: AudioChunk) -> bool:
        """Persist a chunk. Returns False if the sequence number is taken."""
        async for session in self._session_factory():
            session.add(
                ChunkModel(
                    meeting_id=chunk.meeting_id,
                    sequence_number=chunk.sequence_number,
                    size_bytes=chunk.size_bytes,
                    duration_ms=chunk.duration_ms,
                    content_type=chunk.content_type,
                    payload=chunk.payload,
                    uploaded_at=chunk.uploaded_at,
                )
            )
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                logger.info(
                    "repository.duplicate_chunk",
                    meeting_id=chunk.meeting_id,
                    sequence_number=chunk.sequence_number,
                )
                return False
            return True

    async def get_chunk(self, meeting_id: str, sequence_number: int) -> AudioChunk | None:
        async for session in self._session_factory():
            stmt = select(ChunkModel).where(
                ChunkModel.meeting_id == meeting_id,
                ChunkModel.sequence_number == sequence_number,
            )
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            if model is None:
                return None
            return AudioChunk(
                meeting_id=model.meeting_id,
                sequence_number=model.sequence_number,
                size_bytes=model.size_bytes,
                duration_ms=model.duration_ms,
                content_type=model.content_type,
                uploaded_at=model.uploaded_at,
                payload=model.payload,
            )

    async def list_chunks(self, meeting_id: str) -> list[AudioChunk]:
        """List chunk metadata (payloads are not loaded)."""
        async for session in self._session_factory():
            stmt = (
                select(
                    ChunkModel.meeting_id,
                    ChunkModel.sequence_number,
                    ChunkModel.size_bytes,
                    ChunkModel.duration_ms,
                    ChunkModel.content_type,
                    ChunkModel.uploaded_at,
                )
                .where(ChunkModel.meeting_id == meeting_id)
                .order_by(ChunkModel.sequence_number)
            )
            result = await session.execute(stmt)
            return [
                AudioChunk(
                    meeting_id=row.meeting_id,
                    sequence_number=row.sequence_number,
                    size_bytes=row.size_bytes,
                    duration_ms=row.duration_ms,
                    content_type=row.content_type,
                    uploaded_at=row.uploaded_at,
                )
                for row in result.all()
            ]

    # ── Segments ─────────────────────────────────────────────────────────

    async def save_segment(self, segment: TranscriptSegment) -> TranscriptSegment:
        async for session in self._session_factory():
            model = SegmentModel(
                meeting_id=segment.meeting_id,
                sequence_number=segment.sequence_number,
                text=segment.text,
                failed=segment.failed,
                skipped=segment.skipped,
                error=segment.error,
                created_at=segment.created_at,
            )
            session.add(model)
            await session.commit()
            return segment

    async def list_segments(self, meeting_id: str) -> list[TranscriptSegment]:
        async for session in self._session_factory():
            stmt = (
                select(SegmentModel)
                .where(SegmentModel.meeting_id == meeting_id)
                .order_by(SegmentModel.sequence_number)
            )
            result = await session.execute(stmt)
            return [_model_to_segment(m) for m in result.scalars().all()]

    # ── Summary Jobs ─────────────────────────────────────────────────────

    async def save_job(self, job: SummaryJob) -> SummaryJob:
        """Insert or update a job row."""
        async for session in self._session_factory():
            await session.merge(_job_to_model(job))
            await session.commit()
            return job

    async def complete_job(self, job: SummaryJob) -> SummaryJob:
        """Store a COMPLETED job and point its meeting at the result.

        Both writes commit together; on failure neither is visible.
        """
        async for session in self._session_factory():
            await session.merge(_job_to_model(job))
            await session.execute(
                update(MeetingModel)
                .where(MeetingModel.id == job.meeting_id)
                .values(
                    summary_text=job.result_text,
                    summary_job_id=job.id,
                    summarized_at=job.finished_at,
                )
            )
            await session.commit()
            return job

    async def get_current_job(self, meeting_id: str) -> SummaryJob | None:
        """Return the newest job for a meeting."""
        async for session in self._session_factory():
            stmt = (
                select(SummaryJobModel)
                .where(SummaryJobModel.meeting_id == meeting_id)
                .order_by(SummaryJobModel.created_at.desc())
                .limit(1)
            )
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            if model is None:
                return None
            return _model_to_job(model)

    async def list_jobs(self, meeting_id: str) -> list[SummaryJob]:
        async for session in self._session_factory():
            stmt = (
                select(SummaryJobModel)
                .where(SummaryJobModel.meeting_id == meeting_id)
                .order_by(SummaryJobModel.created_at)
            )
            result = await session.execute(stmt)
            return [_model_to_job(m) for m in result.scalars().all()]

    async def list_active_jobs(self) -> list[SummaryJob]:
        """Jobs left QUEUED or PROCESSING, e.g. by a restart."""
        async for session in self._session_factory():
            stmt = (
                select(SummaryJobModel)
                .where(
                    SummaryJobModel.state.in_(
                        [SummaryState.QUEUED.value, SummaryState.PROCESSING.value]
                    )
                )
                .order_by(SummaryJobModel.created_at)
            )
            result = await session.execute(stmt)
            return [_model_to_job(m) for m in result.scalars().all()]

    # ── Share Links ──────────────────────────────────────────────────────

    async def find_share_link(self, meeting_id: str, fingerprint: str) -> ShareLink | None:
        async for session in self._session_factory():
            stmt = select(ShareLinkModel).where(
                ShareLinkModel.meeting_id == meeting_id,
                ShareLinkModel.fingerprint == fingerprint,
            )
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            if model is None:
                return None
            return _model_to_share_link(model)

    async def save_share_link(self, link: ShareLink) -> ShareLink:
        """Persist a share link, returning the existing one on a fingerprint clash."""
        async for session in self._session_factory():
            session.add(
                ShareLinkModel(
                    share_id=link.share_id,
                    meeting_id=link.meeting_id,
                    summary_text=link.summary_text,
                    fingerprint=link.fingerprint,
                    created_at=link.created_at,
                )
            )
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                existing = await self.find_share_link(link.meeting_id, link.fingerprint)
                if existing is None:
                    raise
                return existing
            return link

    async def get_share_link(self, share_id: str) -> ShareLink | None:
        async for session in self._session_factory():
            model = await session.get(ShareLinkModel, share_id)
            if model is None:
                return None
            return _model_to_share_link(model)
