"""Pydantic v2 schemas for the meeting processing pipeline.

Defines the data contracts for meetings, audio chunks, transcript segments,
summary jobs, share links, and the status projection. Every pipeline
component (chunk store, assembler, job controller, share registry, status
publisher) and the repository import from this module.
"""

from __future__ import annotations

import hashlib
import uuid
from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


def fingerprint(text: str) -> str:
    """Deterministic content hash used for idempotency lookups."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


# ── Enums ────────────────────────────────────────────────────────────────────


class SummaryState(str, Enum):
    """Lifecycle state of a summary job."""

    IDLE = "idle"
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_active(self) -> bool:
        return self in (SummaryState.QUEUED, SummaryState.PROCESSING)


class ChunkDecision(str, Enum):
    """Outcome of a chunk submission."""

    ACCEPTED = "accepted"
    REJECTED = "rejected"


# ── Meeting ──────────────────────────────────────────────────────────────────


class Meeting(BaseModel):
    """A recorded meeting owned by an (externally validated) identity."""

    id: str = Field(default_factory=new_id)
    owner_id: str
    title: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    summary_text: str | None = None
    summary_job_id: str | None = None
    summarized_at: datetime | None = None


# ── Chunks & Segments ────────────────────────────────────────────────────────


class AudioChunk(BaseModel):
    """An uploaded audio chunk, immutable once accepted."""

    meeting_id: str
    sequence_number: int
    size_bytes: int
    duration_ms: int | None = None
    content_type: str = "application/octet-stream"
    uploaded_at: datetime = Field(default_factory=utcnow)
    payload: bytes = Field(default=b"", repr=False, exclude=True)


class ChunkReceipt(BaseModel):
    """Result of ``ChunkStore.submit``."""

    meeting_id: str
    sequence_number: int
    decision: ChunkDecision
    reason: str | None = None
    watermark: int = 0

    @property
    def accepted(self) -> bool:
        return self.decision == ChunkDecision.ACCEPTED


class TranscriptSegment(BaseModel):
    """Transcribed text for one chunk, appended in sequence order only."""

    meeting_id: str
    sequence_number: int
    text: str = ""
    failed: bool = False
    skipped: bool = False
    error: str | None = None
    created_at: datetime = Field(default_factory=utcnow)


class AssembledTranscript(BaseModel):
    """Ordered transcript text up to the current watermark."""

    meeting_id: str
    watermark: int
    segments: list[TranscriptSegment] = Field(default_factory=list)

    @property
    def text(self) -> str:
        return "\n".join(s.text for s in self.segments if s.text)


# ── Summary Jobs ─────────────────────────────────────────────────────────────


class SummaryJob(BaseModel):
    """One summarization attempt cycle for a meeting.

    ``input_text`` is the transcript snapshot taken at trigger time; later
    chunks never change a job that already exists.
    """

    id: str = Field(default_factory=new_id)
    meeting_id: str
    state: SummaryState = SummaryState.QUEUED
    attempts: int = 0
    last_error: str | None = None
    result_text: str | None = None
    input_text: str = Field(default="", repr=False)
    input_fingerprint: str = ""
    created_at: datetime = Field(default_factory=utcnow)
    started_at: datetime | None = None
    finished_at: datetime | None = None


# ── Share Links ──────────────────────────────────────────────────────────────


class ShareLink(BaseModel):
    """Immutable public snapshot of a meeting summary."""

    share_id: str
    meeting_id: str
    summary_text: str
    fingerprint: str
    created_at: datetime = Field(default_factory=utcnow)


# ── Status Projection ────────────────────────────────────────────────────────


class PipelineStatus(BaseModel):
    """Read-only projection used by the UI for progress notifications."""

    meeting_id: str
    job_id: str | None = None
    job_state: SummaryState = SummaryState.IDLE
    attempts: int = 0
    watermark: int = 0
    last_error: str | None = None
    failed_segments: list[int] = Field(default_factory=list)
    has_summary: bool = False
