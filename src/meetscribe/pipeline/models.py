"""Pipeline persistence models.

Five SQLAlchemy models matching the logical state shape:
- MeetingModel: Meeting owner, creation time, latest summary pointer
- ChunkModel: Accepted audio chunks, unique per (meeting_id, sequence_number)
- SegmentModel: Transcript segments, unique per (meeting_id, sequence_number)
- SummaryJobModel: Current and historical summary jobs
- ShareLinkModel: Public summary snapshots, unique per (meeting_id, fingerprint)

No foreign key constraints (application-level referential integrity via
repository). The unique constraints back the duplicate-chunk and
duplicate-share-link idempotency rules.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    Boolean,
    DateTime,
    Integer,
    LargeBinary,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from src.meetscribe.core.database import Base


class MeetingModel(Base):
    """A recorded meeting and its latest summary."""

    __tablename__ = "meetings"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    owner_id: Mapped[str] = mapped_column(String(200), nullable=False, index=True)
    title: Mapped[str | None] = mapped_column(String(500), nullable=True)
    summary_text: Mapped[str | None] = mapped_column(Text, nullable=True)
    summary_job_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    summarized_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )


class ChunkModel(Base):
    """Accepted audio chunk. Payload kept until the meeting is processed."""

    __tablename__ = "audio_chunks"
    __table_args__ = (
        UniqueConstraint(
            "meeting_id",
            "sequence_number",
            name="uq_chunk_meeting_sequence",
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    meeting_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    sequence_number: Mapped[int] = mapped_column(Integer, nullable=False)
    size_bytes: Mapped[int] = mapped_column(Integer, nullable=False)
    duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    content_type: Mapped[str] = mapped_column(String(100), nullable=False)
    payload: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)
    uploaded_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )


class SegmentModel(Base):
    """Transcript segment for one chunk."""

    __tablename__ = "transcript_segments"
    __table_args__ = (
        UniqueConstraint(
            "meeting_id",
            "sequence_number",
            name="uq_segment_meeting_sequence",
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    meeting_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    sequence_number: Mapped[int] = mapped_column(Integer, nullable=False)
    text: Mapped[str] = mapped_column(Text, default="")
    failed: Mapped[bool] = mapped_column(Boolean, default=False)
    skipped: Mapped[bool] = mapped_column(Boolean, default=False)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )


class SummaryJobModel(Base):
    """Summary job row. The newest row per meeting is the current job."""

    __tablename__ = "summary_jobs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    meeting_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    state: Mapped[str] = mapped_column(String(20), nullable=False)
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    result_text: Mapped[str | None] = mapped_column(Text, nullable=True)
    input_text: Mapped[str] = mapped_column(Text, default="")
    input_fingerprint: Mapped[str] = mapped_column(String(64), default="")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    started_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    finished_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )


class ShareLinkModel(Base):
    """Immutable summary snapshot reachable by an opaque share id."""

    __tablename__ = "share_links"
    __table_args__ = (
        UniqueConstraint(
            "meeting_id",
            "fingerprint",
            name="uq_share_meeting_fingerprint",
        ),
    )

    share_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    meeting_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    summary_text: Mapped[str] = mapped_column(Text, nullable=False)
    fingerprint: Mapped[str] = mapped_column(String(64), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
