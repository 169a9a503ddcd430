"""Shared fixtures for pipeline tests.

Provides:
- InMemoryPipelineRepository: PipelineRepository test double (same
  first-writer-wins semantics for chunks and share links)
- FakeSpeechToText / FakeSummarizer: scripted upstream collaborators
- RecordingSleep / FakeClock: deterministic backoff and idle timing
- A fully wired MeetingPipeline built on the doubles, and one meeting
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable

import pytest
import pytest_asyncio

from src.meetscribe.config import Settings
from src.meetscribe.pipeline.errors import UpstreamRateLimited
from src.meetscribe.pipeline.schemas import (
    AudioChunk,
    Meeting,
    ShareLink,
    SummaryJob,
    SummaryState,
    TranscriptSegment,
)
from src.meetscribe.pipeline.service import MeetingPipeline, build_pipeline

OWNER_ID = "owner-alice"
OTHER_OWNER_ID = "owner-bob"


# ── In-Memory Test Double ────────────────────────────────────────────────────


class InMemoryPipelineRepository:
    """In-memory PipelineRepository for testing without database."""

    def __init__(self) -> None:
        self.meetings: dict[str, Meeting] = {}
        self.chunks: dict[tuple[str, int], AudioChunk] = {}
        self.segments: dict[tuple[str, int], TranscriptSegment] = {}
        self.jobs: dict[str, SummaryJob] = {}
        self.share_links: dict[str, ShareLink] = {}

    async def create_meeting(self, meeting: Meeting) -> Meeting:
        self.meetings[meeting.id] = meeting
        return meeting

    async def get_meeting(self, meeting_id: str) -> Meeting | None:
        return self.meetings.get(meeting_id)

    async def list_meetings(self, owner_id: str) -> list[Meeting]:
        return [m for m in self.meetings.values() if m.owner_id == owner_id]

    async def complete_job(self, job: SummaryJob) -> SummaryJob:
        meeting = self.meetings[job.meeting_id]
        self.jobs[job.id] = job
        self.meetings[job.meeting_id] = meeting.model_copy(
            update={
                "summary_text": job.result_text,
                "summary_job_id": job.id,
                "summarized_at": job.finished_at,
            }
        )
        return job

    async def add_chunk(self, chunk: AudioChunk) -> bool:
        key = (chunk.meeting_id, chunk.sequence_number)
        if key in self.chunks:
            return False
        self.chunks[key] = chunk
        return True

    async def get_chunk(self, meeting_id: str, sequence_number: int) -> AudioChunk | None:
        return self.chunks.get((meeting_id, sequence_number))

    async def list_chunks(self, meeting_id: str) -> list[AudioChunk]:
        return sorted(
            (
                c.model_copy(update={"payload": b""})
                for (mid, _), c in self.chunks.items()
                if mid == meeting_id
            ),
            key=lambda c: c.sequence_number,
        )

    async def save_segment(self, segment: TranscriptSegment) -> TranscriptSegment:
        self.segments[(segment.meeting_id, segment.sequence_number)] = segment
        return segment

    async def list_segments(self, meeting_id: str) -> list[TranscriptSegment]:
        return sorted(
            (s for (mid, _), s in self.segments.items() if mid == meeting_id),
            key=lambda s: s.sequence_number,
        )

    async def save_job(self, job: SummaryJob) -> SummaryJob:
        self.jobs[job.id] = job
        return job

    async def get_current_job(self, meeting_id: str) -> SummaryJob | None:
        jobs = [j for j in self.jobs.values() if j.meeting_id == meeting_id]
        return jobs[-1] if jobs else None

    async def list_jobs(self, meeting_id: str) -> list[SummaryJob]:
        return [j for j in self.jobs.values() if j.meeting_id == meeting_id]

    async def list_active_jobs(self) -> list[SummaryJob]:
        return [j for j in self.jobs.values() if j.state.is_active]

    async def find_share_link(self, meeting_id: str, fingerprint: str) -> ShareLink | None:
        for link in self.share_links.values():
            if link.meeting_id == meeting_id and link.fingerprint == fingerprint:
                return link
        return None

    async def save_share_link(self, link: ShareLink) -> ShareLink:
        existing = await self.find_share_link(link.meeting_id, link.fingerprint)
        if existing is not None:
            return existing
        self.share_links[link.share_id] = link
        return link

    async def get_share_link(self, share_id: str) -> ShareLink | None:
        return self.share_links.get(share_id)


# ── Upstream Doubles ─────────────────────────────────────────────────────────


class FakeSpeechToText:
    """Returns the payload decoded as text unless an outcome is scripted.

    When ``gate`` is set, every call waits on it, holding the assembler
    mid-drain.
    """

    def __init__(self) -> None:
        self.outcomes: dict[bytes, str | Exception] = {}
        self.calls: list[bytes] = []
        self.gate: asyncio.Event | None = None

    async def transcribe(self, payload: bytes, content_type: str) -> str:
        self.calls.append(payload)
        if self.gate is not None:
            await self.gate.wait()
        outcome = self.outcomes.get(payload, payload.decode("utf-8"))
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class FakeSummarizer:
    """Pops scripted outcomes in order; defaults to a summary of the input.

    When ``gate`` is set, every call waits on it before returning, which
    lets tests act while a call is in flight.
    """

    def __init__(self) -> None:
        self.script: list[str | Exception] = []
        self.calls: list[str] = []
        self.gate: asyncio.Event | None = None
        self.entered = asyncio.Event()

    def rate_limit(self, times: int) -> None:
        self.script.extend(UpstreamRateLimited("slow down") for _ in range(times))

    async def summarize(self, transcript: str) -> str:
        self.calls.append(transcript)
        self.entered.set()
        if self.gate is not None:
            await self.gate.wait()
        outcome = self.script.pop(0) if self.script else f"summary: {transcript}"
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class RecordingSleep:
    """Backoff sleep that records delays instead of waiting."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# ── Fixtures ─────────────────────────────────────────────────────────────────


def make_settings(**overrides) -> Settings:
    defaults = {
        "DATABASE_URL": "sqlite+aiosqlite:///:memory:",
        "MAX_CHUNK_BYTES": 1024,
        "MAX_CHUNKS_PER_MEETING": 10,
        "MAX_MEETING_DURATION_SECONDS": 60,
        "SUMMARY_MAX_ATTEMPTS": 3,
        "SUMMARY_BACKOFF_BASE": 2.0,
        "SUMMARY_BACKOFF_MAX": 60.0,
        "SUMMARY_WORKERS": 1,
        "IDLE_FINALIZE_SECONDS": 300.0,
        "IDLE_SWEEP_INTERVAL": 30.0,
    }
    defaults.update(overrides)
    return Settings(_env_file=None, **defaults)


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def repo() -> InMemoryPipelineRepository:
    return InMemoryPipelineRepository()


@pytest.fixture
def stt() -> FakeSpeechToText:
    return FakeSpeechToText()


@pytest.fixture
def summarizer() -> FakeSummarizer:
    return FakeSummarizer()


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def pipeline(settings, repo, stt, summarizer, sleep, clock) -> MeetingPipeline:
    return build_pipeline(
        settings,
        repo,
        stt=stt,
        summarizer=summarizer,
        sleep=sleep,
        clock=clock,
    )


@pytest_asyncio.fixture
async def meeting(pipeline: MeetingPipeline) -> Meeting:
    return await pipeline.start_meeting(OWNER_ID, title="Weekly sync")


@pytest.fixture
def submit(pipeline: MeetingPipeline, meeting: Meeting) -> Callable:
    """Submit chunk ``seq`` of the fixture meeting with text as payload."""

    async def _submit(seq: int, text: str | None = None, **kwargs):
        payload = (text if text is not None else f"part {seq}").encode("utf-8")
        return await pipeline.chunk_store.submit(meeting.id, seq, payload, **kwargs)

    return _submit
