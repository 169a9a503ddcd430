"""REST API and WebSocket endpoints for meeting processing.

Provides endpoints for starting meetings, uploading audio chunks (in any
order), skipping lost chunks, reading the assembled transcript, triggering
and cancelling summarization, reading the summary and pipeline status,
streaming status over a WebSocket, and minting share links.

Every endpoint is scoped to the caller's X-Owner-Id; another owner's
meeting is reported as not found.
"""

from __future__ import annotations

import asyncio

from fastapi import (
    APIRouter,
    Depends,
    File,
    Form,
    Path,
    UploadFile,
    WebSocket,
    WebSocketDisconnect,
    status,
)
from pydantic import BaseModel, Field

import structlog

from src.meetscribe.api.deps import get_owner_id, get_pipeline
from src.meetscribe.api.middleware.logging import OWNER_HEADER
from src.meetscribe.api.v1.share import SharedSummaryResponse, share_link_to_response
from src.meetscribe.pipeline.controller import CANCELLED_ERROR
from src.meetscribe.pipeline.errors import PipelineError
from src.meetscribe.pipeline.schemas import (
    AssembledTranscript,
    ChunkReceipt,
    Meeting,
    PipelineStatus,
    SummaryJob,
)
from src.meetscribe.pipeline.service import MeetingPipeline

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/meetings", tags=["meetings"])


# ── Request / Response Schemas ───────────────────────────────────────────────


class StartMeetingRequest(BaseModel):
    title: str | None = Field(default=None, max_length=500)


class CancelRequest(BaseModel):
    reason: str = Field(default=CANCELLED_ERROR, max_length=500)


class MeetingResponse(BaseModel):
    """Response for meeting data, serializes datetimes to ISO strings."""

    id: str
    owner_id: str
    title: str | None = None
    created_at: str
    has_summary: bool = False
    summarized_at: str | None = None


class SegmentResponse(BaseModel):
    sequence_number: int
    text: str
    failed: bool = False
    skipped: bool = False
    error: str | None = None


class TranscriptResponse(BaseModel):
    meeting_id: str
    watermark: int
    text: str
    segments: list[SegmentResponse] = Field(default_factory=list)


class SkipResponse(BaseModel):
    meeting_id: str
    sequence_number: int
    watermark: int


class JobResponse(BaseModel):
    id: str
    meeting_id: str
    state: str
    attempts: int
    last_error: str | None = None
    created_at: str
    started_at: str | None = None
    finished_at: str | None = None


class SummaryResponse(BaseModel):
    meeting_id: str
    summary: str
    job_id: str | None = None
    summarized_at: str | None = None


# ── Helpers ──────────────────────────────────────────────────────────────────


def _meeting_to_response(meeting: Meeting) -> MeetingResponse:
    return MeetingResponse(
        id=meeting.id,
        owner_id=meeting.owner_id,
        title=meeting.title,
        created_at=meeting.created_at.isoformat(),
        has_summary=meeting.summary_text is not None,
        summarized_at=meeting.summarized_at.isoformat() if meeting.summarized_at else None,
    )


def _transcript_to_response(transcript: AssembledTranscript) -> TranscriptResponse:
    return TranscriptResponse(
        meeting_id=transcript.meeting_id,
        watermark=transcript.watermark,
        text=transcript.text,
        segments=[
            SegmentResponse(
                sequence_number=s.sequence_number,
                text=s.text,
                failed=s.failed,
                skipped=s.skipped,
                error=s.error,
            )
            for s in transcript.segments
        ],
    )


def _job_to_response(job: SummaryJob) -> JobResponse:
    return JobResponse(
        id=job.id,
        meeting_id=job.meeting_id,
        state=job.state.value,
        attempts=job.attempts,
        last_error=job.last_error,
        created_at=job.created_at.isoformat(),
        started_at=job.started_at.isoformat() if job.started_at else None,
        finished_at=job.finished_at.isoformat() if job.finished_at else None,
    )


async def _submit_upload(
    pipeline: MeetingPipeline,
    owner_id: str,
    meeting_id: str | None,
    sequence_number: int,
    file: UploadFile,
    duration_ms: int | None,
) -> ChunkReceipt:
    # Read one byte past the limit so oversized uploads are refused without
    # buffering the whole body
    payload = await file.read(pipeline.chunk_store.max_chunk_bytes + 1)
    return await pipeline.submit_chunk(
        owner_id,
        meeting_id,
        sequence_number,
        payload,
        duration_ms=duration_ms,
        content_type=file.content_type,
    )


# ── Meetings ─────────────────────────────────────────────────────────────────


@router.post("", response_model=MeetingResponse, status_code=status.HTTP_201_CREATED)
async def start_meeting(
    body: StartMeetingRequest | None = None,
    owner_id: str = Depends(get_owner_id),
    pipeline: MeetingPipeline = Depends(get_pipeline),
) -> MeetingResponse:
    meeting = await pipeline.start_meeting(owner_id, body.title if body else None)
    return _meeting_to_response(meeting)


@router.get("", response_model=list[MeetingResponse])
async def list_meetings(
    owner_id: str = Depends(get_owner_id),
    pipeline: MeetingPipeline = Depends(get_pipeline),
) -> list[MeetingResponse]:
    """List the caller's meetings, oldest first."""
    return [_meeting_to_response(m) for m in await pipeline.list_meetings(owner_id)]


@router.get("/{meeting_id}", response_model=MeetingResponse)
async def get_meeting(
    meeting_id: str,
    owner_id: str = Depends(get_owner_id),
    pipeline: MeetingPipeline = Depends(get_pipeline),
) -> MeetingResponse:
    """Get meeting details by ID."""
    return _meeting_to_response(await pipeline.get_meeting(owner_id, meeting_id))


# ── Chunks & Transcript ──────────────────────────────────────────────────────


@router.post("/chunks/{sequence_number}", response_model=ChunkReceipt)
async def submit_first_chunk(
    sequence_number: int = Path(...),
    file: UploadFile = File(...),
    duration_ms: int | None = Form(default=None),
    owner_id: str = Depends(get_owner_id),
    pipeline: MeetingPipeline = Depends(get_pipeline),
) -> ChunkReceipt:
    """Upload a chunk without a meeting id; a new meeting is started for it.

    The receipt's meeting_id is the id to use for the remaining chunks.
    """
    return await _submit_upload(pipeline, owner_id, None, sequence_number, file, duration_ms)


@router.post("/{meeting_id}/chunks/{sequence_number}", response_model=ChunkReceipt)
async def submit_chunk(
    meeting_id: str,
    sequence_number: int = Path(...),
    file: UploadFile = File(...),
    duration_ms: int | None = Form(default=None),
    owner_id: str = Depends(get_owner_id),
    pipeline: MeetingPipeline = Depends(get_pipeline),
) -> ChunkReceipt:
    """Upload one audio chunk.

    A duplicate sequence number is answered with a rejected receipt
    (reason ``duplicate``) so client retries are safe.
    """
    return await _submit_upload(
        pipeline, owner_id, meeting_id, sequence_number, file, duration_ms
    )


@router.post("/{meeting_id}/chunks/{sequence_number}/skip", response_model=SkipResponse)
async def skip_chunk(
    meeting_id: str,
    sequence_number: int,
    owner_id: str = Depends(get_owner_id),
    pipeline: MeetingPipeline = Depends(get_pipeline),
) -> SkipResponse:
    """Give up on a chunk that will never arrive so assembly can continue."""
    watermark = await pipeline.skip_chunk(owner_id, meeting_id, sequence_number)
    return SkipResponse(
        meeting_id=meeting_id,
        sequence_number=sequence_number,
        watermark=watermark,
    )


@router.get("/{meeting_id}/transcript", response_model=TranscriptResponse)
async def get_transcript(
    meeting_id: str,
    owner_id: str = Depends(get_owner_id),
    pipeline: MeetingPipeline = Depends(get_pipeline),
) -> TranscriptResponse:
    return _transcript_to_response(await pipeline.transcript(owner_id, meeting_id))


# ── Summary ──────────────────────────────────────────────────────────────────


@router.post(
    "/{meeting_id}/finalize",
    response_model=JobResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def finalize_meeting(
    meeting_id: str,
    owner_id: str = Depends(get_owner_id),
    pipeline: MeetingPipeline = Depends(get_pipeline),
) -> JobResponse:
    """Trigger summarization; repeated calls return the active job."""
    return _job_to_response(await pipeline.finalize(owner_id, meeting_id))


@router.post("/{meeting_id}/cancel", response_model=JobResponse)
async def cancel_summary(
    meeting_id: str,
    body: CancelRequest | None = None,
    owner_id: str = Depends(get_owner_id),
    pipeline: MeetingPipeline = Depends(get_pipeline),
) -> JobResponse:
    reason = body.reason if body else CANCELLED_ERROR
    return _job_to_response(await pipeline.cancel(owner_id, meeting_id, reason))


@router.get("/{meeting_id}/summary", response_model=SummaryResponse)
async def get_summary(
    meeting_id: str,
    owner_id: str = Depends(get_owner_id),
    pipeline: MeetingPipeline = Depends(get_pipeline),
) -> SummaryResponse:
    meeting = await pipeline.summary(owner_id, meeting_id)
    return SummaryResponse(
        meeting_id=meeting.id,
        summary=meeting.summary_text or "",
        job_id=meeting.summary_job_id,
        summarized_at=meeting.summarized_at.isoformat() if meeting.summarized_at else None,
    )


# ── Status ───────────────────────────────────────────────────────────────────


@router.get("/{meeting_id}/status", response_model=PipelineStatus)
async def get_status(
    meeting_id: str,
    owner_id: str = Depends(get_owner_id),
    pipeline: MeetingPipeline = Depends(get_pipeline),
) -> PipelineStatus:
    return await pipeline.status(owner_id, meeting_id)


@router.websocket("/{meeting_id}/status/stream")
async def status_stream(websocket: WebSocket, meeting_id: str) -> None:
    """Push a PipelineStatus message on connect and after every transition.

    Identity comes from the X-Owner-Id header or, for browser clients that
    cannot set headers, the ``owner_id`` query parameter.
    """
    owner_id = websocket.headers.get(OWNER_HEADER) or websocket.query_params.get("owner_id")
    pipeline = getattr(websocket.app.state, "pipeline", None)
    if not owner_id or pipeline is None:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    try:
        updates = await pipeline.subscribe(owner_id, meeting_id)
    except PipelineError as exc:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason=exc.code)
        return

    await websocket.accept()
    logger.info("websocket.connected", meeting_id=meeting_id)

    async def send_updates() -> None:
        try:
            async for snapshot in updates:
                await websocket.send_json(snapshot.model_dump(mode="json"))
        finally:
            await updates.aclose()

    async def wait_for_disconnect() -> None:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                return

    sender = asyncio.create_task(send_updates())
    receiver = asyncio.create_task(wait_for_disconnect())
    try:
        done, _ = await asyncio.wait({sender, receiver}, return_when=asyncio.FIRST_COMPLETED)
        if receiver not in done:
            exc = sender.exception()
            if exc is not None and not isinstance(exc, WebSocketDisconnect):
                raise exc
        logger.info("websocket.disconnected", meeting_id=meeting_id)
    finally:
        for task in (sender, receiver):
            task.cancel()
        await asyncio.gather(sender, receiver, return_exceptions=True)


# ── Share Links ──────────────────────────────────────────────────────────────


@router.post("/{meeting_id}/share", response_model=SharedSummaryResponse)
async def share_summary(
    meeting_id: str,
    owner_id: str = Depends(get_owner_id),
    pipeline: MeetingPipeline = Depends(get_pipeline),
) -> SharedSummaryResponse:
    """Mint (or reuse) a public link to the current summary."""
    link = await pipeline.share(owner_id, meeting_id)
    return share_link_to_response(link)
