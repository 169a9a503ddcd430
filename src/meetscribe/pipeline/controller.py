"""Summary job controller -- per-meeting summarization state machine.

States: IDLE -> QUEUED -> PROCESSING -> COMPLETED | FAILED, with
PROCESSING -> QUEUED on a rate-limited upstream (bounded, exponential
backoff via tenacity) and COMPLETED/FAILED -> QUEUED on a new trigger.

Invariants:
- At most one QUEUED/PROCESSING job per meeting. A trigger while one is
  active returns that job instead of creating a second one.
- A job's input is the transcript snapshot taken at trigger time.
- Every transition happens under the meeting's job_lock; the lock is never
  held across the text-generation call.
- A result returning for a job that is no longer current and PROCESSING
  (cancelled meanwhile) is discarded, and a cancel wakes a job sleeping in
  backoff.
- max_attempts bounds the upstream calls of a job across restarts.
- A summary that cannot be stored leaves the job FAILED, never PROCESSING.

Dispatch is explicit: trigger() puts (meeting_id, job_id) on a queue, and
SummaryWorkerPool tasks (or tests, via process_next()) pull from it.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Protocol

import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from src.meetscribe.core.monitoring import summary_job_transitions_total
from src.meetscribe.pipeline.assembler import TranscriptAssembler
from src.meetscribe.pipeline.coordinator import CoordinatorRegistry, MeetingCoordinator
from src.meetscribe.pipeline.errors import NotReady, UpstreamRateLimited
from src.meetscribe.pipeline.repository import PipelineRepository
from src.meetscribe.pipeline.schemas import (
    SummaryJob,
    SummaryState,
    fingerprint,
    utcnow,
)
from src.meetscribe.pipeline.status import StatusPublisher

logger = structlog.get_logger(__name__)

CANCELLED_ERROR = "cancelled"


class Summarizer(Protocol):
    """Text-generation capability: transcript -> summary.

    Raises UpstreamRateLimited (retryable) or UpstreamUnavailable.
    """

    async def summarize(self, transcript: str) -> str: ...


class _JobSuperseded(Exception):
    """The job was cancelled or replaced while waiting for an attempt."""


class SummaryJobController:
    """Drives at most one summarization job per meeting.

    Args:
        repository: PipelineRepository for job and meeting persistence.
        coordinators: Registry of per-meeting coordinators.
        assembler: TranscriptAssembler providing the transcript snapshot.
        summarizer: Text-generation client.
        publisher: StatusPublisher notified after every transition.
        max_attempts: Upper bound on upstream calls per job.
        backoff_base: First backoff delay in seconds (doubles per attempt).
        backoff_max: Cap for a single backoff delay in seconds.
        sleep: Awaitable sleep used for backoff (injectable for tests).
    """

    def __init__(
        self,
        repository: PipelineRepository,
        coordinators: CoordinatorRegistry,
        assembler: TranscriptAssembler,
        summarizer: Summarizer,
        publisher: StatusPublisher,
        *,
        max_attempts: int = 4,
        backoff_base: float = 2.0,
        backoff_max: float = 60.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self._repository = repository
        self._coordinators = coordinators
        self._assembler = assembler
        self._summarizer = summarizer
        self._publisher = publisher
        self._max_attempts = max_attempts
        self._backoff_base = backoff_base
        self._backoff_max = backoff_max
        self._sleep = sleep
        self._queue: asyncio.Queue[tuple[str, str]] = asyncio.Queue()

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    # ── Commands ─────────────────────────────────────────────────────────

    async def trigger(self, meeting_id: str) -> SummaryJob:
        """Request summarization of the transcript as it stands now.

        Returns:
            The active job if one exists, the completed job if the
            transcript is unchanged since it ran, otherwise a new QUEUED job.

        Raises:
            NotReady: Nothing has been transcribed yet.
        """
        coordinator = await self._coordinators.get(meeting_id)
        async with coordinator.job_lock:
            current = coordinator.current_job
            if current is not None and current.state.is_active:
                logger.info(
                    "summary_job.trigger_deduplicated",
                    meeting_id=meeting_id,
                    job_id=current.id,
                    state=current.state.value,
                )
                return current

            transcript = (await self._assembler.assembled_transcript(meeting_id)).text
            if not transcript.strip():
                raise NotReady("No transcript available to summarize yet")

            input_fingerprint = fingerprint(transcript)
            if (
                current is not None
                and current.state == SummaryState.COMPLETED
                and current.input_fingerprint == input_fingerprint
            ):
                logger.info(
                    "summary_job.transcript_unchanged",
                    meeting_id=meeting_id,
                    job_id=current.id,
                )
                return current

            job = SummaryJob(
                meeting_id=meeting_id,
                state=SummaryState.QUEUED,
                input_text=transcript,
                input_fingerprint=input_fingerprint,
            )
            coordinator.cancelled.clear()
            await self._transition(coordinator, job)
            self._queue.put_nowait((meeting_id, job.id))
            logger.info(
                "summary_job.queued",
                meeting_id=meeting_id,
                job_id=job.id,
                transcript_chars=len(transcript),
            )
            return job

    async def cancel(self, meeting_id: str, reason: str = CANCELLED_ERROR) -> SummaryJob:
        """Move the active job straight to FAILED.

        An in-flight upstream call is not aborted; its result is dropped.

        Raises:
            NotReady: No QUEUED/PROCESSING job to cancel.
        """
        coordinator = await self._coordinators.get(meeting_id)
        async with coordinator.job_lock:
            current = coordinator.current_job
            if current is None or not current.state.is_active:
                raise NotReady("No active summary job to cancel")
            job = current.model_copy(
                update={
                    "state": SummaryState.FAILED,
                    "last_error": reason,
                    "finished_at": utcnow(),
                }
            )
            await self._transition(coordinator, job)
            coordinator.cancelled.set()
        logger.info("summary_job.cancelled", meeting_id=meeting_id, job_id=job.id)
        return job

    async def current_job(self, meeting_id: str) -> SummaryJob | None:
        coordinator = await self._coordinators.get(meeting_id)
        return coordinator.current_job

    async def recover(self) -> int:
        """Re-queue jobs a previous process left QUEUED or PROCESSING."""
        recovered = 0
        for stale in await self._repository.list_active_jobs():
            coordinator = await self._coordinators.get(stale.meeting_id)
            async with coordinator.job_lock:
                current = coordinator.current_job
                if current is None or current.id != stale.id:
                    continue
                job = current.model_copy(update={"state": SummaryState.QUEUED})
                coordinator.cancelled.clear()
                await self._transition(coordinator, job)
                self._queue.put_nowait((job.meeting_id, job.id))
                recovered += 1
        if recovered:
            logger.info("summary_job.recovered", count=recovered)
        return recovered

    # ── Dispatch ─────────────────────────────────────────────────────────

    async def next_dispatch(self) -> tuple[str, str]:
        """Wait for the next queued (meeting_id, job_id)."""
        return await self._queue.get()

    def dispatch_done(self) -> None:
        self._queue.task_done()

    async def process_next(self) -> SummaryJob | None:
        """Process one queued job if there is one (deterministic driver)."""
        try:
            meeting_id, job_id = self._queue.get_nowait()
        except asyncio.QueueEmpty:
            return None
        try:
            return await self.process(meeting_id, job_id)
        finally:
            self._queue.task_done()

    async def process(self, meeting_id: str, job_id: str) -> SummaryJob | None:
        """Run one job to a terminal state (or until it is superseded)."""
        coordinator = await self._coordinators.get(meeting_id)
        try:
            summary = await self._run_attempts(coordinator, job_id)
        except _JobSuperseded:
            logger.info("summary_job.superseded", meeting_id=meeting_id, job_id=job_id)
            return coordinator.current_job
        except UpstreamRateLimited as exc:
            return await self._fail(
                coordinator,
                job_id,
                f"rate limited after {self._max_attempts} attempts: {exc.message}",
            )
        except Exception as exc:
            return await self._fail(coordinator, job_id, str(exc) or type(exc).__name__)
        return await self._complete(coordinator, job_id, summary)

    # ── Attempt loop ─────────────────────────────────────────────────────

    async def _run_attempts(self, coordinator: MeetingCoordinator, job_id: str) -> str:
        current = coordinator.current_job
        if current is None or current.id != job_id:
            raise _JobSuperseded(job_id)
        # A recovered job keeps the attempts it already spent
        remaining = self._max_attempts - current.attempts
        if remaining < 1:
            raise UpstreamRateLimited(current.last_error or "attempts exhausted")

        async def backoff(seconds: float) -> None:
            await self._backoff(coordinator, seconds)

        retrying = AsyncRetrying(
            stop=stop_after_attempt(remaining),
            wait=wait_exponential(multiplier=self._backoff_base, max=self._backoff_max),
            retry=retry_if_exception_type(UpstreamRateLimited),
            sleep=backoff,
            reraise=True,
        )
        summary = ""
        async for attempt in retrying:
            with attempt:
                job = await self._begin_attempt(coordinator, job_id)
                try:
                    summary = await self._summarizer.summarize(job.input_text)
                except UpstreamRateLimited as exc:
                    final = job.attempts >= self._max_attempts
                    requeued = await self._requeue(coordinator, job_id, exc, final=final)
                    if not final and not requeued:
                        raise _JobSuperseded(job_id) from exc
                    raise
        return summary

    async def _backoff(self, coordinator: MeetingCoordinator, seconds: float) -> None:
        """Sleep between attempts, waking early if the job is cancelled."""
        sleeper = asyncio.ensure_future(self._sleep(seconds))
        cancelled = asyncio.ensure_future(coordinator.cancelled.wait())
        try:
            await asyncio.wait({sleeper, cancelled}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (sleeper, cancelled):
                task.cancel()
            await asyncio.gather(sleeper, cancelled, return_exceptions=True)

    async def _begin_attempt(self, coordinator: MeetingCoordinator, job_id: str) -> SummaryJob:
        async with coordinator.job_lock:
            current = coordinator.current_job
            if current is None or current.id != job_id or current.state != SummaryState.QUEUED:
                raise _JobSuperseded(job_id)
            job = current.model_copy(
                update={
                    "state": SummaryState.PROCESSING,
                    "attempts": current.attempts + 1,
                    "started_at": current.started_at or utcnow(),
                }
            )
            await self._transition(coordinator, job)
            logger.info(
                "summary_job.processing",
                meeting_id=job.meeting_id,
                job_id=job.id,
                attempt=job.attempts,
            )
            return job

    async def _requeue(
        self,
        coordinator: MeetingCoordinator,
        job_id: str,
        exc: UpstreamRateLimited,
        *,
        final: bool,
    ) -> bool:
        """Put a rate-limited job back to QUEUED. False if it was cancelled meanwhile."""
        async with coordinator.job_lock:
            current = coordinator.current_job
            if current is None or current.id != job_id or current.state != SummaryState.PROCESSING:
                return False
            logger.warning(
                "summary_job.rate_limited",
                meeting_id=current.meeting_id,
                job_id=job_id,
                attempt=current.attempts,
                final=final,
            )
            if final:
                return True
            job = current.model_copy(
                update={"state": SummaryState.QUEUED, "last_error": exc.message}
            )
            await self._transition(coordinator, job)
            return True

    # ── Terminal transitions ─────────────────────────────────────────────

    async def _complete(
        self, coordinator: MeetingCoordinator, job_id: str, summary: str
    ) -> SummaryJob | None:
        async with coordinator.job_lock:
            current = coordinator.current_job
            if current is None or current.id != job_id or current.state != SummaryState.PROCESSING:
                logger.info(
                    "summary_job.result_discarded",
                    meeting_id=coordinator.meeting_id,
                    job_id=job_id,
                )
                return current
            job = current.model_copy(
                update={
                    "state": SummaryState.COMPLETED,
                    "result_text": summary,
                    "last_error": None,
                    "finished_at": utcnow(),
                }
            )
            try:
                await self._repository.complete_job(job)
            except Exception as exc:
                failed = current.model_copy(
                    update={
                        "state": SummaryState.FAILED,
                        "last_error": f"could not store summary: {exc}",
                        "finished_at": utcnow(),
                    }
                )
                await self._transition(coordinator, failed, persist=False)
                logger.exception(
                    "summary_job.store_failed",
                    meeting_id=job.meeting_id,
                    job_id=job.id,
                )
                raise
            coordinator.has_summary = True
            await self._transition(coordinator, job, persist=False)
        logger.info(
            "summary_job.completed",
            meeting_id=job.meeting_id,
            job_id=job.id,
            attempts=job.attempts,
            summary_chars=len(summary),
        )
        return job

    async def _fail(
        self, coordinator: MeetingCoordinator, job_id: str, error: str
    ) -> SummaryJob | None:
        async with coordinator.job_lock:
            current = coordinator.current_job
            if current is None or current.id != job_id or not current.state.is_active:
                return current
            job = current.model_copy(
                update={
                    "state": SummaryState.FAILED,
                    "last_error": error,
                    "finished_at": utcnow(),
                }
            )
            await self._transition(coordinator, job)
        logger.error(
            "summary_job.failed",
            meeting_id=job.meeting_id,
            job_id=job.id,
            attempts=job.attempts,
            error=error,
        )
        return job

    async def _transition(
        self,
        coordinator: MeetingCoordinator,
        job: SummaryJob,
        *,
        persist: bool = True,
    ) -> None:
        """Apply a job state change. Caller holds coordinator.job_lock."""
        if persist:
            await self._repository.save_job(job)
        coordinator.current_job = job
        summary_job_transitions_total.labels(state=job.state.value).inc()
        self._publisher.publish(coordinator)
