"""Background dispatch: summary worker pool and idle finalizer.

SummaryWorkerPool runs a fixed number of asyncio tasks that pull queued
jobs from the SummaryJobController and process them one at a time each.

IdleFinalizer sweeps the in-process meeting coordinators and triggers
summarization for meetings that have gone quiet for the configured idle
timeout. It triggers at most once per distinct transcript, so a meeting
whose summary failed is not retried by the sweep until new audio arrives.
Idle meetings it has nothing to do for are released from the registry.
"""

from __future__ import annotations

import asyncio

import structlog

from src.meetscribe.pipeline.assembler import TranscriptAssembler
from src.meetscribe.pipeline.controller import SummaryJobController
from src.meetscribe.pipeline.coordinator import CoordinatorRegistry
from src.meetscribe.pipeline.errors import PipelineError
from src.meetscribe.pipeline.schemas import SummaryJob, fingerprint

logger = structlog.get_logger(__name__)


class SummaryWorkerPool:
    """Fixed-size pool of asyncio workers for queued summary jobs.

    Args:
        controller: SummaryJobController owning the dispatch queue.
        workers: Number of concurrent worker tasks.
    """

    def __init__(self, controller: SummaryJobController, workers: int = 2) -> None:
        self._controller = controller
        self._workers = max(1, workers)
        self._tasks: list[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    def start(self) -> None:
        if self._tasks:
            logger.warning("worker_pool.already_running")
            return
        self._tasks = [
            asyncio.create_task(self._run(i), name=f"summary-worker-{i}")
            for i in range(self._workers)
        ]
        logger.info("worker_pool.started", workers=self._workers)

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("worker_pool.stopped")

    async def _run(self, worker_id: int) -> None:
        while True:
            meeting_id, job_id = await self._controller.next_dispatch()
            try:
                await self._controller.process(meeting_id, job_id)
            except Exception:
                logger.exception(
                    "worker_pool.job_crashed",
                    worker_id=worker_id,
                    meeting_id=meeting_id,
                    job_id=job_id,
                )
            finally:
                self._controller.dispatch_done()


class IdleFinalizer:
    """Triggers summarization for meetings idle longer than idle_seconds.

    Args:
        coordinators: Registry whose coordinators carry last_activity.
        assembler: TranscriptAssembler for the current transcript.
        controller: SummaryJobController to trigger.
        idle_seconds: Inactivity required before triggering.
        interval: Seconds between sweeps when running as a task.
    """

    def __init__(
        self,
        coordinators: CoordinatorRegistry,
        assembler: TranscriptAssembler,
        controller: SummaryJobController,
        *,
        idle_seconds: float,
        interval: float = 30.0,
    ) -> None:
        self._coordinators = coordinators
        self._assembler = assembler
        self._controller = controller
        self._idle_seconds = idle_seconds
        self._interval = interval
        self._task: asyncio.Task | None = None

    async def sweep(self) -> list[SummaryJob]:
        """Run one pass; returns the jobs triggered by it.

        Idle meetings with nothing new to summarize have their coordinators
        released, so the registry only holds meetings still in use.
        """
        now = self._coordinators.clock()
        triggered: list[SummaryJob] = []
        released = 0
        for coordinator in self._coordinators:
            if coordinator.last_activity is None:
                continue
            if now - coordinator.last_activity < self._idle_seconds:
                continue
            job = coordinator.current_job
            if job is not None and job.state.is_active:
                continue
            transcript = await self._assembler.assembled_transcript(coordinator.meeting_id)
            transcript_fingerprint = (
                fingerprint(transcript.text) if transcript.text.strip() else None
            )
            if transcript_fingerprint in (None, coordinator.idle_fingerprint):
                if self._coordinators.release(
                    coordinator.meeting_id, idle_for=self._idle_seconds
                ):
                    released += 1
                continue
            coordinator.idle_fingerprint = transcript_fingerprint
            try:
                triggered.append(await self._controller.trigger(coordinator.meeting_id))
            except PipelineError as exc:
                logger.warning(
                    "idle_finalizer.trigger_failed",
                    meeting_id=coordinator.meeting_id,
                    error=exc.message,
                )
                continue
            logger.info("idle_finalizer.triggered", meeting_id=coordinator.meeting_id)
        logger.debug(
            "idle_finalizer.swept",
            triggered=len(triggered),
            released=released,
            tracked=len(self._coordinators),
        )
        return triggered

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._loop(), name="idle-finalizer")
            logger.info(
                "idle_finalizer.started",
                idle_seconds=self._idle_seconds,
                interval=self._interval,
            )

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            try:
                await self.sweep()
            except Exception:
                logger.exception("idle_finalizer.sweep_failed")
