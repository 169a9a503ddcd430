"""Tests for the SummaryWorkerPool, IdleFinalizer, and pipeline lifecycle."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, patch

from src.meetscribe.pipeline.errors import UpstreamUnavailable
from src.meetscribe.pipeline.schemas import SummaryJob, SummaryState
from src.meetscribe.pipeline.service import build_pipeline

OWNER_ID = "owner-alice"


async def _wait_for_state(pipeline, meeting_id: str, state: SummaryState) -> None:
    for _ in range(200):
        if (await pipeline.publisher.status(meeting_id)).job_state == state:
            return
        await asyncio.sleep(0)
    raise AssertionError(f"job never reached {state.value}")


class TestSummaryWorkerPool:
    async def test_pool_processes_queued_jobs(self, pipeline, meeting, submit):
        await submit(1)
        pipeline.workers.start()
        try:
            await pipeline.controller.trigger(meeting.id)
            await _wait_for_state(pipeline, meeting.id, SummaryState.COMPLETED)
        finally:
            await pipeline.workers.stop()

        assert pipeline.controller.pending == 0

    async def test_stop_cancels_workers(self, pipeline):
        pipeline.workers.start()
        assert pipeline.workers.running

        await pipeline.workers.stop()

        assert not pipeline.workers.running

    async def test_worker_survives_crashing_job(self, pipeline, meeting, submit):
        await submit(1)
        with patch.object(
            pipeline.controller, "process", AsyncMock(side_effect=RuntimeError("boom"))
        ) as process:
            pipeline.workers.start()
            try:
                await pipeline.controller.trigger(meeting.id)
                await asyncio.wait_for(pipeline.controller._queue.join(), timeout=1)
                assert process.await_count == 1
                assert all(not t.done() for t in pipeline.workers._tasks)
            finally:
                await pipeline.workers.stop()


class TestIdleFinalizer:
    async def test_triggers_once_meeting_goes_quiet(self, pipeline, meeting, submit, clock):
        await submit(1)

        assert await pipeline.idle_finalizer.sweep() == []

        clock.advance(301)
        triggered = await pipeline.idle_finalizer.sweep()

        assert [j.meeting_id for j in triggered] == [meeting.id]
        assert triggered[0].state == SummaryState.QUEUED

    async def test_does_not_retrigger_same_transcript(
        self, pipeline, meeting, submit, clock, summarizer
    ):
        await submit(1)
        clock.advance(301)
        await pipeline.idle_finalizer.sweep()
        await pipeline.controller.process_next()

        clock.advance(301)
        assert await pipeline.idle_finalizer.sweep() == []
        assert len(summarizer.calls) == 1

    async def test_failed_summary_waits_for_new_audio(
        self, pipeline, meeting, submit, clock, summarizer
    ):
        summarizer.script.append(UpstreamUnavailable("down"))
        await submit(1)
        clock.advance(301)
        await pipeline.idle_finalizer.sweep()
        await pipeline.controller.process_next()

        clock.advance(301)
        assert await pipeline.idle_finalizer.sweep() == []

        await submit(2)
        clock.advance(301)
        triggered = await pipeline.idle_finalizer.sweep()
        assert len(triggered) == 1
        assert triggered[0].input_text == "part 1\npart 2"

    async def test_skips_meetings_with_active_job(self, pipeline, meeting, submit, clock):
        await submit(1)
        await pipeline.controller.trigger(meeting.id)
        clock.advance(301)

        assert await pipeline.idle_finalizer.sweep() == []

    async def test_skips_meetings_without_text(self, pipeline, meeting, submit, clock, stt):
        stt.outcomes[b"part 1"] = UpstreamUnavailable("unreadable")
        await submit(1)
        clock.advance(301)

        assert await pipeline.idle_finalizer.sweep() == []

    async def test_sweep_releases_idle_meetings(self, pipeline, clock):
        for _ in range(20):
            quiet = await pipeline.start_meeting(OWNER_ID)
            await pipeline.chunk_store.submit(quiet.id, 2, b"stuck behind a gap")
        assert len(pipeline.coordinators) == 20

        assert await pipeline.idle_finalizer.sweep() == []
        assert len(pipeline.coordinators) == 20

        clock.advance(301)
        assert await pipeline.idle_finalizer.sweep() == []
        assert len(pipeline.coordinators) == 0

    async def test_sweep_releases_summarized_meeting_but_not_active_one(
        self, pipeline, meeting, submit, clock
    ):
        await submit(1)
        busy = await pipeline.start_meeting(OWNER_ID)
        await pipeline.chunk_store.submit(busy.id, 1, b"still talking")
        await pipeline.controller.trigger(busy.id)
        clock.advance(301)

        triggered = await pipeline.idle_finalizer.sweep()
        assert [j.meeting_id for j in triggered] == [meeting.id]
        await pipeline.controller.process(meeting.id, triggered[0].id)

        clock.advance(301)
        await pipeline.idle_finalizer.sweep()

        assert [c.meeting_id for c in pipeline.coordinators] == [busy.id]
        status = await pipeline.publisher.status(meeting.id)
        assert status.job_state == SummaryState.COMPLETED
        assert status.has_summary

    async def test_disabled_when_timeout_is_zero(self, settings, repo, stt, summarizer):
        pipeline = build_pipeline(
            settings.model_copy(update={"IDLE_FINALIZE_SECONDS": 0}),
            repo,
            stt=stt,
            summarizer=summarizer,
        )
        assert pipeline.idle_finalizer is None


class TestPipelineLifecycle:
    async def test_start_recovers_and_stop_shuts_down(self, pipeline, meeting, repo):
        await repo.save_job(
            SummaryJob(meeting_id=meeting.id, state=SummaryState.QUEUED, input_text="hello")
        )

        await pipeline.start()
        try:
            await _wait_for_state(pipeline, meeting.id, SummaryState.COMPLETED)
        finally:
            await pipeline.stop()

        assert not pipeline.workers.running
        assert (await repo.get_meeting(meeting.id)).summary_text == "summary: hello"
