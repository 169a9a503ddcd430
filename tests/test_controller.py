"""Tests for the SummaryJobController state machine.

Covers trigger deduplication, rate-limit retry with bounded backoff,
terminal failures, regeneration, cancellation (including an in-flight
result being discarded and a backoff being cut short), a summary that
cannot be stored, snapshot isolation, and restart recovery.
"""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from src.meetscribe.pipeline.controller import SummaryJobController
from src.meetscribe.pipeline.errors import NotReady, UpstreamUnavailable
from src.meetscribe.pipeline.schemas import SummaryJob, SummaryState


# ── Trigger ──────────────────────────────────────────────────────────────────


class TestTrigger:
    async def test_trigger_queues_job(self, pipeline, meeting, submit):
        await submit(1)

        job = await pipeline.controller.trigger(meeting.id)

        assert job.state == SummaryState.QUEUED
        assert job.input_text == "part 1"
        assert pipeline.controller.pending == 1

    async def test_double_trigger_creates_single_job(self, pipeline, meeting, submit, repo):
        await submit(1)

        first = await pipeline.controller.trigger(meeting.id)
        second = await pipeline.controller.trigger(meeting.id)

        assert second.id == first.id
        assert pipeline.controller.pending == 1
        assert len(await repo.list_jobs(meeting.id)) == 1

    async def test_concurrent_triggers_create_single_job(self, pipeline, meeting, submit, repo):
        await submit(1)

        jobs = await asyncio.gather(*(pipeline.controller.trigger(meeting.id) for _ in range(5)))

        assert len({j.id for j in jobs}) == 1
        assert len(await repo.list_jobs(meeting.id)) == 1

    async def test_trigger_without_transcript_is_not_ready(self, pipeline, meeting):
        with pytest.raises(NotReady):
            await pipeline.controller.trigger(meeting.id)

    async def test_trigger_while_processing_returns_active_job(
        self, pipeline, meeting, submit, summarizer
    ):
        await submit(1)
        summarizer.gate = asyncio.Event()
        job = await pipeline.controller.trigger(meeting.id)
        task = asyncio.create_task(pipeline.controller.process_next())
        await summarizer.entered.wait()

        again = await pipeline.controller.trigger(meeting.id)

        assert again.id == job.id
        assert again.state == SummaryState.PROCESSING
        summarizer.gate.set()
        await task
        assert len(summarizer.calls) == 1


# ── Processing ───────────────────────────────────────────────────────────────


class TestProcessing:
    async def test_success_completes_job_and_stores_summary(
        self, pipeline, meeting, submit, repo
    ):
        await submit(1)
        await pipeline.controller.trigger(meeting.id)

        job = await pipeline.controller.process_next()

        assert job.state == SummaryState.COMPLETED
        assert job.result_text == "summary: part 1"
        assert job.attempts == 1
        stored = await repo.get_meeting(meeting.id)
        assert stored.summary_text == "summary: part 1"
        assert stored.summary_job_id == job.id

    async def test_process_next_without_work_returns_none(self, pipeline):
        assert await pipeline.controller.process_next() is None

    async def test_rate_limited_then_success(self, pipeline, meeting, submit, summarizer, sleep):
        await submit(1)
        summarizer.rate_limit(2)
        await pipeline.controller.trigger(meeting.id)

        job = await pipeline.controller.process_next()

        assert job.state == SummaryState.COMPLETED
        assert job.attempts == 3
        assert len(summarizer.calls) == 3
        assert sleep.delays == [2.0, 4.0]

    async def test_rate_limit_exhausts_retry_bound(
        self, pipeline, meeting, submit, summarizer, sleep, settings
    ):
        await submit(1)
        summarizer.rate_limit(10)
        await pipeline.controller.trigger(meeting.id)

        job = await pipeline.controller.process_next()

        assert job.state == SummaryState.FAILED
        assert job.attempts == settings.SUMMARY_MAX_ATTEMPTS
        assert len(summarizer.calls) == settings.SUMMARY_MAX_ATTEMPTS
        assert "rate limited" in job.last_error
        assert sleep.delays == [2.0, 4.0]

        status = await pipeline.publisher.status(meeting.id)
        assert status.job_state == SummaryState.FAILED
        assert "rate limited" in status.last_error

    async def test_backoff_is_capped(self, repo, meeting, submit, pipeline, summarizer, sleep):
        controller = SummaryJobController(
            repo,
            pipeline.coordinators,
            pipeline.assembler,
            summarizer,
            pipeline.publisher,
            max_attempts=5,
            backoff_base=2.0,
            backoff_max=5.0,
            sleep=sleep,
        )
        await submit(1)
        summarizer.rate_limit(4)
        await controller.trigger(meeting.id)

        job = await controller.process_next()

        assert job.state == SummaryState.COMPLETED
        assert sleep.delays == [2.0, 4.0, 5.0, 5.0]

    async def test_requeued_between_rate_limited_attempts(
        self, pipeline, meeting, submit, summarizer, sleep
    ):
        await submit(1)
        summarizer.rate_limit(1)
        states: list[SummaryState] = []

        async def observing_sleep(seconds: float) -> None:
            states.append((await pipeline.publisher.status(meeting.id)).job_state)

        pipeline.controller._sleep = observing_sleep
        await pipeline.controller.trigger(meeting.id)
        await pipeline.controller.process_next()

        assert states == [SummaryState.QUEUED]

    async def test_unavailable_fails_immediately(
        self, pipeline, meeting, submit, summarizer, sleep
    ):
        await submit(1)
        summarizer.script.append(UpstreamUnavailable("provider down"))
        await pipeline.controller.trigger(meeting.id)

        job = await pipeline.controller.process_next()

        assert job.state == SummaryState.FAILED
        assert job.attempts == 1
        assert job.last_error == "provider down"
        assert sleep.delays == []

    async def test_unexpected_error_fails_job(self, pipeline, meeting, submit, summarizer):
        await submit(1)
        summarizer.script.append(RuntimeError("boom"))
        await pipeline.controller.trigger(meeting.id)

        job = await pipeline.controller.process_next()

        assert job.state == SummaryState.FAILED
        assert job.last_error == "boom"

    async def test_store_failure_fails_job_and_allows_retrigger(
        self, pipeline, meeting, submit, repo
    ):
        await submit(1)
        await pipeline.controller.trigger(meeting.id)

        with patch.object(repo, "complete_job", AsyncMock(side_effect=RuntimeError("db down"))):
            with pytest.raises(RuntimeError):
                await pipeline.controller.process_next()

        status = await pipeline.publisher.status(meeting.id)
        assert status.job_state == SummaryState.FAILED
        assert status.last_error == "could not store summary: db down"
        assert not status.has_summary

        retry = await pipeline.controller.trigger(meeting.id)
        assert retry.state == SummaryState.QUEUED
        assert (await pipeline.controller.process_next()).state == SummaryState.COMPLETED
        assert (await repo.get_meeting(meeting.id)).summary_text == "summary: part 1"


# ── Regeneration & Snapshots ─────────────────────────────────────────────────


class TestRegeneration:
    async def test_unchanged_transcript_returns_completed_job(
        self, pipeline, meeting, submit, summarizer
    ):
        await submit(1)
        await pipeline.controller.trigger(meeting.id)
        done = await pipeline.controller.process_next()

        again = await pipeline.controller.trigger(meeting.id)

        assert again.id == done.id
        assert again.state == SummaryState.COMPLETED
        assert pipeline.controller.pending == 0
        assert len(summarizer.calls) == 1

    async def test_changed_transcript_creates_new_job(self, pipeline, meeting, submit, repo):
        await submit(1)
        await pipeline.controller.trigger(meeting.id)
        first = await pipeline.controller.process_next()

        await submit(2)
        second = await pipeline.controller.trigger(meeting.id)

        assert second.id != first.id
        assert second.state == SummaryState.QUEUED
        # The previous summary stays visible until the new job completes
        assert (await repo.get_meeting(meeting.id)).summary_text == "summary: part 1"

        await pipeline.controller.process_next()
        assert (await repo.get_meeting(meeting.id)).summary_text == "summary: part 1\npart 2"

    async def test_failed_job_can_be_retriggered(self, pipeline, meeting, submit, summarizer):
        await submit(1)
        summarizer.script.append(UpstreamUnavailable("down"))
        await pipeline.controller.trigger(meeting.id)
        failed = await pipeline.controller.process_next()

        retry = await pipeline.controller.trigger(meeting.id)

        assert retry.id != failed.id
        assert retry.state == SummaryState.QUEUED
        assert (await pipeline.controller.process_next()).state == SummaryState.COMPLETED

    async def test_job_input_is_snapshot_at_trigger(self, pipeline, meeting, submit, summarizer):
        await submit(1)
        await pipeline.controller.trigger(meeting.id)
        await submit(2)

        job = await pipeline.controller.process_next()

        assert summarizer.calls == ["part 1"]
        assert job.result_text == "summary: part 1"


# ── Cancellation ─────────────────────────────────────────────────────────────


class TestCancel:
    async def test_cancel_queued_job(self, pipeline, meeting, submit, summarizer):
        await submit(1)
        await pipeline.controller.trigger(meeting.id)

        cancelled = await pipeline.controller.cancel(meeting.id)
        after = await pipeline.controller.process_next()

        assert cancelled.state == SummaryState.FAILED
        assert cancelled.last_error == "cancelled"
        assert after.state == SummaryState.FAILED
        assert summarizer.calls == []

    async def test_cancel_discards_in_flight_result(
        self, pipeline, meeting, submit, summarizer, repo
    ):
        await submit(1)
        summarizer.gate = asyncio.Event()
        await pipeline.controller.trigger(meeting.id)
        task = asyncio.create_task(pipeline.controller.process_next())
        await summarizer.entered.wait()

        await pipeline.controller.cancel(meeting.id, reason="user cancelled")
        summarizer.gate.set()
        job = await task

        assert job.state == SummaryState.FAILED
        assert job.last_error == "user cancelled"
        assert (await repo.get_meeting(meeting.id)).summary_text is None
        assert not (await pipeline.publisher.status(meeting.id)).has_summary

    async def test_cancel_during_rate_limited_call_skips_backoff(
        self, pipeline, meeting, submit, summarizer, sleep
    ):
        await submit(1)
        summarizer.rate_limit(1)
        summarizer.gate = asyncio.Event()
        await pipeline.controller.trigger(meeting.id)
        task = asyncio.create_task(pipeline.controller.process_next())
        await summarizer.entered.wait()

        await pipeline.controller.cancel(meeting.id)
        summarizer.gate.set()
        job = await task

        assert job.state == SummaryState.FAILED
        assert job.last_error == "cancelled"
        assert sleep.delays == []
        assert len(summarizer.calls) == 1

    async def test_cancel_wakes_job_sleeping_in_backoff(
        self, pipeline, meeting, submit, summarizer
    ):
        await submit(1)
        summarizer.rate_limit(1)
        sleeping = asyncio.Event()

        async def stuck_sleep(seconds: float) -> None:
            sleeping.set()
            await asyncio.Event().wait()

        pipeline.controller._sleep = stuck_sleep
        await pipeline.controller.trigger(meeting.id)
        task = asyncio.create_task(pipeline.controller.process_next())
        await sleeping.wait()

        await pipeline.controller.cancel(meeting.id)
        job = await asyncio.wait_for(task, timeout=1)

        assert job.state == SummaryState.FAILED
        assert job.last_error == "cancelled"
        assert len(summarizer.calls) == 1

    async def test_cancel_without_active_job(self, pipeline, meeting):
        with pytest.raises(NotReady):
            await pipeline.controller.cancel(meeting.id)


# ── Recovery & Construction ──────────────────────────────────────────────────


class TestRecovery:
    async def test_recover_requeues_interrupted_jobs(self, pipeline, meeting, repo):
        await repo.save_job(
            SummaryJob(
                meeting_id=meeting.id,
                state=SummaryState.PROCESSING,
                attempts=1,
                input_text="part 1",
            )
        )

        assert await pipeline.controller.recover() == 1
        assert pipeline.controller.pending == 1
        job = await pipeline.controller.process_next()
        assert job.state == SummaryState.COMPLETED
        assert job.attempts == 2

    async def test_recover_ignores_superseded_rows(self, pipeline, meeting, repo):
        stale = SummaryJob(meeting_id=meeting.id, state=SummaryState.QUEUED, input_text="a")
        await repo.save_job(stale)
        await repo.save_job(
            SummaryJob(meeting_id=meeting.id, state=SummaryState.COMPLETED, input_text="b")
        )

        assert await pipeline.controller.recover() == 0

    async def test_recovered_job_keeps_spent_attempts(
        self, pipeline, meeting, repo, summarizer, sleep, settings
    ):
        await repo.save_job(
            SummaryJob(
                meeting_id=meeting.id,
                state=SummaryState.PROCESSING,
                attempts=settings.SUMMARY_MAX_ATTEMPTS - 1,
                input_text="part 1",
            )
        )
        summarizer.rate_limit(10)

        await pipeline.controller.recover()
        job = await pipeline.controller.process_next()

        assert job.state == SummaryState.FAILED
        assert job.attempts == settings.SUMMARY_MAX_ATTEMPTS
        assert len(summarizer.calls) == 1
        assert sleep.delays == []

    async def test_recovered_job_without_attempts_left_fails(
        self, pipeline, meeting, repo, summarizer, settings
    ):
        await repo.save_job(
            SummaryJob(
                meeting_id=meeting.id,
                state=SummaryState.QUEUED,
                attempts=settings.SUMMARY_MAX_ATTEMPTS,
                last_error="slow down",
                input_text="part 1",
            )
        )

        await pipeline.controller.recover()
        job = await pipeline.controller.process_next()

        assert job.state == SummaryState.FAILED
        assert "rate limited" in job.last_error
        assert summarizer.calls == []

    def test_max_attempts_must_be_positive(self):
        with pytest.raises(ValueError):
            SummaryJobController(
                MagicMock(), MagicMock(), MagicMock(), MagicMock(), MagicMock(), max_attempts=0
            )
