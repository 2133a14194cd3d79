"""Tests for reclaiming jobs stranded in processing"""

import asyncio
from datetime import timedelta

import pytest
from structlog.testing import capture_logs

from jobqueue.jobs.events import JobEventType
from jobqueue.jobs.models import JobStatus, utc_now
from jobqueue.jobs.queue import JobQueue
from jobqueue.jobs.recovery import RECOVERED_ERROR, RecoverySweep


async def _strand_job(queue, store, age: timedelta):
    """Enqueue a job and claim it as if a worker died `age` ago."""
    await queue.add({"type": "work"})
    claimed = await store.claim_next(utc_now(), "dead-worker")
    return await store.update_by_id(claimed.id, {"started_at": utc_now() - age})


class BrokenStore:
    async def update_many(self, *args, **kwargs):
        raise ConnectionError("database unavailable")


class TestRecoverySweep:
    @pytest.mark.asyncio
    async def test_stale_job_returns_to_pending(self, queue, memory_store, fetch_job):
        job = await _strand_job(queue, memory_store, timedelta(hours=2))

        recovered = await queue.recover_stale_jobs(force=True)

        assert recovered == 1
        stored = await fetch_job(memory_store, job.id)
        assert stored.status == JobStatus.PENDING
        assert stored.attempts == 2
        assert stored.error == RECOVERED_ERROR
        assert stored.claim_token is None

    @pytest.mark.asyncio
    async def test_recent_processing_job_is_left_alone(self, queue, memory_store, fetch_job):
        await queue.add({"type": "work"})
        job = await memory_store.claim_next(utc_now(), "live-worker")

        assert await queue.recover_stale_jobs(force=True) == 0
        assert (await fetch_job(memory_store, job.id)).status == JobStatus.PROCESSING

    @pytest.mark.asyncio
    async def test_sweep_honours_cooldown(self, queue, memory_store):
        await _strand_job(queue, memory_store, timedelta(hours=2))
        assert await queue.recover_stale_jobs() == 1

        await _strand_job(queue, memory_store, timedelta(hours=2))
        assert await queue.recover_stale_jobs() == 0
        assert await queue.recover_stale_jobs(force=True) == 1

    @pytest.mark.asyncio
    async def test_store_failure_reports_zero(self):
        sweep = RecoverySweep(BrokenStore(), stale_after_ms=1000)

        assert await sweep.run() == 0

    @pytest.mark.asyncio
    async def test_recovered_event_carries_count(self, queue, memory_store):
        counts = []
        queue.events.subscribe(JobEventType.RECOVERED, lambda event: counts.append(event.count))
        await _strand_job(queue, memory_store, timedelta(hours=2))
        await _strand_job(queue, memory_store, timedelta(hours=3))

        await queue.recover_stale_jobs(force=True)

        assert counts == [2]


class TestRecoveryDuringProcessing:
    @pytest.mark.asyncio
    async def test_process_next_reclaims_and_runs_stale_job(self, queue, memory_store, fetch_job):
        queue.register("work", lambda ctx: None)
        job = await _strand_job(queue, memory_store, timedelta(hours=1))

        assert await queue.process_next() is True

        stored = await fetch_job(memory_store, job.id)
        assert stored.status == JobStatus.COMPLETED
        # First claim, recovery and the reclaim each count
        assert stored.attempts == 3

    @pytest.mark.asyncio
    async def test_recovery_counts_toward_retry_budget(self, memory_store, settings, fetch_job):
        queue = JobQueue(memory_store, settings.model_copy(update={"queue_retry_delay_ms": 0}))

        async def failing(ctx):
            raise RuntimeError("still broken")

        queue.register("work", failing)
        job = await queue.add({"type": "work", "max_retries": 1})
        claimed = await memory_store.claim_next(utc_now(), "dead-worker")
        await memory_store.update_by_id(
            claimed.id, {"started_at": utc_now() - timedelta(hours=1)}
        )

        # Recovery bumps attempts to 2, the next claim to 3, beyond max_retries=1
        assert await queue.process_next() is True

        stored = await fetch_job(memory_store, job.id)
        assert stored.status == JobStatus.FAILED
        assert stored.attempts == 3
        assert stored.error == "still broken"


class TestLateResultAfterReclaim:
    """A handler that outlives its claim must not overwrite the new owner's state"""

    async def _reclaim_while_running(self, queue, memory_store, handler):
        started, release = asyncio.Event(), asyncio.Event()

        async def run(ctx):
            started.set()
            await release.wait()
            return await handler(ctx)

        queue.register("work", run)
        job = await queue.add({"type": "work"})
        tick = asyncio.create_task(queue.process_next())
        await started.wait()

        # Another worker's sweep sees the job as stale and claims it again
        await memory_store.update_by_id(job.id, {"started_at": utc_now() - timedelta(hours=1)})
        assert await RecoverySweep(memory_store, stale_after_ms=1000, interval_ms=0).run() == 1
        reclaimed = await memory_store.claim_next(utc_now(), "worker-2")
        assert reclaimed.id == job.id

        with capture_logs() as logs:
            release.set()
            assert await tick is True
        return reclaimed, logs

    @pytest.mark.asyncio
    async def test_late_failure_does_not_requeue(self, queue, memory_store, fetch_job):
        retrying = []
        queue.events.subscribe(JobEventType.RETRYING, retrying.append)

        async def fails(ctx):
            raise RuntimeError("too late")

        reclaimed, logs = await self._reclaim_while_running(queue, memory_store, fails)

        stored = await fetch_job(memory_store, reclaimed.id)
        assert stored.status == JobStatus.PROCESSING
        assert stored.claim_token == reclaimed.claim_token
        assert stored.locked_by == "worker-2"
        assert stored.error == RECOVERED_ERROR
        assert stored.last_error is None
        assert retrying == []
        lost = [log for log in logs if log["event"] == "job_claim_lost"]
        assert lost[0]["outcome"] == "pending"

    @pytest.mark.asyncio
    async def test_late_success_does_not_complete(self, queue, memory_store, fetch_job):
        completed = []
        queue.events.subscribe(JobEventType.COMPLETED, completed.append)

        async def succeeds(ctx):
            return {"ok": True}

        reclaimed, logs = await self._reclaim_while_running(queue, memory_store, succeeds)

        stored = await fetch_job(memory_store, reclaimed.id)
        assert stored.status == JobStatus.PROCESSING
        assert stored.completed_at is None
        assert completed == []
        assert any(log["event"] == "job_claim_lost" for log in logs)
