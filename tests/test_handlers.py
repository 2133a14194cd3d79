"""Tests for built-in job handlers"""

from datetime import timedelta
from uuid import uuid4

import pytest

from jobqueue.jobs.handlers import (
    MAINTENANCE_CLEANUP,
    MaintenanceCleanupHandler,
    register_job_handlers,
)
from jobqueue.jobs.models import JobStatus, utc_now
from jobqueue.jobs.schemas import JobContext


async def _finished_job(queue, age: timedelta, status=JobStatus.COMPLETED):
    job = await queue.add({"type": "work"})
    await queue.store.claim_next(utc_now(), "seed")
    await queue.store.update_by_id(
        job.id, {"status": status, "completed_at": utc_now() - age}
    )
    return job


def _context(**payload) -> JobContext:
    return JobContext(id=uuid4(), type=MAINTENANCE_CLEANUP, payload=payload)


class TestMaintenanceCleanupHandler:
    @pytest.mark.asyncio
    async def test_deletes_old_finished_jobs(self, queue, settings, fetch_job):
        old = await _finished_job(queue, timedelta(days=30))
        old_failed = await _finished_job(queue, timedelta(days=30), JobStatus.FAILED)
        recent = await _finished_job(queue, timedelta(minutes=1))

        result = await MaintenanceCleanupHandler(queue, settings).handle(_context())

        assert result["status"] == "completed"
        assert result["dry_run"] is False
        assert result["results"]["cleanup_jobs"] == {"status": "completed", "deleted_count": 2}
        assert await fetch_job(queue.store, old.id) is None
        assert await fetch_job(queue.store, old_failed.id) is None
        assert await fetch_job(queue.store, recent.id) is not None

    @pytest.mark.asyncio
    async def test_dry_run_counts_without_deleting(self, queue, settings, fetch_job):
        old = await _finished_job(queue, timedelta(days=30))

        result = await MaintenanceCleanupHandler(queue, settings).handle(_context(dry_run=True))

        assert result["dry_run"] is True
        assert result["results"]["cleanup_jobs"] == {"status": "dry_run", "would_delete": 1}
        assert await fetch_job(queue.store, old.id) is not None

    @pytest.mark.asyncio
    async def test_custom_max_age(self, queue, settings):
        await _finished_job(queue, timedelta(hours=2))

        result = await MaintenanceCleanupHandler(queue, settings).handle(
            _context(max_age_ms=60 * 60 * 1000)
        )

        assert result["results"]["cleanup_jobs"]["deleted_count"] == 1

    @pytest.mark.asyncio
    async def test_unknown_task_skipped(self, queue, settings):
        result = await MaintenanceCleanupHandler(queue, settings).handle(
            _context(tasks=["vacuum"])
        )

        assert result["tasks_processed"] == ["vacuum"]
        assert result["results"] == {"vacuum": {"status": "skipped", "reason": "unknown_task"}}


@pytest.mark.asyncio
async def test_registered_handler_runs_through_queue(queue, fetch_job):
    register_job_handlers(queue)
    old = await _finished_job(queue, timedelta(days=30))
    await queue.add({"type": MAINTENANCE_CLEANUP})

    assert await queue.process_next() is True

    assert await fetch_job(queue.store, old.id) is None
    assert queue.registry.options_for(MAINTENANCE_CLEANUP).max_retries == 0
