"""
In-process JobStore.

Useful for inline workers, local development and tests. Every operation runs
under one asyncio lock, which gives the same atomic claim guarantee as the
SQL store for all queues sharing an instance inside one event loop.
"""

import asyncio
import itertools
import uuid
from collections.abc import Mapping, Sequence
from datetime import datetime
from typing import Any
from uuid import UUID

from jobqueue.jobs.models import JobStatus, utc_now
from jobqueue.jobs.schemas import JobRecord, NewJob
from jobqueue.jobs.store import JobFilter, new_claim_token, parse_order_by, prepare_patch


class MemoryJobStore:
    def __init__(self) -> None:
        self._jobs: dict[UUID, JobRecord] = {}
        # Insertion sequence breaks created_at ties between jobs added in the same tick
        self._sequence: dict[UUID, int] = {}
        self._counter = itertools.count()
        self._lock = asyncio.Lock()

    async def insert(self, job: NewJob) -> JobRecord:
        (record,) = await self.insert_many([job])
        return record

    async def insert_many(self, jobs: Sequence[NewJob]) -> list[JobRecord]:
        async with self._lock:
            now = utc_now()
            created = []
            for job in jobs:
                record = JobRecord(
                    id=uuid.uuid4(),
                    type=job.type,
                    payload=dict(job.payload),
                    status=JobStatus.PENDING,
                    priority=job.priority,
                    attempts=0,
                    max_retries=job.max_retries,
                    scheduled_for=job.scheduled_for,
                    created_at=now,
                    updated_at=now,
                )
                self._jobs[record.id] = record
                self._sequence[record.id] = next(self._counter)
                created.append(record.model_copy(deep=True))
            return created

    async def claim_next(self, now: datetime, worker_id: str) -> JobRecord | None:
        async with self._lock:
            eligible = [
                job
                for job in self._jobs.values()
                if job.status == JobStatus.PENDING and job.scheduled_for <= now
            ]
            if not eligible:
                return None

            job = min(
                eligible,
                key=lambda j: (-j.priority, j.created_at, self._sequence[j.id]),
            )
            claimed = job.model_copy(
                update={
                    "status": JobStatus.PROCESSING,
                    "started_at": now,
                    "attempts": job.attempts + 1,
                    "claim_token": new_claim_token(),
                    "locked_by": worker_id,
                    "updated_at": now,
                }
            )
            self._jobs[job.id] = claimed
            return claimed.model_copy(deep=True)

    async def update_by_id(self, job_id: UUID, patch: Mapping[str, Any]) -> JobRecord | None:
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return None
            updated = self._apply(job, patch)
            return updated.model_copy(deep=True)

    async def update_many(
        self,
        job_filter: JobFilter,
        patch: Mapping[str, Any],
        *,
        increment_attempts: bool = False,
    ) -> int:
        async with self._lock:
            matched = [job for job in self._jobs.values() if job_filter.matches(job)]
            for job in matched:
                self._apply(job, patch, increment_attempts=increment_attempts)
            return len(matched)

    async def count_by_status(self, status: JobStatus) -> int:
        async with self._lock:
            return sum(1 for job in self._jobs.values() if job.status == status)

    async def find(
        self,
        job_filter: JobFilter,
        *,
        order_by: Sequence[str] = ("-completed_at",),
        limit: int | None = None,
        offset: int = 0,
    ) -> list[JobRecord]:
        async with self._lock:
            matched = [job for job in self._jobs.values() if job_filter.matches(job)]

        # Stable sorts applied from the least significant key; None sorts last
        for name, descending in reversed(parse_order_by(order_by)):
            present = [job for job in matched if getattr(job, name) is not None]
            missing = [job for job in matched if getattr(job, name) is None]
            present.sort(key=lambda job: getattr(job, name), reverse=descending)
            matched = present + missing

        end = offset + limit if limit is not None else None
        return [job.model_copy(deep=True) for job in matched[offset:end]]

    async def delete_many(self, job_filter: JobFilter) -> int:
        async with self._lock:
            doomed = [job_id for job_id, job in self._jobs.items() if job_filter.matches(job)]
            for job_id in doomed:
                del self._jobs[job_id]
                del self._sequence[job_id]
            return len(doomed)

    def _apply(
        self,
        job: JobRecord,
        patch: Mapping[str, Any],
        *,
        increment_attempts: bool = False,
    ) -> JobRecord:
        values = prepare_patch(patch, utc_now())
        if "status" in values:
            values["status"] = JobStatus(values["status"])
        if increment_attempts:
            values["attempts"] = job.attempts + 1
        updated = job.model_copy(update=values)
        self._jobs[job.id] = updated
        return updated
