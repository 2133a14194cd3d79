"""
Job store contract and its SQLAlchemy implementation.

The queue never reads a job and then writes it back: every state change is a
single conditional statement, so claim exclusivity holds across processes.
"""

import uuid
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Protocol
from uuid import UUID

from sqlalchemy import ColumnElement, and_, delete, func, select, update

from jobqueue.infra.database import Database, session_scope
from jobqueue.jobs.models import Job, JobStatus, utc_now
from jobqueue.jobs.schemas import JobRecord, NewJob

# Columns a caller may sort or patch on
JOB_FIELDS = frozenset(
    {
        "type",
        "payload",
        "status",
        "priority",
        "attempts",
        "max_retries",
        "scheduled_for",
        "started_at",
        "completed_at",
        "claim_token",
        "locked_by",
        "error",
        "last_error",
        "last_error_at",
        "created_at",
        "updated_at",
    }
)


@dataclass(frozen=True)
class JobFilter:
    """Conjunction of conditions over job records. Unset fields match everything."""

    ids: Sequence[UUID] | None = None
    statuses: Sequence[JobStatus] | None = None
    type: str | None = None
    claim_token: str | None = None
    scheduled_before: datetime | None = None  # scheduled_for <= value
    started_before: datetime | None = None  # started_at < value
    completed_before: datetime | None = None  # completed_at < value

    def matches(self, job: JobRecord) -> bool:
        if self.ids is not None and job.id not in self.ids:
            return False
        if self.statuses is not None and job.status not in self.statuses:
            return False
        if self.type is not None and job.type != self.type:
            return False
        if self.claim_token is not None and job.claim_token != self.claim_token:
            return False
        if self.scheduled_before is not None and job.scheduled_for > self.scheduled_before:
            return False
        if self.started_before is not None and (
            job.started_at is None or job.started_at >= self.started_before
        ):
            return False
        if self.completed_before is not None and (
            job.completed_at is None or job.completed_at >= self.completed_before
        ):
            return False
        return True


def parse_order_by(order_by: Sequence[str]) -> list[tuple[str, bool]]:
    """Turn ("-completed_at", "created_at") into [(field, descending), ...]."""
    parsed = []
    for key in order_by:
        descending = key.startswith("-")
        name = key.lstrip("-")
        if name not in JOB_FIELDS:
            raise ValueError(f"Cannot sort jobs by unknown field: {name}")
        parsed.append((name, descending))
    return parsed


def prepare_patch(patch: Mapping[str, Any], now: datetime) -> dict[str, Any]:
    """Validate patch keys and convert enum values to their stored form."""
    values: dict[str, Any] = {}
    for key, value in patch.items():
        if key not in JOB_FIELDS:
            raise ValueError(f"Cannot update unknown job field: {key}")
        values[key] = value.value if isinstance(value, Enum) else value
    values["updated_at"] = now
    return values


class JobStore(Protocol):
    """Durable storage the queue coordinates through."""

    async def insert(self, job: NewJob) -> JobRecord:
        """Persist a new pending job with zero attempts."""
        ...

    async def insert_many(self, jobs: Sequence[NewJob]) -> list[JobRecord]:
        ...

    async def claim_next(self, now: datetime, worker_id: str) -> JobRecord | None:
        """
        Atomically claim the next eligible job.

        Eligible: status pending and scheduled_for <= now, ordered by priority
        descending then created_at ascending. The claim sets status
        processing, started_at=now, attempts+1 and a fresh claim token.
        """
        ...

    async def update_by_id(self, job_id: UUID, patch: Mapping[str, Any]) -> JobRecord | None:
        ...

    async def update_many(
        self,
        job_filter: JobFilter,
        patch: Mapping[str, Any],
        *,
        increment_attempts: bool = False,
    ) -> int:
        """Apply a patch to every matching job and return the matched count."""
        ...

    async def count_by_status(self, status: JobStatus) -> int:
        ...

    async def find(
        self,
        job_filter: JobFilter,
        *,
        order_by: Sequence[str] = ("-completed_at",),
        limit: int | None = None,
        offset: int = 0,
    ) -> list[JobRecord]:
        ...

    async def delete_many(self, job_filter: JobFilter) -> int:
        """Delete every matching job and return the deleted count."""
        ...


def new_claim_token() -> str:
    return uuid.uuid4().hex


class SqlAlchemyJobStore:
    """JobStore backed by the `jobs` table (PostgreSQL in production, SQLite in tests)."""

    def __init__(self, database: Database):
        self.database = database

    async def insert(self, job: NewJob) -> JobRecord:
        (record,) = await self.insert_many([job])
        return record

    async def insert_many(self, jobs: Sequence[NewJob]) -> list[JobRecord]:
        now = utc_now()
        rows = [
            Job(
                id=uuid.uuid4(),
                type=job.type,
                payload=job.payload,
                status=JobStatus.PENDING.value,
                priority=job.priority,
                attempts=0,
                max_retries=job.max_retries,
                scheduled_for=job.scheduled_for,
                created_at=now,
                updated_at=now,
            )
            for job in jobs
        ]
        async with session_scope(self.database) as session:
            session.add_all(rows)
            await session.commit()
        return [JobRecord.model_validate(row) for row in rows]

    async def claim_next(self, now: datetime, worker_id: str) -> JobRecord | None:
        # FOR UPDATE SKIP LOCKED lets concurrent claimers pass over a row another
        # transaction is claiming; SQLite ignores it and serialises writers instead.
        candidate = (
            select(Job.id)
            .where(
                and_(
                    Job.status == JobStatus.PENDING.value,
                    Job.scheduled_for <= now,
                )
            )
            .order_by(Job.priority.desc(), Job.created_at.asc())
            .limit(1)
            .with_for_update(skip_locked=True)
            .scalar_subquery()
        )
        claim = (
            update(Job)
            .where(and_(Job.id == candidate, Job.status == JobStatus.PENDING.value))
            .values(
                status=JobStatus.PROCESSING.value,
                started_at=now,
                attempts=Job.attempts + 1,
                claim_token=new_claim_token(),
                locked_by=worker_id,
                updated_at=now,
            )
            .returning(Job)
            .execution_options(synchronize_session=False)
        )

        async with session_scope(self.database) as session:
            result = await session.execute(claim)
            row = result.scalar_one_or_none()
            await session.commit()

        return JobRecord.model_validate(row) if row is not None else None

    async def update_by_id(self, job_id: UUID, patch: Mapping[str, Any]) -> JobRecord | None:
        statement = (
            update(Job)
            .where(Job.id == job_id)
            .values(**prepare_patch(patch, utc_now()))
            .returning(Job)
            .execution_options(synchronize_session=False)
        )
        async with session_scope(self.database) as session:
            result = await session.execute(statement)
            row = result.scalar_one_or_none()
            await session.commit()

        return JobRecord.model_validate(row) if row is not None else None

    async def update_many(
        self,
        job_filter: JobFilter,
        patch: Mapping[str, Any],
        *,
        increment_attempts: bool = False,
    ) -> int:
        values = prepare_patch(patch, utc_now())
        if increment_attempts:
            values["attempts"] = Job.attempts + 1

        statement = (
            update(Job)
            .where(*self._conditions(job_filter))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        async with session_scope(self.database) as session:
            result = await session.execute(statement)
            count = result.rowcount
            await session.commit()

        return count

    async def count_by_status(self, status: JobStatus) -> int:
        async with session_scope(self.database) as session:
            result = await session.execute(
                select(func.count(Job.id)).where(Job.status == status.value)
            )
            return result.scalar() or 0

    async def find(
        self,
        job_filter: JobFilter,
        *,
        order_by: Sequence[str] = ("-completed_at",),
        limit: int | None = None,
        offset: int = 0,
    ) -> list[JobRecord]:
        query = select(Job).where(*self._conditions(job_filter))
        for name, descending in parse_order_by(order_by):
            column = getattr(Job, name)
            query = query.order_by(column.desc() if descending else column.asc())
        if offset:
            query = query.offset(offset)
        if limit is not None:
            query = query.limit(limit)

        async with session_scope(self.database) as session:
            result = await session.execute(query)
            rows = result.scalars().all()

        return [JobRecord.model_validate(row) for row in rows]

    async def delete_many(self, job_filter: JobFilter) -> int:
        statement = delete(Job).where(*self._conditions(job_filter))
        async with session_scope(self.database) as session:
            result = await session.execute(statement)
            count = result.rowcount
            await session.commit()

        return count

    @staticmethod
    def _conditions(job_filter: JobFilter) -> list[ColumnElement[bool]]:
        conditions: list[ColumnElement[bool]] = []
        if job_filter.ids is not None:
            conditions.append(Job.id.in_(list(job_filter.ids)))
        if job_filter.statuses is not None:
            conditions.append(Job.status.in_([s.value for s in job_filter.statuses]))
        if job_filter.type is not None:
            conditions.append(Job.type == job_filter.type)
        if job_filter.claim_token is not None:
            conditions.append(Job.claim_token == job_filter.claim_token)
        if job_filter.scheduled_before is not None:
            conditions.append(Job.scheduled_for <= job_filter.scheduled_before)
        if job_filter.started_before is not None:
            conditions.append(Job.started_at < job_filter.started_before)
        if job_filter.completed_before is not None:
            conditions.append(Job.completed_at < job_filter.completed_before)
        return conditions
