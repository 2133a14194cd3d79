"""
Persistent job queue with polling, retries and graceful shutdown.
"""

import asyncio
import inspect
import os
import socket
import time
import uuid
from collections.abc import Iterable, Mapping
from datetime import timedelta
from enum import Enum
from typing import Any
from uuid import UUID

from jobqueue.config.logging import bind_job_context, clear_job_context, get_logger
from jobqueue.config.settings import Settings, settings as default_settings
from jobqueue.core.exceptions import (
    BulkEnqueueError,
    JobTimeoutError,
    QueueShuttingDownError,
    UnknownJobTypeError,
)
from jobqueue.core.registries import (
    HandlerOptions,
    HandlerRegistration,
    HandlerRegistry,
    JobHandler,
    job_type_name,
)
from jobqueue.jobs.backoff import RetryPolicy
from jobqueue.jobs.events import JobEvent, JobEventBus, JobEventType
from jobqueue.jobs.models import JobStatus, utc_now
from jobqueue.jobs.recovery import RecoverySweep
from jobqueue.jobs.scheduler import PollScheduler
from jobqueue.jobs.schemas import JobContext, JobRecord, JobSpec, NewJob, QueueStats
from jobqueue.jobs.store import JobFilter, JobStore

logger = get_logger(__name__)

INTERRUPTED_ERROR = "Interrupted by shutdown"


def generate_worker_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}-{uuid.uuid4().hex[:8]}"


class JobQueue:
    """
    Store-backed job queue.

    Features:
    - Atomic claim in priority then FIFO order, safe across processes
    - Exponential backoff retries and a dead letter state
    - Adaptive polling that speeds up when work arrives
    - Recovery of jobs stranded in processing by a dead worker
    - Drain on shutdown with a bounded wait

    One instance runs at most one handler at a time. Scale by running more
    instances against the same store.
    """

    def __init__(
        self,
        store: JobStore,
        settings: Settings | None = None,
        *,
        registry: HandlerRegistry | None = None,
        events: JobEventBus | None = None,
        job_types: Iterable[str | Enum] | None = None,
        worker_id: str | None = None,
    ):
        self.store = store
        self.settings = settings or default_settings
        self.registry = registry or HandlerRegistry()
        self.events = events or JobEventBus()
        self.worker_id = worker_id or self.settings.worker_instance_id or generate_worker_id()

        self.retry_policy = RetryPolicy.from_settings(self.settings)
        self.recovery = RecoverySweep(
            store,
            stale_after_ms=self.settings.queue_stale_job_timeout_ms,
            interval_ms=self.settings.queue_recovery_interval_ms,
        )
        self.scheduler = PollScheduler(
            self.process_next,
            base_ms=self.settings.queue_poll_interval_base_ms,
            max_ms=self.settings.queue_poll_interval_max_ms,
            factor=self.settings.queue_poll_backoff_factor,
        )

        self.job_types: frozenset[str] | None = (
            frozenset(job_type_name(t) for t in job_types) if job_types is not None else None
        )

        # job id -> claim token of the job currently executing
        self.active_jobs: dict[UUID, str | None] = {}
        self.running = False
        self.is_shutting_down = False
        self._shutdown_task: asyncio.Task | None = None
        self._abandoned: set[asyncio.Task] = set()

        if self.settings.queue_concurrency > 1:
            logger.warning(
                "queue_concurrency_not_enforced",
                configured=self.settings.queue_concurrency,
                effective=1,
            )

    @property
    def is_polling(self) -> bool:
        return self.scheduler.is_running

    # Registration

    def register(
        self,
        job_type: str | Enum,
        handler: JobHandler,
        *,
        max_retries: int | None = None,
        timeout_ms: int | None = None,
    ) -> None:
        """Register the handler for a job type, replacing any previous one."""
        self._check_job_type(job_type_name(job_type))
        self.registry.register(
            job_type,
            handler,
            HandlerOptions(max_retries=max_retries, timeout_ms=timeout_ms),
        )
        logger.debug("job_handler_registered", job_type=job_type_name(job_type))

    def handler(
        self,
        job_type: str | Enum,
        *,
        max_retries: int | None = None,
        timeout_ms: int | None = None,
    ):
        """Decorator form of register()."""

        def decorator(fn: JobHandler) -> JobHandler:
            self.register(job_type, fn, max_retries=max_retries, timeout_ms=timeout_ms)
            return fn

        return decorator

    # Enqueueing

    async def add(self, spec: JobSpec | Mapping[str, Any]) -> JobRecord:
        """Persist a new pending job and wake the poller."""
        if self.is_shutting_down:
            raise QueueShuttingDownError()

        job_spec = spec if isinstance(spec, JobSpec) else JobSpec.model_validate(spec)
        self._check_job_type(job_spec.type)

        now = utc_now()
        new_job = NewJob(
            type=job_spec.type,
            payload=job_spec.data,
            priority=job_spec.priority,
            max_retries=self._resolve_max_retries(job_spec),
            scheduled_for=now + timedelta(milliseconds=job_spec.delay_ms or 0),
        )

        try:
            job = await self.store.insert(new_job)
        except Exception as e:
            logger.error("job_enqueue_failed", job_type=job_spec.type, error=str(e))
            raise

        logger.info(
            "job_enqueued",
            job_id=str(job.id),
            job_type=job.type,
            priority=job.priority,
            scheduled_for=job.scheduled_for.isoformat(),
        )

        self.scheduler.reset()
        self.scheduler.wake()
        await self.events.emit(
            JobEvent(
                type=JobEventType.CREATED,
                job_id=job.id,
                job_type=job.type,
                priority=job.priority,
                max_retries=job.max_retries,
                scheduled_for=job.scheduled_for,
            )
        )
        return job

    async def add_bulk(self, specs: Iterable[JobSpec | Mapping[str, Any]]) -> list[JobRecord]:
        """
        Enqueue several jobs concurrently.

        Each job is inserted independently. If any insert fails, the ones that
        succeeded stay persisted and BulkEnqueueError carries both the created
        records and the per-index errors.
        """
        if self.is_shutting_down:
            raise QueueShuttingDownError()

        results = await asyncio.gather(
            *(self.add(spec) for spec in specs), return_exceptions=True
        )

        created: list[JobRecord] = []
        errors: dict[int, BaseException] = {}
        for index, result in enumerate(results):
            if isinstance(result, BaseException):
                errors[index] = result
            else:
                created.append(result)

        if errors:
            logger.warning(
                "bulk_enqueue_partial_failure",
                created=len(created),
                failed=len(errors),
            )
            raise BulkEnqueueError(created, errors)

        return created

    # Polling

    def start_polling(self) -> None:
        if self.is_polling or self.is_shutting_down:
            return
        self.scheduler.start()
        logger.info(
            "job_queue_polling_started",
            worker_id=self.worker_id,
            poll_interval_ms=self.settings.queue_poll_interval_base_ms,
        )

    def stop_polling(self) -> None:
        """Stop scheduling ticks. A job already executing runs to completion."""
        self.scheduler.stop()
        logger.info("job_queue_polling_stopped", worker_id=self.worker_id)

    async def process_next(self) -> bool:
        """
        Claim and execute at most one job.

        Returns True when a job was claimed. Store errors while claiming or
        recording the outcome propagate to the caller.
        """
        if self.running or self.is_shutting_down:
            return False

        self.running = True
        job: JobRecord | None = None
        try:
            await self.recover_stale_jobs()

            job = await self.store.claim_next(utc_now(), self.worker_id)
            if job is None:
                self.scheduler.back_off()
                return False

            self.scheduler.reset()
            self.active_jobs[job.id] = job.claim_token
            logger.info(
                "job_started",
                job_id=str(job.id),
                job_type=job.type,
                attempt=job.attempts,
                max_retries=job.max_retries,
                worker_id=self.worker_id,
            )
            await self.events.emit(
                JobEvent(
                    type=JobEventType.STARTED,
                    job_id=job.id,
                    job_type=job.type,
                    attempts=job.attempts,
                    max_retries=job.max_retries,
                    priority=job.priority,
                )
            )

            await self._execute(job)
            return True
        finally:
            if job is not None:
                self.active_jobs.pop(job.id, None)
            self.running = False
            # Look for the next job straight away while work keeps coming
            if job is not None and not self.is_shutting_down:
                self.scheduler.wake()

    async def _execute(self, job: JobRecord) -> None:
        registration = self.registry.lookup(job.type)
        if registration is None:
            logger.error("job_missing_handler", job_id=str(job.id), job_type=job.type)
            await self._dead_letter(job, f"No handler registered for job type: {job.type}")
            return

        started = time.monotonic()
        bind_job_context(job.id, job.type, job.attempts)
        try:
            await self._run_handler(registration, JobContext.from_record(job))
        except Exception as e:
            await self._handle_failure(job, e)
            return
        finally:
            clear_job_context()

        duration_ms = round((time.monotonic() - started) * 1000, 2)
        if not await self._finalise(
            job, {"status": JobStatus.COMPLETED, "completed_at": utc_now(), "error": None}
        ):
            return
        logger.info(
            "job_completed",
            job_id=str(job.id),
            job_type=job.type,
            attempt=job.attempts,
            duration_ms=duration_ms,
        )
        await self.events.emit(
            JobEvent(
                type=JobEventType.COMPLETED,
                job_id=job.id,
                job_type=job.type,
                attempts=job.attempts,
                duration_ms=duration_ms,
            )
        )

    async def _run_handler(self, registration: HandlerRegistration, context: JobContext) -> Any:
        result = registration.handler(context)
        if not inspect.isawaitable(result):
            return result

        timeout_ms = registration.options.timeout_ms
        if not timeout_ms:
            return await result

        task = asyncio.ensure_future(result)
        done, _ = await asyncio.wait({task}, timeout=timeout_ms / 1000)
        if task in done:
            return task.result()

        # The handler keeps running in the background; its outcome is only logged
        self._abandon(task, context)
        raise JobTimeoutError(timeout_ms)

    def _abandon(self, task: asyncio.Task, context: JobContext) -> None:
        self._abandoned.add(task)

        def _finished(done: asyncio.Task) -> None:
            self._abandoned.discard(done)
            if done.cancelled():
                return
            error = done.exception()
            logger.info(
                "abandoned_handler_finished",
                job_id=str(context.id),
                job_type=context.type,
                attempt=context.attempts,
                error=str(error) if error else None,
            )

        task.add_done_callback(_finished)

    async def _handle_failure(self, job: JobRecord, exc: Exception) -> None:
        message = str(exc) or exc.__class__.__name__
        now = utc_now()
        decision = self.retry_policy.decide(job.attempts, job.max_retries, now)

        if not decision.retry:
            await self._dead_letter(job, message)
            return

        if not await self._finalise(
            job,
            {
                "status": JobStatus.PENDING,
                "scheduled_for": decision.scheduled_for,
                "claim_token": None,
                "error": message,
                "last_error": message,
                "last_error_at": now,
            },
        ):
            return
        logger.warning(
            "job_retry_scheduled",
            job_id=str(job.id),
            job_type=job.type,
            attempt=job.attempts,
            max_retries=job.max_retries,
            retry_in_ms=decision.delay_ms,
            error=message,
        )
        await self.events.emit(
            JobEvent(
                type=JobEventType.RETRYING,
                job_id=job.id,
                job_type=job.type,
                attempts=job.attempts,
                max_retries=job.max_retries,
                error=message,
                scheduled_for=decision.scheduled_for,
            )
        )

    async def _finalise(self, job: JobRecord, patch: dict[str, Any]) -> bool:
        """
        Record the outcome of an attempt if this worker still holds the claim.

        A job recovered as stale, reclaimed elsewhere or interrupted by
        shutdown no longer matches, and the late result is dropped.
        """
        count = await self.store.update_many(
            JobFilter(ids=[job.id], statuses=[JobStatus.PROCESSING], claim_token=job.claim_token),
            patch,
        )
        if not count:
            logger.warning(
                "job_claim_lost",
                job_id=str(job.id),
                job_type=job.type,
                attempt=job.attempts,
                outcome=patch["status"].value,
            )
            return False
        return True

    async def _dead_letter(self, job: JobRecord, message: str) -> None:
        now = utc_now()
        if not await self._finalise(
            job,
            {
                "status": JobStatus.FAILED,
                "completed_at": now,
                "error": message,
                "last_error": message,
                "last_error_at": now,
            },
        ):
            return
        logger.error(
            "job_dead_lettered",
            job_id=str(job.id),
            job_type=job.type,
            attempts=job.attempts,
            max_retries=job.max_retries,
            error=message,
        )
        await self.events.emit(
            JobEvent(
                type=JobEventType.FAILED,
                job_id=job.id,
                job_type=job.type,
                attempts=job.attempts,
                max_retries=job.max_retries,
                error=message,
            )
        )

    # Shutdown

    async def shutdown(self, timeout_ms: int | None = None) -> None:
        """
        Stop accepting work and wait for the in-flight job.

        Jobs still running when the timeout expires are returned to pending.
        Repeated or concurrent calls wait on the same drain.
        """
        if self._shutdown_task is None:
            if timeout_ms is None:
                timeout_ms = self.settings.queue_shutdown_timeout_ms
            self._shutdown_task = asyncio.ensure_future(self._shutdown(timeout_ms))
        await asyncio.shield(self._shutdown_task)

    async def _shutdown(self, timeout_ms: int) -> None:
        logger.info(
            "job_queue_shutting_down",
            worker_id=self.worker_id,
            active_jobs=len(self.active_jobs),
            timeout_ms=timeout_ms,
        )
        self.is_shutting_down = True
        self.scheduler.stop()

        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout_ms / 1000
        poll_s = self.settings.queue_drain_poll_ms / 1000
        # A tick mid-claim counts as in flight until it returns
        while (self.active_jobs or self.running) and loop.time() < deadline:
            await asyncio.sleep(min(poll_s, max(deadline - loop.time(), 0)))

        if self.active_jobs:
            logger.warning(
                "shutdown_timeout_reached",
                worker_id=self.worker_id,
                active_jobs=len(self.active_jobs),
            )
            await self._interrupt_active_jobs()
        else:
            await self.scheduler.join(timeout=poll_s)

        logger.info("job_queue_shutdown_complete", worker_id=self.worker_id)

    async def _interrupt_active_jobs(self) -> None:
        for job_id, claim_token in list(self.active_jobs.items()):
            # Only reset the record if this worker still owns the claim
            try:
                count = await self.store.update_many(
                    JobFilter(
                        ids=[job_id],
                        statuses=[JobStatus.PROCESSING],
                        claim_token=claim_token,
                    ),
                    {"status": JobStatus.PENDING, "error": INTERRUPTED_ERROR, "claim_token": None},
                )
            except Exception as e:
                logger.error(
                    "job_interrupt_failed", job_id=str(job_id), error=str(e), exc_info=True
                )
                continue

            if count:
                logger.warning("job_interrupted", job_id=str(job_id))
                await self.events.emit(JobEvent(type=JobEventType.INTERRUPTED, job_id=job_id))

    # Administration

    async def recover_stale_jobs(self, force: bool = False) -> int:
        """Return stale processing jobs to pending. Honors the sweep cooldown unless forced."""
        count = await (self.recovery.run() if force else self.recovery.maybe_run())
        if count:
            self.scheduler.reset()
            self.scheduler.wake()
            await self.events.emit(JobEvent(type=JobEventType.RECOVERED, count=count))
        return count

    async def retry_job(self, job_id: UUID | str) -> JobRecord | None:
        """Move a failed job back to pending for immediate pickup."""
        job_id = job_id if isinstance(job_id, UUID) else UUID(str(job_id))
        count = await self.store.update_many(
            JobFilter(ids=[job_id], statuses=[JobStatus.FAILED]),
            {
                "status": JobStatus.PENDING,
                "scheduled_for": utc_now(),
                "completed_at": None,
                "error": None,
            },
        )
        if not count:
            return None

        logger.info("job_manually_retried", job_id=str(job_id))
        self.scheduler.reset()
        self.scheduler.wake()

        jobs = await self.store.find(JobFilter(ids=[job_id]), order_by=(), limit=1)
        return jobs[0] if jobs else None

    async def get_stats(self) -> QueueStats:
        pending, processing, completed, failed = await asyncio.gather(
            self.store.count_by_status(JobStatus.PENDING),
            self.store.count_by_status(JobStatus.PROCESSING),
            self.store.count_by_status(JobStatus.COMPLETED),
            self.store.count_by_status(JobStatus.FAILED),
        )
        return QueueStats(
            pending=pending,
            processing=processing,
            completed=completed,
            failed=failed,
            total=pending + processing + completed + failed,
            active_workers=len(self.active_jobs),
            is_polling=self.is_polling,
            is_shutting_down=self.is_shutting_down,
        )

    async def get_failed_jobs(
        self,
        limit: int = 50,
        offset: int = 0,
        job_type: str | Enum | None = None,
    ) -> list[JobRecord]:
        """Dead-lettered jobs, most recently failed first."""
        return await self.store.find(
            JobFilter(
                statuses=[JobStatus.FAILED],
                type=job_type_name(job_type) if job_type is not None else None,
            ),
            order_by=("-completed_at",),
            limit=limit,
            offset=offset,
        )

    async def clear_old_jobs(self, max_age_ms: int | None = None) -> int:
        """Delete completed and failed jobs that finished before now - max_age_ms."""
        if max_age_ms is None:
            max_age_ms = self.settings.queue_retention_days * 24 * 60 * 60 * 1000
        cutoff = utc_now() - timedelta(milliseconds=max_age_ms)

        count = await self.store.delete_many(
            JobFilter(
                statuses=[JobStatus.COMPLETED, JobStatus.FAILED],
                completed_before=cutoff,
            )
        )
        logger.info("old_jobs_cleared", count=count, cutoff=cutoff.isoformat())
        return count

    # Helpers

    def _check_job_type(self, job_type: str) -> None:
        if self.job_types is not None and job_type not in self.job_types:
            raise UnknownJobTypeError(job_type, sorted(self.job_types))

    def _resolve_max_retries(self, spec: JobSpec) -> int:
        if spec.max_retries is not None:
            return spec.max_retries
        options = self.registry.options_for(spec.type)
        if options.max_retries is not None:
            return options.max_retries
        return self.settings.queue_max_retries
