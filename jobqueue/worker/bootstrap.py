"""
Worker bootstrap.

Shared initialization for worker processes, used by the standalone worker and
by applications that run the queue inline:
- database connection with retries
- optional schema creation
- job handler registration
- polling start and graceful shutdown
"""

import asyncio
import time

from jobqueue.config.logging import get_logger
from jobqueue.config.settings import Settings
from jobqueue.infra.database import Database
from jobqueue.jobs.queue import JobQueue
from jobqueue.jobs.registry_init import register_all_job_handlers
from jobqueue.jobs.store import SqlAlchemyJobStore

logger = get_logger(__name__)

MAX_CONNECT_DELAY_MS = 60000
BUILTIN_HANDLER_MODULES = ("jobqueue.jobs.handlers",)


class DatabaseUnavailableError(RuntimeError):
    """Raised when the database cannot be reached within the retry budget."""


class WorkerBootstrap:
    def __init__(self, settings: Settings, database: Database | None = None):
        self.settings = settings
        self.database = database or Database(settings)
        self.queue: JobQueue | None = None
        self.is_initialized = False
        self.is_shutting_down = False
        self._shutdown_task: asyncio.Task | None = None

    async def connect_database(self) -> None:
        max_retries = self.settings.db_connect_max_retries
        delay_ms: float = self.settings.db_connect_retry_ms

        for attempt in range(1, max_retries + 1):
            logger.info("database_connecting", attempt=attempt, max_retries=max_retries)
            if await self.database.ping():
                logger.info("database_connected", attempt=attempt)
                return

            logger.error("database_connection_failed", attempt=attempt)
            if attempt >= max_retries:
                break

            await asyncio.sleep(delay_ms / 1000)
            delay_ms = min(delay_ms * self.settings.db_connect_backoff, MAX_CONNECT_DELAY_MS)

        raise DatabaseUnavailableError(
            f"Failed to connect to database after {max_retries} attempts"
        )

    async def initialize(self) -> JobQueue:
        """Full initialization sequence. Returns the polling queue."""
        if self.is_initialized:
            logger.warning("worker_already_initialized")
            return self.queue

        started = time.monotonic()
        logger.info(
            "worker_bootstrap_starting",
            mode=self.settings.worker_mode.value,
            job_modules=self.settings.worker_job_modules,
        )

        # 1. Database connection (required)
        await self.connect_database()
        if self.settings.db_create_schema:
            await self.database.create_schema()
            logger.info("database_schema_created")

        # 2. Job queue with handlers
        self.queue = JobQueue(SqlAlchemyJobStore(self.database), self.settings)
        register_all_job_handlers(
            self.queue, [*BUILTIN_HANDLER_MODULES, *self.settings.worker_job_modules]
        )
        # Freeze handlers outside development to prevent runtime modifications
        if self.settings.environment != "development":
            self.queue.registry.freeze()
        self.queue.start_polling()

        self.is_initialized = True
        logger.info(
            "worker_bootstrap_complete",
            worker_id=self.queue.worker_id,
            handlers=self.queue.registry.list(),
            registry_frozen=self.queue.registry.is_frozen(),
            duration_ms=round((time.monotonic() - started) * 1000, 2),
        )
        return self.queue

    async def shutdown(self, timeout_ms: int | None = None) -> None:
        """Drain the queue, then release the database. Safe to call more than once."""
        if self._shutdown_task is None:
            self._shutdown_task = asyncio.ensure_future(self._shutdown(timeout_ms))
        await asyncio.shield(self._shutdown_task)

    async def _shutdown(self, timeout_ms: int | None) -> None:
        self.is_shutting_down = True
        logger.info("worker_shutting_down")

        if self.queue is not None:
            await self.queue.shutdown(timeout_ms)

        await self.database.close()
        logger.info("worker_shutdown_complete")
