import asyncio
import inspect
from collections.abc import AsyncGenerator

import pytest

from jobqueue.config.settings import Settings
from jobqueue.infra.database import Database
from jobqueue.jobs.memory_store import MemoryJobStore
from jobqueue.jobs.queue import JobQueue
from jobqueue.jobs.registry_init import clear_module_registrations
from jobqueue.jobs.store import JobFilter, SqlAlchemyJobStore


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Fast timings so polling, retries and drains finish within a test."""
    return Settings(
        _env_file=None,
        environment="test",
        debug=False,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'jobs.db'}",
        queue_retry_delay_ms=10,
        queue_max_retry_delay_ms=100,
        queue_poll_interval_base_ms=10,
        queue_poll_interval_max_ms=50,
        queue_shutdown_timeout_ms=1000,
        queue_drain_poll_ms=10,
        worker_instance_id="test-worker",
        worker_enable_health=False,
    )


@pytest.fixture
def memory_store() -> MemoryJobStore:
    return MemoryJobStore()


@pytest.fixture
async def queue(memory_store, settings) -> AsyncGenerator[JobQueue, None]:
    """Queue over an in-memory store, shut down after the test."""
    job_queue = JobQueue(memory_store, settings)
    yield job_queue
    await job_queue.shutdown(timeout_ms=100)


@pytest.fixture
async def database(settings) -> AsyncGenerator[Database, None]:
    """File-backed SQLite database with the jobs table created."""
    db = Database(settings)
    await db.create_schema()
    yield db
    await db.close()


@pytest.fixture
def sql_store(database) -> SqlAlchemyJobStore:
    return SqlAlchemyJobStore(database)


@pytest.fixture(autouse=True)
def _reset_module_registrations():
    clear_module_registrations()
    yield
    clear_module_registrations()


@pytest.fixture
def wait_until():
    """Poll a (sync or async) predicate until it is truthy or the timeout expires."""

    async def _wait_until(predicate, timeout: float = 2.0, interval: float = 0.01):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            result = predicate()
            if inspect.isawaitable(result):
                result = await result
            if result:
                return result
            if loop.time() > deadline:
                raise AssertionError("Condition not met before timeout")
            await asyncio.sleep(interval)

    return _wait_until


@pytest.fixture
def fetch_job():
    """Read one job back from a store by id."""

    async def _fetch(store, job_id):
        jobs = await store.find(JobFilter(ids=[job_id]), order_by=(), limit=1)
        return jobs[0] if jobs else None

    return _fetch
