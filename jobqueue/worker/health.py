"""
Health endpoints for standalone workers (liveness and readiness probes).
"""

import os
import time
from datetime import UTC, datetime

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from starlette.exceptions import HTTPException as StarletteHTTPException

from jobqueue.config.logging import get_logger
from jobqueue.core.exceptions import (
    JobQueueError,
    general_exception_handler,
    http_exception_handler,
    job_queue_exception_handler,
)
from jobqueue.infra.database import Database
from jobqueue.jobs.queue import JobQueue

logger = get_logger(__name__)


class DatabaseHealth(BaseModel):
    """Database health status."""

    connected: bool
    response_time_ms: float | None = None


class QueueHealth(BaseModel):
    """Queue health status."""

    is_polling: bool = False
    is_shutting_down: bool = False
    active_workers: int = 0
    pending: int = 0
    processing: int = 0
    failed: int = 0


class HealthResponse(BaseModel):
    status: str
    timestamp: str
    uptime_s: float
    pid: int
    worker_id: str
    database: DatabaseHealth
    queue: QueueHealth


class ReadinessResponse(BaseModel):
    ready: bool
    database: bool
    queue: bool


def create_health_app(queue: JobQueue, database: Database) -> FastAPI:
    """Create the worker health application."""
    app = FastAPI(
        title=f"{queue.settings.app_name} worker health",
        version=queue.settings.version,
        openapi_url=None,
        docs_url=None,
        redoc_url=None,
    )
    app.state.queue = queue
    app.state.database = database
    app.state.started_at = time.monotonic()

    app.add_exception_handler(JobQueueError, job_queue_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)

    @app.get("/health")
    @app.get("/healthz")
    async def health(request: Request) -> JSONResponse:
        """Full health status with queue stats and database state."""
        db_health = await _check_database_health(request.app.state.database)

        queue_health = QueueHealth(
            is_polling=queue.is_polling, is_shutting_down=queue.is_shutting_down
        )
        try:
            stats = await queue.get_stats()
            queue_health = QueueHealth(**stats.model_dump(include=set(QueueHealth.model_fields)))
        except Exception as e:
            # Stats are informative; the verdict depends on the db check
            logger.warning("queue_stats_unavailable", error=str(e))

        healthy = db_health.connected and not queue.is_shutting_down
        body = HealthResponse(
            status="healthy" if healthy else "unhealthy",
            timestamp=datetime.now(UTC).isoformat(),
            uptime_s=round(time.monotonic() - request.app.state.started_at, 3),
            pid=os.getpid(),
            worker_id=queue.worker_id,
            database=db_health,
            queue=queue_health,
        )
        return JSONResponse(status_code=200 if healthy else 503, content=body.model_dump())

    @app.get("/ready")
    @app.get("/readyz")
    async def ready(request: Request) -> JSONResponse:
        """Readiness probe: is the worker taking jobs?"""
        db_ready = await request.app.state.database.ping()
        queue_ready = queue.is_polling and not queue.is_shutting_down

        body = ReadinessResponse(
            ready=db_ready and queue_ready, database=db_ready, queue=queue_ready
        )
        return JSONResponse(status_code=200 if body.ready else 503, content=body.model_dump())

    @app.get("/live")
    @app.get("/livez")
    async def live() -> dict:
        """Liveness probe: the process is up."""
        return {"alive": True, "pid": os.getpid()}

    return app


async def _check_database_health(database: Database) -> DatabaseHealth:
    """Check database connectivity and response time."""
    start_time = time.monotonic()
    connected = await database.ping()
    if not connected:
        return DatabaseHealth(connected=False)

    response_time_ms = (time.monotonic() - start_time) * 1000
    return DatabaseHealth(connected=True, response_time_ms=round(response_time_ms, 2))
