from datetime import UTC, datetime
from typing import Any

from fastapi import Request, status
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from jobqueue.config.logging import get_logger

logger = get_logger(__name__)


class JobQueueError(Exception):
    """Base exception for the job queue."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)


class QueueShuttingDownError(JobQueueError):
    """Raised when a job is enqueued after shutdown started."""

    def __init__(self, message: str = "Queue is shutting down, cannot add new jobs"):
        super().__init__(message)


class JobTimeoutError(JobQueueError):
    """Raised in place of a handler result when the handler outlives its timeout."""

    def __init__(self, timeout_ms: int):
        self.timeout_ms = timeout_ms
        super().__init__(f"Job timeout after {timeout_ms}ms", {"timeout_ms": timeout_ms})


class UnknownJobTypeError(JobQueueError, ValueError):
    """Raised when a job type is outside the queue's declared job types."""

    def __init__(self, job_type: str, allowed: list[str]):
        super().__init__(
            f"Unknown job type: {job_type}",
            {"job_type": job_type, "allowed": allowed},
        )


class BulkEnqueueError(JobQueueError):
    """
    Raised by add_bulk when some elements could not be enqueued.

    `created` holds the records that were persisted, `errors` maps the input
    index of each failed element to its exception.
    """

    def __init__(self, created: list[Any], errors: dict[int, BaseException]):
        self.created = created
        self.errors = errors
        super().__init__(
            f"{len(errors)} of {len(created) + len(errors)} jobs failed to enqueue",
            {"failed_indexes": sorted(errors)},
        )


def error_envelope(
    status_code: int,
    message: str,
    path: str,
    details: dict[str, Any] | None = None,
) -> JSONResponse:
    """JSON error body shared by every health app exception handler."""
    return JSONResponse(
        status_code=status_code,
        content={
            "ok": False,
            "error": {"code": status_code, "message": message, "details": details or {}},
            "path": path,
            "timestamp": datetime.now(UTC).isoformat(),
        },
    )


async def job_queue_exception_handler(request: Request, exc: JobQueueError) -> JSONResponse:
    # The queue is unable to serve, so probes see it as unavailable
    logger.error(
        "health_queue_error",
        error_type=type(exc).__name__,
        error=exc.message,
        details=exc.details,
        path=request.url.path,
    )
    return error_envelope(
        status.HTTP_503_SERVICE_UNAVAILABLE, exc.message, request.url.path, exc.details
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    logger.warning("health_http_error", status_code=exc.status_code, path=request.url.path)
    return error_envelope(exc.status_code, str(exc.detail), request.url.path)


async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(
        "health_unhandled_error",
        error_type=type(exc).__name__,
        error=str(exc),
        path=request.url.path,
        exc_info=True,
    )
    return error_envelope(
        status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal server error", request.url.path
    )
