"""
Job lifecycle events.

Listeners observe transitions (created, started, completed, retrying, failed,
recovered, interrupted). They cannot influence processing: a listener that
raises is logged and ignored.
"""

import inspect
from collections import defaultdict
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from uuid import UUID

from jobqueue.config.logging import get_logger

logger = get_logger(__name__)


class JobEventType(str, Enum):
    CREATED = "job:created"
    STARTED = "job:started"
    COMPLETED = "job:completed"
    RETRYING = "job:retrying"
    FAILED = "job:failed"
    RECOVERED = "job:recovered"
    INTERRUPTED = "job:interrupted"


@dataclass(frozen=True)
class JobEvent:
    type: JobEventType
    job_id: UUID | None = None
    job_type: str | None = None
    attempts: int | None = None
    max_retries: int | None = None
    priority: int | None = None
    error: str | None = None
    duration_ms: float | None = None
    scheduled_for: datetime | None = None
    count: int | None = None


JobEventListener = Callable[[JobEvent], Awaitable[None] | None]


class JobEventBus:
    def __init__(self) -> None:
        self._listeners: dict[JobEventType, list[JobEventListener]] = defaultdict(list)

    def subscribe(self, event_type: JobEventType, listener: JobEventListener) -> None:
        self._listeners[event_type].append(listener)

    def unsubscribe(self, event_type: JobEventType, listener: JobEventListener) -> None:
        try:
            self._listeners[event_type].remove(listener)
        except ValueError:
            pass

    def listener_count(self, event_type: JobEventType) -> int:
        return len(self._listeners[event_type])

    async def emit(self, event: JobEvent) -> None:
        for listener in list(self._listeners[event.type]):
            try:
                result = listener(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.warning(
                    "job_event_listener_failed",
                    event_type=event.type.value,
                    job_id=str(event.job_id) if event.job_id else None,
                    error=str(e),
                )
