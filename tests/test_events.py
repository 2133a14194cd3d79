"""Tests for the job event bus"""

from uuid import uuid4

import pytest
from structlog.testing import capture_logs

from jobqueue.jobs.events import JobEvent, JobEventBus, JobEventType


@pytest.fixture
def bus():
    return JobEventBus()


@pytest.mark.asyncio
async def test_sync_and_async_listeners_receive_event(bus):
    received = []

    def sync_listener(event):
        received.append(("sync", event.job_type))

    async def async_listener(event):
        received.append(("async", event.job_type))

    bus.subscribe(JobEventType.CREATED, sync_listener)
    bus.subscribe(JobEventType.CREATED, async_listener)

    await bus.emit(JobEvent(type=JobEventType.CREATED, job_id=uuid4(), job_type="work"))

    assert received == [("sync", "work"), ("async", "work")]


@pytest.mark.asyncio
async def test_listeners_only_see_their_event_type(bus):
    received = []
    bus.subscribe(JobEventType.FAILED, received.append)

    await bus.emit(JobEvent(type=JobEventType.COMPLETED, job_id=uuid4()))

    assert received == []


@pytest.mark.asyncio
async def test_unsubscribe(bus):
    received = []
    bus.subscribe(JobEventType.RECOVERED, received.append)
    assert bus.listener_count(JobEventType.RECOVERED) == 1

    bus.unsubscribe(JobEventType.RECOVERED, received.append)
    # Unknown listeners are ignored
    bus.unsubscribe(JobEventType.RECOVERED, received.append)
    await bus.emit(JobEvent(type=JobEventType.RECOVERED, count=2))

    assert received == []
    assert bus.listener_count(JobEventType.RECOVERED) == 0


@pytest.mark.asyncio
async def test_failing_listener_is_logged_and_others_still_run(bus):
    received = []

    def broken(event):
        raise RuntimeError("listener bug")

    bus.subscribe(JobEventType.STARTED, broken)
    bus.subscribe(JobEventType.STARTED, received.append)
    job_id = uuid4()

    with capture_logs() as logs:
        await bus.emit(JobEvent(type=JobEventType.STARTED, job_id=job_id))

    assert len(received) == 1
    failures = [log for log in logs if log["event"] == "job_event_listener_failed"]
    assert failures[0]["event_type"] == "job:started"
    assert failures[0]["job_id"] == str(job_id)
    assert failures[0]["error"] == "listener bug"
