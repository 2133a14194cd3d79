"""Tests for the worker health endpoints"""

import os

import pytest
from httpx import ASGITransport, AsyncClient

from jobqueue.worker.health import create_health_app


class FakeDatabase:
    """Stands in for Database: only ping() is used by the health app."""

    def __init__(self, connected: bool = True):
        self.connected = connected

    async def ping(self) -> bool:
        return self.connected


def _client(queue, database) -> AsyncClient:
    app = create_health_app(queue, database)
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://worker")


class TestLiveness:
    @pytest.mark.asyncio
    async def test_live_always_ok(self, queue):
        async with _client(queue, FakeDatabase(connected=False)) as client:
            response = await client.get("/live")
            alias = await client.get("/livez")

        assert response.status_code == 200
        assert response.json() == {"alive": True, "pid": os.getpid()}
        assert alias.status_code == 200


class TestHealth:
    @pytest.mark.asyncio
    async def test_healthy_when_database_up(self, queue):
        await queue.add({"type": "work"})

        async with _client(queue, FakeDatabase()) as client:
            response = await client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["database"]["connected"] is True
        assert data["queue"]["pending"] == 1
        assert data["worker_id"] == queue.worker_id

    @pytest.mark.asyncio
    async def test_unhealthy_when_database_down(self, queue):
        async with _client(queue, FakeDatabase(connected=False)) as client:
            response = await client.get("/healthz")

        assert response.status_code == 503
        assert response.json()["status"] == "unhealthy"
        assert response.json()["database"]["connected"] is False

    @pytest.mark.asyncio
    async def test_unhealthy_while_shutting_down(self, queue):
        await queue.shutdown()

        async with _client(queue, FakeDatabase()) as client:
            response = await client.get("/health")

        assert response.status_code == 503
        assert response.json()["queue"]["is_shutting_down"] is True


class TestReadiness:
    @pytest.mark.asyncio
    async def test_not_ready_before_polling(self, queue):
        async with _client(queue, FakeDatabase()) as client:
            response = await client.get("/ready")

        assert response.status_code == 503
        assert response.json() == {"ready": False, "database": True, "queue": False}

    @pytest.mark.asyncio
    async def test_ready_while_polling(self, queue):
        queue.start_polling()

        async with _client(queue, FakeDatabase()) as client:
            response = await client.get("/readyz")

        assert response.status_code == 200
        assert response.json() == {"ready": True, "database": True, "queue": True}

    @pytest.mark.asyncio
    async def test_not_ready_when_database_down(self, queue):
        queue.start_polling()

        async with _client(queue, FakeDatabase(connected=False)) as client:
            response = await client.get("/ready")

        assert response.status_code == 503
        assert response.json()["database"] is False


@pytest.mark.asyncio
async def test_unknown_path_returns_error_envelope(queue):
    async with _client(queue, FakeDatabase()) as client:
        response = await client.get("/metrics")

    assert response.status_code == 404
    assert response.json()["ok"] is False
