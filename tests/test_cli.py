"""Tests for CLI commands"""

import asyncio
import uuid
from datetime import timedelta

import pytest
from typer.testing import CliRunner

from cli.main import app
from jobqueue.infra.database import Database
from jobqueue.jobs.models import JobStatus, utc_now
from jobqueue.jobs.queue import JobQueue
from jobqueue.jobs.store import SqlAlchemyJobStore


# Test fixtures
@pytest.fixture
def runner():
    """CLI test runner"""
    return CliRunner(env={"COLUMNS": "200"})


@pytest.fixture
def cli_settings(settings, monkeypatch):
    """Point the CLI at the test database."""
    monkeypatch.setattr("cli.main.get_settings", lambda: settings)
    return settings


def _seed(settings, *, pending=0, failed=0, old_completed=0):
    """Create the schema and seed jobs. Returns the ids of failed jobs."""

    async def seed():
        database = Database(settings)
        await database.create_schema()
        store = SqlAlchemyJobStore(database)
        queue = JobQueue(store, settings)
        failed_ids = []
        try:
            for _ in range(failed):
                job = await queue.add({"type": "report.generate", "delay_ms": 0})
                claimed = await store.claim_next(utc_now() + timedelta(seconds=1), "seed")
                await store.update_by_id(
                    claimed.id,
                    {"status": JobStatus.FAILED, "completed_at": utc_now(), "error": "boom"},
                )
                failed_ids.append(job.id)
            for _ in range(old_completed):
                await queue.add({"type": "cleanup", "delay_ms": 0})
                claimed = await store.claim_next(utc_now() + timedelta(seconds=1), "seed")
                await store.update_by_id(
                    claimed.id,
                    {
                        "status": JobStatus.COMPLETED,
                        "completed_at": utc_now() - timedelta(days=30),
                    },
                )
            for n in range(pending):
                await queue.add({"type": "email.send_receipt", "data": {"n": n}})
        finally:
            await database.close()
        return failed_ids

    return asyncio.run(seed())


class TestMainCommands:
    """Test main CLI commands"""

    def test_version(self, runner):
        """Test version option"""
        result = runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert "Job Queue CLI v1.0.0" in result.stdout

    def test_help_lists_commands(self, runner):
        result = runner.invoke(app, ["--help"])
        assert result.exit_code == 0
        for command in ("stats", "failed", "retry", "purge", "recover", "worker"):
            assert command in result.stdout


class TestQueueCommands:
    """Test commands that operate on the database"""

    def test_stats(self, runner, cli_settings):
        _seed(cli_settings, pending=2, failed=1)

        result = runner.invoke(app, ["stats"])

        assert result.exit_code == 0
        assert "Pending: 2" in result.stdout
        assert "Failed: 1" in result.stdout
        assert "Total: 3" in result.stdout

    def test_failed_lists_dead_letters(self, runner, cli_settings):
        _seed(cli_settings, pending=1, failed=2)

        result = runner.invoke(app, ["failed", "--type", "report.generate"])

        assert result.exit_code == 0
        assert "Failed Jobs" in result.stdout
        assert "report.generate" in result.stdout

    def test_failed_when_empty(self, runner, cli_settings):
        _seed(cli_settings, pending=1)

        result = runner.invoke(app, ["failed"])

        assert result.exit_code == 0
        assert "No failed jobs" in result.stdout

    def test_retry_failed_job(self, runner, cli_settings):
        (job_id,) = _seed(cli_settings, failed=1)

        result = runner.invoke(app, ["retry", str(job_id)])

        assert result.exit_code == 0
        assert "queued for retry" in result.stdout

        stats = runner.invoke(app, ["stats"])
        assert "Pending: 1" in stats.stdout
        assert "Failed: 0" in stats.stdout

    def test_retry_unknown_job(self, runner, cli_settings):
        _seed(cli_settings)

        result = runner.invoke(app, ["retry", str(uuid.uuid4())])

        assert result.exit_code == 1
        assert "not in failed state" in result.stdout

    def test_retry_invalid_id(self, runner, cli_settings):
        result = runner.invoke(app, ["retry", "not-a-uuid"])

        assert result.exit_code == 1
        assert "Invalid job id" in result.stdout

    def test_purge(self, runner, cli_settings):
        _seed(cli_settings, pending=1, old_completed=2)

        result = runner.invoke(app, ["purge", "--older-than-days", "7"])

        assert result.exit_code == 0
        assert "Deleted 2 old jobs" in result.stdout

    def test_recover_with_nothing_stale(self, runner, cli_settings):
        _seed(cli_settings, pending=1)

        result = runner.invoke(app, ["recover"])

        assert result.exit_code == 0
        assert "No stale jobs found" in result.stdout

    def test_database_error_exits_with_code_1(self, runner, cli_settings):
        # Schema was never created
        result = runner.invoke(app, ["stats"])

        assert result.exit_code == 1
        assert "Operation failed" in result.stdout
