"""Job Queue CLI - Main Entry Point"""

import asyncio
from collections.abc import Awaitable, Callable
from typing import Optional, TypeVar
from uuid import UUID

import typer
from rich.console import Console
from rich.markup import escape

from jobqueue.config.settings import get_settings
from jobqueue.infra.database import Database
from jobqueue.jobs.queue import JobQueue
from jobqueue.jobs.store import SqlAlchemyJobStore

from .utils.formatting import (
    create_failed_jobs_table,
    create_stats_panel,
    print_error,
    print_info,
    print_success,
    print_warning,
)

console = Console()

T = TypeVar("T")

# Create main Typer app
app = typer.Typer(
    name="jobqueue",
    help="📦 Job Queue - inspect and operate the persistent job queue",
    rich_markup_mode="rich",
)


async def _with_queue(operation: Callable[[JobQueue], Awaitable[T]]) -> T:
    """Run an operation against a non-polling queue on the configured database."""
    settings = get_settings()
    database = Database(settings)
    try:
        return await operation(JobQueue(SqlAlchemyJobStore(database), settings))
    finally:
        await database.close()


def _run(operation: Callable[[JobQueue], Awaitable[T]]) -> T:
    try:
        return asyncio.run(_with_queue(operation))
    except Exception as e:
        print_error(f"Operation failed: {escape(str(e))}")
        raise typer.Exit(1)


@app.command()
def stats():
    """📊 Show job counts by status"""
    queue_stats = _run(lambda queue: queue.get_stats())
    console.print(create_stats_panel(queue_stats))


@app.command()
def failed(
    job_type: Optional[str] = typer.Option(None, "--type", "-t", help="Filter by job type"),
    limit: int = typer.Option(50, "--limit", "-l", min=1, help="Maximum jobs to show"),
    offset: int = typer.Option(0, "--offset", min=0, help="Jobs to skip"),
):
    """💀 List dead-lettered jobs, most recent first"""
    jobs = _run(
        lambda queue: queue.get_failed_jobs(limit=limit, offset=offset, job_type=job_type)
    )
    if not jobs:
        print_info("No failed jobs")
        return
    console.print(create_failed_jobs_table(jobs))


@app.command()
def retry(job_id: str = typer.Argument(..., help="ID of the failed job")):
    """🔁 Move a failed job back to pending"""
    try:
        parsed_id = UUID(job_id)
    except ValueError:
        print_error(f"Invalid job id: {job_id}")
        raise typer.Exit(1)

    job = _run(lambda queue: queue.retry_job(parsed_id))
    if job is None:
        print_error(f"Job {job_id} not found or not in failed state")
        raise typer.Exit(1)
    print_success(f"Job {job.id} ({job.type}) queued for retry")


@app.command()
def purge(
    older_than_days: Optional[int] = typer.Option(
        None, "--older-than-days", "-d", min=0, help="Defaults to QUEUE_RETENTION_DAYS"
    ),
):
    """🧹 Delete completed and failed jobs past the retention window"""
    max_age_ms = older_than_days * 24 * 60 * 60 * 1000 if older_than_days is not None else None
    deleted = _run(lambda queue: queue.clear_old_jobs(max_age_ms))
    print_success(f"Deleted {deleted} old jobs")


@app.command()
def recover():
    """🚑 Return stale processing jobs to pending now"""
    recovered = _run(lambda queue: queue.recover_stale_jobs(force=True))
    if recovered:
        print_warning(f"Recovered {recovered} stale jobs")
    else:
        print_success("No stale jobs found")


@app.command()
def worker():
    """⚙️ Run a standalone worker in the foreground"""
    from jobqueue.config.logging import setup_logging
    from jobqueue.main import run_worker

    settings = get_settings()
    setup_logging(settings)
    exit_code = asyncio.run(run_worker(settings))
    raise typer.Exit(exit_code)


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    version: Optional[bool] = typer.Option(
        None, "--version", "-v", help="Show version and exit"
    ),
):
    """
    📦 Job Queue CLI

    Inspect queue statistics, list and retry dead-lettered jobs, purge old
    records, and run a worker.
    """
    if version:
        from . import __version__

        console.print(f"Job Queue CLI v{__version__}")
        raise typer.Exit()
    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit()


if __name__ == "__main__":
    app()
