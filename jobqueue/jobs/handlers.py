"""
Built-in job handlers.

Handlers receive a JobContext and return an optional result dict. Raising
marks the attempt as failed and hands the job to the retry policy.
"""

from datetime import timedelta
from typing import TYPE_CHECKING, Any

from jobqueue.config.logging import get_logger
from jobqueue.config.settings import Settings
from jobqueue.jobs.models import JobStatus, utc_now
from jobqueue.jobs.schemas import JobContext
from jobqueue.jobs.store import JobFilter

if TYPE_CHECKING:
    from jobqueue.jobs.queue import JobQueue

logger = get_logger(__name__)

MAINTENANCE_CLEANUP = "queue.maintenance_cleanup"


class MaintenanceCleanupHandler:
    """
    Job handler for queue maintenance tasks.

    Payload expected:
    {
        "tasks": ["cleanup_jobs"],  # optional, defaults to all
        "dry_run": false,  # optional
        "max_age_ms": 604800000  # optional, defaults to queue_retention_days
    }
    """

    TASKS = ("cleanup_jobs",)

    def __init__(self, queue: "JobQueue", settings: Settings):
        self.queue = queue
        self.settings = settings

    async def handle(self, context: JobContext) -> dict[str, Any]:
        """Process maintenance tasks."""
        payload = context.payload
        tasks = payload.get("tasks", list(self.TASKS))
        dry_run = bool(payload.get("dry_run", False))
        max_age_ms = payload.get(
            "max_age_ms", self.settings.queue_retention_days * 24 * 60 * 60 * 1000
        )
        results: dict[str, Any] = {}

        logger.info("maintenance_started", tasks=tasks, dry_run=dry_run)

        for task in tasks:
            if task not in self.TASKS:
                results[task] = {"status": "skipped", "reason": "unknown_task"}
                logger.warning("maintenance_task_unknown", task=task)

        if "cleanup_jobs" in tasks:
            try:
                if dry_run:
                    cutoff = utc_now() - timedelta(milliseconds=max_age_ms)
                    doomed = await self.queue.store.find(
                        JobFilter(
                            statuses=[JobStatus.COMPLETED, JobStatus.FAILED],
                            completed_before=cutoff,
                        ),
                        order_by=(),
                    )
                    results["cleanup_jobs"] = {
                        "status": "dry_run",
                        "would_delete": len(doomed),
                    }
                else:
                    deleted = await self.queue.clear_old_jobs(max_age_ms)
                    results["cleanup_jobs"] = {"status": "completed", "deleted_count": deleted}
            except Exception as e:
                results["cleanup_jobs"] = {"status": "failed", "error": str(e)}
                logger.error("maintenance_task_failed", task="cleanup_jobs", error=str(e))

        logger.info("maintenance_completed", results=results, dry_run=dry_run)

        return {
            "status": "completed",
            "tasks_processed": tasks,
            "dry_run": dry_run,
            "results": results,
        }


def register_job_handlers(queue: "JobQueue") -> None:
    """Register the built-in handlers on a queue."""
    handler = MaintenanceCleanupHandler(queue, queue.settings)
    queue.register(MAINTENANCE_CLEANUP, handler.handle, max_retries=0)
