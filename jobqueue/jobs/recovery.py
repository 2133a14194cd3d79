"""
Stale job recovery.

A worker that dies mid-job leaves its record in `processing` forever. The
sweep returns such records to `pending` once their claim is older than the
stale timeout. There is no heartbeat: a handler that legitimately runs longer
than the timeout will be reclaimed and may execute twice.
"""

import time
from datetime import timedelta

from jobqueue.config.logging import get_logger
from jobqueue.jobs.models import JobStatus, utc_now
from jobqueue.jobs.store import JobFilter, JobStore

logger = get_logger(__name__)

RECOVERED_ERROR = "Recovered from stale state"


class RecoverySweep:
    def __init__(self, store: JobStore, stale_after_ms: int, interval_ms: int = 60000):
        self.store = store
        self.stale_after_ms = stale_after_ms
        self.interval_ms = interval_ms
        self._last_run: float | None = None

    def is_due(self) -> bool:
        if self._last_run is None:
            return True
        return (time.monotonic() - self._last_run) * 1000 >= self.interval_ms

    async def maybe_run(self) -> int:
        """Run the sweep if its cooldown elapsed; otherwise do nothing."""
        if not self.is_due():
            return 0
        return await self.run()

    async def run(self) -> int:
        """Reclaim stale jobs now. Store errors are logged and reported as zero."""
        self._last_run = time.monotonic()
        cutoff = utc_now() - timedelta(milliseconds=self.stale_after_ms)

        try:
            count = await self.store.update_many(
                JobFilter(statuses=[JobStatus.PROCESSING], started_before=cutoff),
                {
                    "status": JobStatus.PENDING,
                    "error": RECOVERED_ERROR,
                    "claim_token": None,
                },
                increment_attempts=True,
            )
        except Exception as e:
            logger.error("stale_job_recovery_failed", error=str(e), exc_info=True)
            return 0

        if count > 0:
            logger.warning(
                "stale_jobs_recovered",
                count=count,
                stale_after_ms=self.stale_after_ms,
            )
        return count
