"""
Standalone worker process.

Usage:
    WORKER_MODE=standalone jobqueue-worker

Health endpoints (when WORKER_ENABLE_HEALTH is on):
    GET /health  - full status, for monitoring
    GET /ready   - readiness probe
    GET /live    - liveness probe
"""

import asyncio
import contextlib
import os
import sys

import uvicorn

from jobqueue.config.logging import get_logger, setup_logging
from jobqueue.config.settings import Settings, WorkerMode, get_settings
from jobqueue.worker.bootstrap import WorkerBootstrap
from jobqueue.worker.health import create_health_app
from jobqueue.worker.signals import install_signal_handlers, remove_signal_handlers

logger = get_logger(__name__)


class HealthServer(uvicorn.Server):
    """uvicorn server that leaves SIGTERM/SIGINT to the worker's own handlers."""

    @contextlib.contextmanager
    def capture_signals(self):
        yield

    def install_signal_handlers(self) -> None:
        pass


async def run_worker(settings: Settings) -> int:
    """Run the worker until a shutdown signal has been handled. Returns the exit code."""
    if settings.worker_mode != WorkerMode.STANDALONE:
        logger.warning(
            "worker_not_standalone",
            worker_mode=settings.worker_mode.value,
            hint="Set WORKER_MODE=standalone for production use",
        )

    bootstrap = WorkerBootstrap(settings)
    health_server: HealthServer | None = None
    health_task: asyncio.Task | None = None

    async def shutdown() -> None:
        await bootstrap.shutdown(settings.queue_shutdown_timeout_ms)
        if health_server is not None:
            health_server.should_exit = True
        if health_task is not None:
            await health_task

    loop = asyncio.get_running_loop()
    finished = install_signal_handlers(loop, shutdown)

    logger.info(
        "worker_process_starting",
        instance_id=settings.worker_instance_id,
        health_port=settings.worker_health_port,
        pid=os.getpid(),
    )

    try:
        queue = await bootstrap.initialize()
    except Exception as e:
        logger.error("worker_start_failed", error=str(e), exc_info=True)
        remove_signal_handlers(loop)
        await bootstrap.database.close()
        return 1

    if settings.worker_enable_health:
        config = uvicorn.Config(
            create_health_app(queue, bootstrap.database),
            host=settings.worker_health_host,
            port=settings.worker_health_port,
            log_config=None,
            access_log=False,
        )
        health_server = HealthServer(config)
        health_task = asyncio.create_task(health_server.serve())
        logger.info(
            "worker_health_server_started",
            health_url=f"http://{settings.worker_health_host}:{settings.worker_health_port}/health",
        )

    logger.info("worker_process_running", worker_id=queue.worker_id)
    await finished.wait()
    remove_signal_handlers(loop)
    logger.info("worker_process_stopped", worker_id=queue.worker_id)
    return 0


def main() -> None:
    settings = get_settings()
    setup_logging(settings)
    sys.exit(asyncio.run(run_worker(settings)))


if __name__ == "__main__":
    main()
