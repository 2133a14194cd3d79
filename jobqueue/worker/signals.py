"""
Signal handling for worker processes.
"""

import asyncio
import signal
from collections.abc import Awaitable, Callable

from jobqueue.config.logging import get_logger

logger = get_logger(__name__)

SHUTDOWN_SIGNALS = (signal.SIGTERM, signal.SIGINT)


def install_signal_handlers(
    loop: asyncio.AbstractEventLoop,
    shutdown_fn: Callable[[], Awaitable[None]],
) -> asyncio.Event:
    """
    Run `shutdown_fn` once on the first SIGTERM or SIGINT.

    Later signals are logged and ignored so a second Ctrl-C does not cut the
    drain short. Returns an event that is set once shutdown_fn has finished.
    """
    finished = asyncio.Event()
    state = {"task": None}

    async def _run_shutdown() -> None:
        try:
            await shutdown_fn()
        except Exception as e:
            logger.error("worker_shutdown_failed", error=str(e), exc_info=True)
        finally:
            finished.set()

    def _handle(sig: signal.Signals) -> None:
        if state["task"] is not None:
            logger.warning("shutdown_already_in_progress", signal=sig.name)
            return
        logger.info("shutdown_signal_received", signal=sig.name)
        state["task"] = loop.create_task(_run_shutdown())

    for sig in SHUTDOWN_SIGNALS:
        loop.add_signal_handler(sig, _handle, sig)

    return finished


def remove_signal_handlers(loop: asyncio.AbstractEventLoop) -> None:
    for sig in SHUTDOWN_SIGNALS:
        loop.remove_signal_handler(sig)
