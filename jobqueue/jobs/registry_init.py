"""
Job handler registration for worker processes.

A handler module either exposes `register_job_handlers(queue)` and is listed
in `worker_job_modules`, or calls `register_module()` at import time.
"""

import importlib
from collections.abc import Callable, Iterable
from typing import TYPE_CHECKING

from jobqueue.config.logging import get_logger

if TYPE_CHECKING:
    from jobqueue.jobs.queue import JobQueue

logger = get_logger(__name__)

RegisterFn = Callable[["JobQueue"], None]

_module_registrations: list[tuple[str, RegisterFn]] = []


def register_module(name: str, register_fn: RegisterFn) -> None:
    """Record a registration callback to run when handlers are registered."""
    _module_registrations.append((name, register_fn))


def clear_module_registrations() -> None:
    _module_registrations.clear()


def _run_registration(name: str, register_fn: RegisterFn, queue: "JobQueue") -> bool:
    try:
        register_fn(queue)
    except Exception as e:
        logger.error("job_module_registration_failed", module=name, error=str(e), exc_info=True)
        return False
    logger.info("job_module_registered", module=name)
    return True


def register_all_job_handlers(queue: "JobQueue", module_paths: Iterable[str] = ()) -> int:
    """
    Import handler modules and run every registration callback.

    Missing modules and failing callbacks are logged and skipped so one broken
    module does not keep the worker from starting. Returns the number of
    modules that registered successfully.
    """
    registered = 0

    for path in module_paths:
        try:
            module = importlib.import_module(path)
        except ModuleNotFoundError as e:
            logger.warning("job_module_not_found", module=path, error=str(e))
            continue

        register_fn = getattr(module, "register_job_handlers", None)
        if register_fn is None:
            # Module registers itself through register_module() on import
            continue
        if _run_registration(path, register_fn, queue):
            registered += 1

    for name, register_fn in list(_module_registrations):
        if _run_registration(name, register_fn, queue):
            registered += 1

    logger.info(
        "job_handlers_registered",
        modules=registered,
        registered_handlers=queue.registry.list(),
    )
    return registered
