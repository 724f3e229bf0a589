# src/queueing/worker.py
from __future__ import annotations

import importlib
import logging
import os

from rq import Queue
from rq import SimpleWorker as RQSimpleWorker
from rq import Worker as RQWorker

from src.config import app_config
from src.queueing import tasks as _tasks  # noqa: F401  (ensure task module is imported)
from src.queueing.redis_conn import get_redis

log = logging.getLogger(__name__)

_FATAL_SUFFIX = ".ExecutorFatalError"


class _NoOpPenalty:
    """
    Death penalty that never fires.

    RQ enforces job timeouts with SIGALRM on POSIX; Windows has no SIGALRM,
    so the worker there runs bulk jobs without a hard timeout.
    """

    def __init__(self, timeout, exception, **_kwargs) -> None:
        self.timeout = timeout
        self.exception = exception

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        return False


def _to_exc_name(exc_type) -> str:
    return f"{exc_type.__module__}.{exc_type.__name__}"


def _bulk_exception_handler(job, exc_type, exc_value, tb):
    """
    Log failed bulk runs with their job id. The job row already carries the
    failure; returning True lets RQ's default handling move it to the failed
    registry.
    """
    bulk_job_id = job.args[0] if getattr(job, "args", None) else None
    if _to_exc_name(exc_type).endswith(_FATAL_SUFFIX):
        log.error(
            "Bulk job %s failed in rq job %s: %s",
            bulk_job_id,
            job.id,
            exc_value,
            extra={"job_id": bulk_job_id},
        )
    else:
        log.error(
            "Unexpected %s in rq job %s (bulk job %s): %s",
            exc_type.__name__,
            job.id,
            bulk_job_id,
            exc_value,
            extra={"job_id": bulk_job_id},
        )
    return True


def _queue_names() -> list[str]:
    raw = os.getenv("RQ_QUEUE", "")
    if raw.strip():
        return [q.strip() for q in raw.split(",") if q.strip()]
    return [app_config.queue.queue_name]


def _select_worker_cls():
    """
    Windows: always SimpleWorker (the forking Worker needs os.wait4).
    Elsewhere: honor RQ_WORKER_CLASS if provided, else the forking Worker.
    """
    env_cls = os.getenv("RQ_WORKER_CLASS", "").strip()
    if os.name == "nt":
        if env_cls and not env_cls.endswith("SimpleWorker"):
            log.warning("Ignoring RQ_WORKER_CLASS=%s on Windows; using rq.SimpleWorker", env_cls)
        return RQSimpleWorker

    if env_cls:
        mod, name = env_cls.rsplit(".", 1)
        return getattr(importlib.import_module(mod), name)
    return RQWorker


def run():
    if not logging.getLogger().handlers:
        logging.basicConfig(level=logging.INFO, format="%(levelname)s %(message)s")

    r = get_redis()
    queue_names = _queue_names()
    queues = [Queue(name, connection=r) for name in queue_names]

    worker_cls = _select_worker_cls()
    log.info("Worker class: %s.%s", worker_cls.__module__, worker_cls.__name__)
    log.info("Queues: %s", ", ".join(queue_names))

    w = worker_cls(queues, connection=r, exception_handlers=[_bulk_exception_handler])

    if os.name == "nt":
        w.death_penalty_class = _NoOpPenalty
        log.info("Windows: disabled job timeouts (death_penalty_class->NoOp)")

    if worker_cls is RQWorker:
        w.work(with_scheduler=True)
    else:
        w.work()


if __name__ == "__main__":
    run()
