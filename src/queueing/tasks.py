from __future__ import annotations

import logging
import uuid
from typing import Any

from redis import Redis
from rq import Queue, get_current_job
from rq.exceptions import NoSuchJobError
from rq.job import Job as RQJob
from rq.job import JobStatus as RQJobStatus

from src.config import app_config
from src.credits.ledger import CreditLedger
from src.jobs.store import JobStore
from src.lookup.client import LookupClient
from src.lookup.rate_limit import LookupThrottle
from src.queueing.executor import JobExecutor, Lookup
from src.queueing.redis_conn import get_redis

log = logging.getLogger(__name__)

# Latest RQ job id enqueued for a bulk job.
LATEST_KEY = "bulk:rq:{job_id}"

# Entries that have not started yet. A started entry may belong to a worker
# that died, so it never blocks a new trigger.
_WAITING_STATES = frozenset({RQJobStatus.QUEUED, RQJobStatus.SCHEDULED, RQJobStatus.DEFERRED})


def get_queue(redis: Redis | None = None) -> Queue:
    return Queue(app_config.queue.queue_name, connection=redis or get_redis())


def waiting_rq_job(job_id: str, *, queue: Queue | None = None) -> RQJob | None:
    """Return the RQ entry still queued for `job_id`, if there is one."""
    q = queue or get_queue()
    latest = q.connection.get(LATEST_KEY.format(job_id=job_id))
    if not latest:
        return None
    rid = latest.decode() if isinstance(latest, bytes) else str(latest)
    try:
        rq_job = RQJob.fetch(rid, connection=q.connection)
    except NoSuchJobError:
        return None
    return rq_job if rq_job.get_status(refresh=True) in _WAITING_STATES else None


def enqueue_job_run(job_id: str, *, queue: Queue | None = None):
    """
    Trigger one executor run for `job_id` on the bulk queue.

    Used by the submission gate (exactly once per job), by the resume
    endpoint and by the recovery daemon. While the job's latest RQ entry is
    still waiting in the queue a trigger returns that entry instead of adding
    another, so periodic re-triggers cannot pile up behind a busy worker.
    Duplicate runs that do slip through are harmless: only the run that claims
    the pending job does any work.
    """
    q = queue or get_queue()
    waiting = waiting_rq_job(job_id, queue=q)
    if waiting is not None:
        log.debug(
            "Bulk job %s already queued as rq job %s",
            job_id,
            waiting.id,
            extra={"job_id": job_id},
        )
        return waiting

    timeout = app_config.queue.job_timeout_seconds
    rq_job = q.enqueue(
        task_run_job,
        job_id,
        job_id=f"bulk:{job_id}:{uuid.uuid4().hex[:12]}",
        job_timeout=timeout,
        description=f"bulk job {job_id}",
    )
    q.connection.set(LATEST_KEY.format(job_id=job_id), rq_job.id, ex=2 * timeout)
    log.info("Enqueued bulk job %s as rq job %s", job_id, rq_job.id, extra={"job_id": job_id})
    return rq_job


def build_throttle(redis: Redis | None = None) -> LookupThrottle | None:
    cfg = app_config.lookup
    if not cfg.throttle_enabled:
        return None
    return LookupThrottle(
        redis or get_redis(),
        max_concurrency=cfg.max_concurrency,
        rps=cfg.rps,
    )


def build_executor(
    lookup: Lookup,
    *,
    db_path: str | None = None,
    throttle: LookupThrottle | None = None,
) -> JobExecutor:
    return JobExecutor(
        JobStore(db_path),
        CreditLedger(db_path),
        lookup,
        throttle=throttle,
    )


def task_run_job(job_id: str) -> dict[str, Any]:
    """
    RQ entrypoint: run (or resume) one bulk job to a terminal or stopped state.

    ExecutorFatalError propagates so RQ records the failure; the job row is
    already marked failed and the recovery daemon decides whether to resume it.
    """
    rq_job = get_current_job()  # None when called outside RQ
    if rq_job is not None:
        log.info("RQ job %s running bulk job %s", rq_job.id, job_id, extra={"job_id": job_id})

    with LookupClient() as client:
        executor = build_executor(client, throttle=build_throttle())
        result = executor.run(job_id)

    return {
        "job_id": result.job_id,
        "outcome": result.outcome,
        "processed": result.processed,
        "debited": result.debited,
    }


__all__ = [
    "get_queue",
    "enqueue_job_run",
    "waiting_rq_job",
    "build_throttle",
    "build_executor",
    "task_run_job",
]
