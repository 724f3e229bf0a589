# src/jobs/control.py
"""
User-initiated stop and resume.

Both are single conditional writes on the job row. When a write does not land
the job is re-read to tell "not yours / missing" (JobNotFound) apart from
"wrong status right now" (JobStateError).
"""

from __future__ import annotations

import logging

from src.config import app_config
from src.db import _iso_seconds_ago
from src.exceptions import JobNotFound, JobStateError
from src.jobs.models import RESUMABLE_STATUSES, Job
from src.jobs.store import JobStore

log = logging.getLogger(__name__)


class JobControl:
    def __init__(self, store: JobStore, *, stale_after_seconds: int | None = None) -> None:
        self.store = store
        if stale_after_seconds is None:
            stale_after_seconds = app_config.recovery.stale_after_seconds
        self.stale_after_seconds = stale_after_seconds

    def _load(self, job_id: str, owner_id: str | None) -> Job:
        job = (
            self.store.get(job_id)
            if owner_id is None
            else self.store.get_for_owner(job_id, owner_id)
        )
        if job is None:
            raise JobNotFound(job_id)
        return job

    def stop(self, job_id: str, owner_id: str) -> Job:
        """Pause a pending or processing job; the running batch still finishes."""
        if not self.store.stop(job_id, owner_id):
            job = self._load(job_id, owner_id)
            raise JobStateError(
                job_id, job.status.value, f"Cannot stop a job that is {job.status.value}"
            )
        log.info("Job %s paused by %s", job_id, owner_id, extra={"job_id": job_id})
        return self._load(job_id, owner_id)

    def resume(self, job_id: str, owner_id: str | None = None) -> Job:
        """
        Put a paused or failed job back to pending. The caller triggers it.

        A stopped run keeps its lease until it finishes the batch it was in;
        resuming before then would re-run and re-charge that batch, so it is
        refused unless the run has gone quiet for `stale_after_seconds`.
        """
        if self.store.requeue(
            job_id,
            from_statuses=RESUMABLE_STATUSES,
            owner_id=owner_id,
            lease_expired_before=_iso_seconds_ago(self.stale_after_seconds),
        ):
            log.info("Job %s resumed", job_id, extra={"job_id": job_id})
            return self._load(job_id, owner_id)

        job = self._load(job_id, owner_id)
        status = job.status.value
        if job.status not in RESUMABLE_STATUSES:
            raise JobStateError(job_id, status, f"Cannot resume a job that is {status}")
        if job.remaining == 0:
            raise JobStateError(job_id, status, "Job has no items left to run")
        current = self.store.read_status(job_id)
        if current is not None and current[1] is not None:
            raise JobStateError(
                job_id,
                status,
                "Job is still finishing its current batch; try again shortly",
            )
        # lost a race with another status write; report what is there now
        raise JobStateError(job_id, status, f"Cannot resume a job that is {status}")


__all__ = ["JobControl"]
