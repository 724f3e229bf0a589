# src/jobs/query.py
"""Read-only, owner-scoped projections of job records for polling clients."""

from __future__ import annotations

from src.exceptions import JobNotFound
from src.jobs.models import Job, JobKind, JobStatus
from src.jobs.store import JobStore

DEFAULT_LIST_LIMIT = 10
MAX_LIST_LIMIT = 100


class JobQuery:
    def __init__(self, store: JobStore) -> None:
        self.store = store

    def get_job(self, job_id: str, owner_id: str) -> Job:
        """
        Return the full job (items included) if it belongs to `owner_id`.

        A job owned by someone else is reported exactly like a missing one.
        """
        job = self.store.get_for_owner(job_id, owner_id)
        if job is None:
            raise JobNotFound(job_id)
        return job

    def list_jobs(
        self,
        owner_id: str,
        *,
        kind: JobKind | str | None = None,
        limit: int = DEFAULT_LIST_LIMIT,
    ) -> list[Job]:
        limit = max(1, min(int(limit), MAX_LIST_LIMIT))
        return self.store.list_for_owner(
            owner_id,
            kind=JobKind(kind) if kind else None,
            limit=limit,
        )

    def queue_status(self) -> dict[str, int]:
        counts = self.store.count_by_status()
        return {
            "pending": counts.get(JobStatus.PENDING.value, 0),
            "processing": counts.get(JobStatus.PROCESSING.value, 0),
        }


__all__ = ["JobQuery", "DEFAULT_LIST_LIMIT", "MAX_LIST_LIMIT"]
