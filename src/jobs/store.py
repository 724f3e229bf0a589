# src/jobs/store.py
"""
Durable job records (SQLite).

One row per job; the item array is embedded as JSON. Writes made on behalf of
an executor run are conditional on that run's lease token, so a run that lost
its lease (requeued by the recovery daemon, or superseded by another worker)
cannot overwrite newer state. Status writes made by users and the daemon are
conditional on the status they expect to find.
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Iterator, Sequence
from contextlib import closing, contextmanager
from datetime import datetime
from typing import Any

from src.db import _utc_now_iso, get_connection
from src.jobs.models import Item, Job, JobKind, JobStatus, items_to_json

log = logging.getLogger(__name__)

_JOB_COLUMNS = """
    id, owner_id, kind, status, items_json, total_items, current_index,
    processed_count, success_count, failed_count, error_message, run_token,
    resume_attempts, created_at, updated_at, completed_at
"""


def _placeholders(values: Sequence[Any]) -> str:
    return ",".join("?" for _ in values)


def _status_values(statuses: Sequence[JobStatus]) -> list[str]:
    return [JobStatus(s).value for s in statuses]


class JobStore:
    def __init__(self, db_path: str | None = None) -> None:
        self.db_path = db_path

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        with closing(get_connection(self.db_path)) as con:
            with con:
                yield con

    # ---- writes: submission ---------------------------------------------------

    def create(self, job: Job) -> Job:
        now = _utc_now_iso()
        job.created_at = job.created_at or now
        job.updated_at = job.updated_at or now
        with self._connect() as con:
            con.execute(
                f"""
                INSERT INTO jobs ({_JOB_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    job.id,
                    job.owner_id,
                    job.kind.value,
                    job.status.value,
                    job.items_json(),
                    job.total_items,
                    job.current_index,
                    job.processed_count,
                    job.success_count,
                    job.failed_count,
                    job.error_message,
                    None,
                    job.resume_attempts,
                    job.created_at,
                    job.updated_at,
                    job.completed_at,
                ),
            )
        return job

    # ---- reads -----------------------------------------------------------------

    def get(self, job_id: str) -> Job | None:
        with self._connect() as con:
            row = con.execute(
                f"SELECT {_JOB_COLUMNS} FROM jobs WHERE id = ?",
                (job_id,),
            ).fetchone()
        return Job.from_row(row) if row else None

    def get_for_owner(self, job_id: str, owner_id: str) -> Job | None:
        with self._connect() as con:
            row = con.execute(
                f"SELECT {_JOB_COLUMNS} FROM jobs WHERE id = ? AND owner_id = ?",
                (job_id, owner_id),
            ).fetchone()
        return Job.from_row(row) if row else None

    def list_for_owner(
        self,
        owner_id: str,
        *,
        kind: JobKind | None = None,
        limit: int = 10,
    ) -> list[Job]:
        sql = f"SELECT {_JOB_COLUMNS} FROM jobs WHERE owner_id = ?"
        params: list[Any] = [owner_id]
        if kind is not None:
            sql += " AND kind = ?"
            params.append(JobKind(kind).value)
        sql += " ORDER BY created_at DESC, rowid DESC LIMIT ?"
        params.append(max(1, int(limit)))
        with self._connect() as con:
            rows = con.execute(sql, tuple(params)).fetchall()
        return [Job.from_row(r) for r in rows]

    def read_status(self, job_id: str) -> tuple[JobStatus, str | None] | None:
        """Return (status, run_token) for the cooperative-cancellation check."""
        with self._connect() as con:
            row = con.execute(
                "SELECT status, run_token FROM jobs WHERE id = ?",
                (job_id,),
            ).fetchone()
        if not row:
            return None
        return JobStatus(row["status"]), row["run_token"]

    def count_by_status(self) -> dict[str, int]:
        with self._connect() as con:
            rows = con.execute("SELECT status, COUNT(*) AS n FROM jobs GROUP BY status").fetchall()
        counts = {s.value: 0 for s in JobStatus}
        for r in rows:
            counts[r["status"]] = int(r["n"])
        return counts

    # ---- writes: executor lease ---------------------------------------------------

    def claim(self, job_id: str, run_token: str) -> Job | None:
        """
        Move a pending job to processing under `run_token`.

        Returns the claimed job, or None when the job is missing or not pending
        (already running elsewhere, stopped, or finished).
        """
        now = _utc_now_iso()
        with self._connect() as con:
            cur = con.execute(
                """
                UPDATE jobs
                   SET status = ?, run_token = ?, error_message = NULL, updated_at = ?
                 WHERE id = ? AND status = ?
                """,
                (
                    JobStatus.PROCESSING.value,
                    run_token,
                    now,
                    job_id,
                    JobStatus.PENDING.value,
                ),
            )
            if cur.rowcount != 1:
                log.debug("Claim skipped for job %s (not pending)", job_id, extra={"job_id": job_id})
                return None
            row = con.execute(
                f"SELECT {_JOB_COLUMNS} FROM jobs WHERE id = ?",
                (job_id,),
            ).fetchone()
        return Job.from_row(row)

    def save_checkpoint(
        self,
        job_id: str,
        run_token: str,
        *,
        items: list[Item],
        current_index: int,
        processed_count: int,
        success_count: int,
        failed_count: int,
    ) -> bool:
        """
        Persist per-item progress for the run holding `run_token`.

        The status column is left alone: a user stop that landed mid-batch must
        survive, while the batch's already-debited items still get recorded.
        """
        if processed_count != success_count + failed_count:
            raise ValueError(
                f"counter mismatch: processed={processed_count} "
                f"success={success_count} failed={failed_count}"
            )
        if processed_count > len(items) or current_index > len(items):
            raise ValueError("checkpoint beyond end of items")

        with self._connect() as con:
            cur = con.execute(
                """
                UPDATE jobs
                   SET items_json = ?, current_index = ?, processed_count = ?,
                       success_count = ?, failed_count = ?, updated_at = ?
                 WHERE id = ? AND run_token = ?
                """,
                (
                    items_to_json(items),
                    current_index,
                    processed_count,
                    success_count,
                    failed_count,
                    _utc_now_iso(),
                    job_id,
                    run_token,
                ),
            )
            return cur.rowcount == 1

    def heartbeat(self, job_id: str, run_token: str) -> bool:
        with self._connect() as con:
            cur = con.execute(
                """
                UPDATE jobs SET updated_at = ?
                 WHERE id = ? AND run_token = ? AND status = ?
                """,
                (_utc_now_iso(), job_id, run_token, JobStatus.PROCESSING.value),
            )
            return cur.rowcount == 1

    def mark_completed(self, job_id: str, run_token: str) -> bool:
        """
        Close the job for the run holding `run_token`.

        A stop that lands during the final batch leaves nothing to resume, so a
        paused job whose cursor reached the end is completed as well.
        """
        now = _utc_now_iso()
        with self._connect() as con:
            cur = con.execute(
                """
                UPDATE jobs
                   SET status = ?, run_token = NULL, completed_at = ?, updated_at = ?,
                       error_message = NULL
                 WHERE id = ? AND run_token = ?
                   AND (status = ? OR (status = ? AND current_index >= total_items))
                """,
                (
                    JobStatus.COMPLETED.value,
                    now,
                    now,
                    job_id,
                    run_token,
                    JobStatus.PROCESSING.value,
                    JobStatus.PAUSED.value,
                ),
            )
            return cur.rowcount == 1

    def mark_failed(self, job_id: str, run_token: str, message: str) -> bool:
        with self._connect() as con:
            cur = con.execute(
                """
                UPDATE jobs
                   SET status = ?, run_token = NULL, error_message = ?, updated_at = ?
                 WHERE id = ? AND run_token = ? AND status = ?
                """,
                (
                    JobStatus.FAILED.value,
                    message,
                    _utc_now_iso(),
                    job_id,
                    run_token,
                    JobStatus.PROCESSING.value,
                ),
            )
            return cur.rowcount == 1

    def release(self, job_id: str, run_token: str) -> bool:
        """
        Drop the lease of a run that saw its job stopped.

        Until this lands the job still counts as held, and user resumes are
        refused so the stopped run cannot be overtaken mid-batch.
        """
        with self._connect() as con:
            cur = con.execute(
                """
                UPDATE jobs SET run_token = NULL, updated_at = ?
                 WHERE id = ? AND run_token = ? AND status != ?
                """,
                (_utc_now_iso(), job_id, run_token, JobStatus.PROCESSING.value),
            )
            return cur.rowcount == 1

    # ---- writes: users and the recovery daemon ----------------------------------

    def stop(self, job_id: str, owner_id: str) -> bool:
        """Pause a pending or processing job on behalf of its owner."""
        with self._connect() as con:
            cur = con.execute(
                """
                UPDATE jobs SET status = ?, updated_at = ?
                 WHERE id = ? AND owner_id = ? AND status IN (?, ?)
                """,
                (
                    JobStatus.PAUSED.value,
                    _utc_now_iso(),
                    job_id,
                    owner_id,
                    JobStatus.PENDING.value,
                    JobStatus.PROCESSING.value,
                ),
            )
            return cur.rowcount == 1

    def requeue(
        self,
        job_id: str,
        *,
        from_statuses: Sequence[JobStatus],
        expected_updated_at: str | None = None,
        owner_id: str | None = None,
        count_resume: bool = False,
        lease_expired_before: str | None = None,
    ) -> bool:
        """
        Put a job back to pending, keeping current_index and the item array.

        When `expected_updated_at` is given the write only lands if the row was
        not touched since it was read (so a late heartbeat wins over the daemon,
        and two daemons cannot both requeue the same job).

        When `lease_expired_before` is given a job still held by a run (stopped
        but not yet released) only moves once its last write is older than that.
        """
        statuses = _status_values(from_statuses)
        sql = f"""
            UPDATE jobs
               SET status = ?, run_token = NULL, error_message = NULL, updated_at = ?,
                   resume_attempts = resume_attempts + ?
             WHERE id = ? AND status IN ({_placeholders(statuses)})
               AND current_index < total_items
        """
        params: list[Any] = [
            JobStatus.PENDING.value,
            _utc_now_iso(),
            1 if count_resume else 0,
            job_id,
            *statuses,
        ]
        if expected_updated_at is not None:
            sql += " AND updated_at = ?"
            params.append(expected_updated_at)
        if owner_id is not None:
            sql += " AND owner_id = ?"
            params.append(owner_id)
        if lease_expired_before is not None:
            sql += " AND (run_token IS NULL OR updated_at < ?)"
            params.append(lease_expired_before)
        with self._connect() as con:
            cur = con.execute(sql, tuple(params))
            moved = cur.rowcount == 1
        if moved:
            log.debug("Requeued job %s from %s", job_id, statuses, extra={"job_id": job_id})
        return moved

    def complete_exhausted(self, job_id: str, *, expected_updated_at: str) -> bool:
        """Close out a processing job whose run died after its final checkpoint."""
        now = _utc_now_iso()
        with self._connect() as con:
            cur = con.execute(
                """
                UPDATE jobs
                   SET status = ?, run_token = NULL, completed_at = ?, updated_at = ?
                 WHERE id = ? AND status = ? AND current_index >= total_items
                   AND updated_at = ?
                """,
                (
                    JobStatus.COMPLETED.value,
                    now,
                    now,
                    job_id,
                    JobStatus.PROCESSING.value,
                    expected_updated_at,
                ),
            )
            return cur.rowcount == 1

    def find_stale(
        self,
        status: JobStatus,
        *,
        updated_before: str,
        limit: int = 50,
    ) -> list[Job]:
        with self._connect() as con:
            rows = con.execute(
                f"""
                SELECT {_JOB_COLUMNS} FROM jobs
                 WHERE status = ? AND updated_at < ?
                 ORDER BY updated_at ASC
                 LIMIT ?
                """,
                (JobStatus(status).value, updated_before, max(1, int(limit))),
            ).fetchall()
        return [Job.from_row(r) for r in rows]

    def find_resumable_failed(self, *, max_attempts: int, limit: int = 50) -> list[Job]:
        with self._connect() as con:
            rows = con.execute(
                f"""
                SELECT {_JOB_COLUMNS} FROM jobs
                 WHERE status = ? AND current_index < total_items
                   AND resume_attempts < ?
                 ORDER BY updated_at ASC
                 LIMIT ?
                """,
                (JobStatus.FAILED.value, int(max_attempts), max(1, int(limit))),
            ).fetchall()
        return [Job.from_row(r) for r in rows]

    def set_updated_at(self, job_id: str, value: datetime | str) -> None:
        """Overwrite updated_at; used by maintenance scripts and tests to age a row."""
        ts = value if isinstance(value, str) else _utc_now_iso(value)
        with self._connect() as con:
            con.execute("UPDATE jobs SET updated_at = ? WHERE id = ?", (ts, job_id))


__all__ = ["JobStore"]
