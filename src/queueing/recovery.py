# src/queueing/recovery.py
"""
Recovery daemon: periodic scans of the job store for work that fell through.

Each scan:
  - requeues processing jobs whose heartbeat went quiet (cursor untouched, so
    the next run resumes where the dead one stopped);
  - re-triggers pending jobs whose trigger was evidently dropped;
  - resumes failed jobs that still have items left, a bounded number of times.

Paused jobs are a user decision and are never touched. Every state change is
a compare-and-swap on updated_at, so several daemons can scan the same store
without double-triggering a job.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from src.config import RecoveryConfig, app_config
from src.db import _iso_seconds_ago
from src.exceptions import StaleJobError
from src.jobs.models import Job, JobStatus
from src.jobs.store import JobStore

log = logging.getLogger(__name__)

Trigger = Callable[[str], Any]


@dataclass
class ScanReport:
    requeued: list[str] = field(default_factory=list)
    completed: list[str] = field(default_factory=list)
    retriggered: list[str] = field(default_factory=list)
    resumed: list[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.requeued) + len(self.completed) + len(self.retriggered) + len(self.resumed)

    def to_dict(self) -> dict[str, list[str]]:
        return {
            "requeued": list(self.requeued),
            "completed": list(self.completed),
            "retriggered": list(self.retriggered),
            "resumed": list(self.resumed),
        }


class RecoveryDaemon:
    def __init__(
        self,
        store: JobStore,
        trigger: Trigger,
        *,
        config: RecoveryConfig | None = None,
    ) -> None:
        self.store = store
        self.trigger = trigger
        self.config = config or app_config.recovery
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    # ---- lifecycle ----

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self.run_forever, name="recovery-daemon", daemon=True)
        self._thread.start()
        log.info(
            "Recovery daemon started (interval=%ss stale_after=%ss)",
            self.config.scan_interval_seconds,
            self.config.stale_after_seconds,
        )

    def stop(self, timeout: float = 10.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def run_forever(self) -> None:
        """Scan until stop() is called; a failing scan is logged and retried next tick."""
        while not self._stop.is_set():
            try:
                self.scan_once()
            except Exception:
                log.exception("Recovery scan failed")
            self._stop.wait(self.config.scan_interval_seconds)

    # ---- scanning ----

    def scan_once(self, now: datetime | None = None) -> ScanReport:
        report = ScanReport()
        limit = self.config.scan_limit

        grace_cutoff = _iso_seconds_ago(self.config.pending_grace_seconds, now=now)
        for job in self.store.find_stale(JobStatus.PENDING, updated_before=grace_cutoff, limit=limit):
            if self.store.requeue(
                job.id,
                from_statuses=[JobStatus.PENDING],
                expected_updated_at=job.updated_at,
            ):
                report.retriggered.append(job.id)
                self._fire(job.id)

        stale_cutoff = _iso_seconds_ago(self.config.stale_after_seconds, now=now)
        for job in self.store.find_stale(JobStatus.PROCESSING, updated_before=stale_cutoff, limit=limit):
            self._recover_stale(job, report)

        for job in self.store.find_resumable_failed(
            max_attempts=self.config.max_auto_resumes, limit=limit
        ):
            if self.store.requeue(
                job.id,
                from_statuses=[JobStatus.FAILED],
                expected_updated_at=job.updated_at,
                count_resume=True,
                lease_expired_before=stale_cutoff,
            ):
                log.info(
                    "Resuming failed job %s from index %d (attempt %d/%d): %s",
                    job.id,
                    job.current_index,
                    job.resume_attempts + 1,
                    self.config.max_auto_resumes,
                    job.error_message,
                    extra={"job_id": job.id},
                )
                report.resumed.append(job.id)
                self._fire(job.id)

        if report.total:
            log.info("Recovery scan: %s", report.to_dict())
        return report

    def _recover_stale(self, job: Job, report: ScanReport) -> None:
        stale = StaleJobError(job.id, job.updated_at)
        if job.remaining == 0:
            if self.store.complete_exhausted(job.id, expected_updated_at=job.updated_at):
                log.warning("%s; all items done, marked completed", stale, extra={"job_id": job.id})
                report.completed.append(job.id)
            return

        if self.store.requeue(
            job.id,
            from_statuses=[JobStatus.PROCESSING],
            expected_updated_at=job.updated_at,
        ):
            log.warning(
                "%s; requeued from index %d",
                stale,
                job.current_index,
                extra={"job_id": job.id},
            )
            report.requeued.append(job.id)
            self._fire(job.id)

    def _fire(self, job_id: str) -> None:
        try:
            self.trigger(job_id)
        except Exception:
            log.exception(
                "Trigger failed for job %s; will retry after the pending grace period",
                job_id,
                extra={"job_id": job_id},
            )


__all__ = ["RecoveryDaemon", "ScanReport"]
