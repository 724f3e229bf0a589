# src/queueing/executor.py
"""
Background executor for bulk jobs.

One JobExecutor.run(job_id) call drives a job from pending through
processing to a terminal status:

  1. claim the job under a fresh run token (pending -> processing);
  2. walk the items from current_index in batches, checking before every
     batch that the job is still processing under our token (the only
     cooperative-cancellation point);
  3. per item: take a throttle slot, debit one credit, call the lookup,
     record the normalized result on the item;
  4. mark the batch's items processing, run them, then persist items +
     cursor + counters (the checkpoint);
  5. mark completed when the items run out, or leave an externally set
     status alone when stopped and give the lease back;
  6. on an unexpected error commit the finished prefix of the batch, mark the
     job failed and raise ExecutorFatalError.

Credits are charged per attempt: a lookup that errors still consumes the
credit it was debited. The run's total consumption is appended to the ledger
as one transaction when the run ends.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from contextlib import ExitStack
from dataclasses import dataclass
from typing import Any, Protocol

from src.config import ExecutorConfig, app_config
from src.credits.ledger import CreditLedger
from src.exceptions import ExecutorFatalError, ItemError
from src.jobs.models import Item, ItemStatus, Job, JobKind, JobStatus
from src.jobs.store import JobStore
from src.lookup.client import LookupResult
from src.lookup.rate_limit import LookupThrottle

log = logging.getLogger(__name__)

INSUFFICIENT_CREDITS = "InsufficientCredits"


class Lookup(Protocol):
    def lookup(self, kind: JobKind, item_input: dict[str, Any]) -> LookupResult: ...


@dataclass
class RunOutcome:
    job_id: str
    outcome: str  # completed | stopped | lease_lost | skipped
    processed: int = 0
    debited: int = 0


class _RunCounters:
    """
    Per-run tallies. Debits are counted from worker threads as they happen;
    processed only counts items whose checkpoint landed.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.debited = 0
        self.processed = 0

    def count_debit(self) -> None:
        with self._lock:
            self.debited += 1


# ---- Heartbeat ----------------------------------------------------------------


class Heartbeat:
    """
    Background thread that refreshes a processing job's updated_at.

    Runs independently of checkpoints so a slow batch still looks alive to the
    recovery daemon. Stops by itself once the job leaves processing or the run
    token no longer matches.
    """

    def __init__(self, store: JobStore, job_id: str, run_token: str, interval_s: float) -> None:
        self.store = store
        self.job_id = job_id
        self.run_token = run_token
        self.interval_s = max(0.01, float(interval_s))
        self._stop = threading.Event()
        self._thread = threading.Thread(
            target=self._loop,
            name=f"heartbeat-{job_id[:8]}",
            daemon=True,
        )

    def start(self) -> Heartbeat:
        self._thread.start()
        return self

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread.is_alive():
            self._thread.join(timeout)

    def __enter__(self) -> Heartbeat:
        return self.start()

    def __exit__(self, exc_type, exc, tb) -> bool:
        self.stop()
        return False

    def _loop(self) -> None:
        while not self._stop.wait(self.interval_s):
            try:
                alive = self.store.heartbeat(self.job_id, self.run_token)
            except Exception:
                log.exception("Heartbeat write failed", extra={"job_id": self.job_id})
                continue
            if not alive:
                log.info(
                    "Heartbeat for %s stopped: job no longer held by this run",
                    self.job_id,
                    extra={"job_id": self.job_id},
                )
                return


# ---- Item outcome helpers -------------------------------------------------------


def _failed_item(item: Item, error: str, result: dict[str, Any] | None = None) -> Item:
    return Item(input=item.input, status=ItemStatus.FAILED, result=result, error=error)


def item_from_result(kind: JobKind, item: Item, result: LookupResult) -> Item:
    """
    find succeeds only with a valid verdict and an email; verify only with a
    valid verdict. Every other verdict is a failed item that keeps the result.
    """
    ok = result.status == "valid" and (kind is JobKind.VERIFY or bool(result.email))
    payload = result.to_dict()
    if ok:
        return Item(input=item.input, status=ItemStatus.COMPLETED, result=payload)
    if result.is_error:
        error = result.message or "lookup error"
    elif result.status == "valid":
        error = "not_found"
    else:
        error = result.status
    return _failed_item(item, error, payload)


# ---- Executor -----------------------------------------------------------------


class JobExecutor:
    def __init__(
        self,
        store: JobStore,
        ledger: CreditLedger,
        lookup: Lookup,
        *,
        throttle: LookupThrottle | None = None,
        config: ExecutorConfig | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.store = store
        self.ledger = ledger
        self.lookup = lookup
        self.throttle = throttle
        self.config = config or app_config.executor
        self._sleep = sleep

    # ---- public ----

    def run(self, job_id: str) -> RunOutcome:
        run_token = uuid.uuid4().hex
        job = self.store.claim(job_id, run_token)
        if job is None:
            log.info("Job %s not pending; nothing to run", job_id, extra={"job_id": job_id})
            return RunOutcome(job_id=job_id, outcome="skipped")

        log.info(
            "Running %s job %s from index %d of %d",
            job.kind.value,
            job_id,
            job.current_index,
            job.total_items,
            extra={"job_id": job_id},
        )
        counters = _RunCounters()
        outcome = "failed"
        heartbeat = Heartbeat(
            self.store, job_id, run_token, self.config.heartbeat_interval_seconds
        ).start()
        try:
            outcome = self._drive(job, run_token, counters)
        except Exception as exc:
            log.exception(
                "Job %s aborted at index %d",
                job_id,
                job.current_index,
                extra={"job_id": job_id},
            )
            message = f"{type(exc).__name__}: {exc}"
            try:
                self.store.mark_failed(job_id, run_token, message)
            except Exception:
                log.exception("Could not mark job %s failed", job_id, extra={"job_id": job_id})
            raise ExecutorFatalError(job_id, message) from exc
        finally:
            heartbeat.stop()
            self._record_consumption(job, counters, outcome)

        if outcome == "stopped":
            self.store.release(job_id, run_token)

        log.info(
            "Job %s run ended: %s (processed=%d debited=%d)",
            job_id,
            outcome,
            counters.processed,
            counters.debited,
            extra={"job_id": job_id},
        )
        return RunOutcome(
            job_id=job_id,
            outcome=outcome,
            processed=counters.processed,
            debited=counters.debited,
        )

    # ---- loop ----

    def _drive(self, job: Job, run_token: str, counters: _RunCounters) -> str:
        total = job.total_items
        batch_size = max(1, int(self.config.batch_size))

        while job.current_index < total:
            current = self.store.read_status(job.id)
            if current is None:
                return "stopped"
            status, token = current
            if token != run_token:
                return "lease_lost"
            if status is not JobStatus.PROCESSING:
                log.info(
                    "Job %s is %s; stopping at index %d",
                    job.id,
                    status.value,
                    job.current_index,
                    extra={"job_id": job.id},
                )
                return "stopped"

            start = job.current_index
            end = min(start + batch_size, total)
            self._mark_items(job, start, end, ItemStatus.PROCESSING)
            if not self._checkpoint(job, run_token):
                return "lease_lost"

            done, error = self._run_batch(job, start, end, counters)

            for offset, item in enumerate(done):
                job.items[start + offset] = item
                job.current_index = start + offset + 1
                job.processed_count += 1
                if item.status is ItemStatus.COMPLETED:
                    job.success_count += 1
                else:
                    job.failed_count += 1
            # items cut off by an error go back to pending for the next run
            self._mark_items(job, start + len(done), end, ItemStatus.PENDING)

            if not self._checkpoint(job, run_token):
                log.warning(
                    "Lost lease on job %s; another run owns it now",
                    job.id,
                    extra={"job_id": job.id},
                )
                return "lease_lost"
            counters.processed += len(done)
            if error is not None:
                raise error

            if job.current_index < total and self.config.batch_delay_seconds > 0:
                self._sleep(self.config.batch_delay_seconds)

        if self.store.mark_completed(job.id, run_token):
            return "completed"
        return "stopped"

    def _run_batch(
        self,
        job: Job,
        start: int,
        end: int,
        counters: _RunCounters,
    ) -> tuple[list[Item], Exception | None]:
        """
        Process items[start:end] and return the finished prefix in order,
        plus the first unexpected error (if any) that cut the prefix short.
        """
        batch = job.items[start:end]
        done: list[Item] = []

        if len(batch) == 1:
            try:
                done.append(self._process_item(job, batch[0], counters))
            except Exception as exc:
                return done, exc
            return done, None

        with ThreadPoolExecutor(
            max_workers=len(batch), thread_name_prefix=f"job-{job.id[:8]}"
        ) as pool:
            futures = [pool.submit(self._process_item, job, item, counters) for item in batch]

        for fut in futures:
            try:
                done.append(fut.result())
            except Exception as exc:
                return done, exc
        return done, None

    def _process_item(self, job: Job, item: Item, counters: _RunCounters) -> Item:
        try:
            result = self._attempt(job, item, counters)
        except ItemError as exc:
            return _failed_item(item, exc.reason)
        return item_from_result(job.kind, item, result)

    def _attempt(self, job: Job, item: Item, counters: _RunCounters) -> LookupResult:
        """
        Throttle slot, then debit, then lookup. Anything that only sinks this
        item raises ItemError; other exceptions abort the run.
        """
        with ExitStack() as stack:
            if self.throttle is not None:
                try:
                    stack.enter_context(self.throttle.slot())
                except TimeoutError as exc:
                    raise ItemError(f"RateLimited: {exc}") from exc

            if not self.ledger.check_and_debit(job.owner_id, job.kind, 1):
                raise ItemError(INSUFFICIENT_CREDITS)
            counters.count_debit()

            try:
                return self.lookup.lookup(job.kind, item.input)
            except Exception as exc:
                log.warning(
                    "Lookup raised for job %s: %s",
                    job.id,
                    exc,
                    extra={"job_id": job.id},
                )
                raise ItemError(f"{type(exc).__name__}: {exc}") from exc

    @staticmethod
    def _mark_items(job: Job, start: int, end: int, status: ItemStatus) -> None:
        for i in range(start, end):
            job.items[i] = Item(input=job.items[i].input, status=status)

    def _checkpoint(self, job: Job, run_token: str) -> bool:
        return self.store.save_checkpoint(
            job.id,
            run_token,
            items=job.items,
            current_index=job.current_index,
            processed_count=job.processed_count,
            success_count=job.success_count,
            failed_count=job.failed_count,
        )

    def _record_consumption(self, job: Job, counters: _RunCounters, outcome: str) -> None:
        if counters.debited <= 0:
            return
        try:
            self.ledger.record_transaction(
                job.owner_id,
                -counters.debited,
                job.kind.operation,
                {
                    "job_id": job.id,
                    "bulk": True,
                    "item_count": counters.processed,
                    "outcome": outcome,
                },
            )
        except Exception:
            log.exception(
                "Could not record ledger summary for job %s (%d credits)",
                job.id,
                counters.debited,
                extra={"job_id": job.id},
            )


__all__ = [
    "JobExecutor",
    "Heartbeat",
    "RunOutcome",
    "Lookup",
    "item_from_result",
    "INSUFFICIENT_CREDITS",
]
