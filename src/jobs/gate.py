# src/jobs/gate.py
"""
Admission control for bulk jobs.

SubmissionGate.submit() validates the caller, the inputs, the plan and the
credit balance, writes the job as pending and fires the executor trigger once.
Nothing is debited here; credits are consumed item by item by the executor.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, Sequence
from typing import Any

from src.config import ExecutorConfig, app_config
from src.credits.ledger import CreditLedger
from src.exceptions import (
    InsufficientCredits,
    InvalidJobInput,
    NotAuthenticated,
    PlanExpired,
)
from src.jobs.models import Item, Job, JobKind, JobStatus
from src.jobs.store import JobStore

log = logging.getLogger(__name__)

Trigger = Callable[[str], Any]


def _clean_str(value: Any) -> str:
    return str(value).strip() if value is not None else ""


def normalize_input(kind: JobKind, raw: Any, index: int) -> dict[str, Any]:
    """
    Turn one raw submission entry into the stored item input.

    find:   {"full_name": str, "domain": str, "role"?: str}
    verify: "a@b.com" or {"email": "a@b.com"}
    """
    if kind is JobKind.FIND:
        if not isinstance(raw, dict):
            raise InvalidJobInput(f"item {index}: expected an object with full_name and domain")
        full_name = _clean_str(raw.get("full_name"))
        domain = _clean_str(raw.get("domain")).lower()
        if not full_name or not domain:
            raise InvalidJobInput(f"item {index}: full_name and domain are required")
        out: dict[str, Any] = {"full_name": full_name, "domain": domain}
        role = _clean_str(raw.get("role"))
        if role:
            out["role"] = role
        return out

    email = _clean_str(raw.get("email") if isinstance(raw, dict) else raw)
    if not email or "@" not in email:
        raise InvalidJobInput(f"item {index}: a valid email address is required")
    return {"email": email}


class SubmissionGate:
    def __init__(
        self,
        store: JobStore,
        ledger: CreditLedger,
        trigger: Trigger,
        *,
        config: ExecutorConfig | None = None,
    ) -> None:
        self.store = store
        self.ledger = ledger
        self.trigger = trigger
        self.config = config or app_config.executor

    def submit(self, owner_id: str | None, kind: JobKind | str, inputs: Sequence[Any]) -> Job:
        """
        Admit a new bulk job or raise an AdmissionError.

        The job is persisted before the trigger fires, so a dropped trigger
        leaves a pending job for the recovery daemon rather than a lost one.
        """
        owner_id = _clean_str(owner_id)
        if not owner_id:
            raise NotAuthenticated()

        try:
            kind = JobKind(kind)
        except ValueError as err:
            raise InvalidJobInput(f"unknown job kind: {kind!r}") from err

        if not inputs:
            raise InvalidJobInput("at least one item is required")
        if len(inputs) > self.config.max_job_items:
            raise InvalidJobInput(
                f"too many items: {len(inputs)} > {self.config.max_job_items}"
            )
        items = [Item(input=normalize_input(kind, raw, i)) for i, raw in enumerate(inputs)]

        account = self.ledger.get_account(owner_id)
        if account is None:
            raise PlanExpired()
        if account.plan_expired():
            self.ledger.reset_expired_plan(owner_id)
            raise PlanExpired()

        available = account.total
        if available < 1 or available < len(items):
            raise InsufficientCredits(required=len(items), available=available)

        job = self.store.create(
            Job(
                id=str(uuid.uuid4()),
                owner_id=owner_id,
                kind=kind,
                status=JobStatus.PENDING,
                items=items,
            )
        )
        log.info(
            "Admitted %s job %s with %d items for %s",
            kind.value,
            job.id,
            job.total_items,
            owner_id,
            extra={"job_id": job.id},
        )

        try:
            self.trigger(job.id)
        except Exception:
            log.exception(
                "Trigger failed for job %s; left pending for recovery",
                job.id,
                extra={"job_id": job.id},
            )
        return job


__all__ = ["SubmissionGate", "Trigger", "normalize_input"]
