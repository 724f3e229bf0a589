# src/api/deps.py
from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from functools import lru_cache
from typing import Any

from fastapi import Header, HTTPException, status

from src.credits.ledger import CreditLedger
from src.jobs.control import JobControl
from src.jobs.gate import SubmissionGate
from src.jobs.query import JobQuery
from src.jobs.store import JobStore


@dataclass
class Services:
    """Everything the job routes need; tests swap this via dependency_overrides."""

    store: JobStore
    ledger: CreditLedger
    gate: SubmissionGate
    query: JobQuery
    control: JobControl
    trigger: Callable[[str], Any]


def build_services(
    db_path: str | None = None,
    trigger: Callable[[str], Any] | None = None,
) -> Services:
    if trigger is None:
        from src.queueing.tasks import enqueue_job_run

        trigger = enqueue_job_run
    store = JobStore(db_path)
    ledger = CreditLedger(db_path)
    return Services(
        store=store,
        ledger=ledger,
        gate=SubmissionGate(store, ledger, trigger),
        query=JobQuery(store),
        control=JobControl(store),
        trigger=trigger,
    )


@lru_cache(maxsize=1)
def get_services() -> Services:
    return build_services()


def get_owner_id(x_user_id: str | None = Header(default=None)) -> str:
    """
    Resolve the caller from the X-User-Id header set by the auth proxy.

    Missing or blank → 401; the job routes never fall back to a default user.
    """
    owner_id = (x_user_id or "").strip()
    if not owner_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"error": "not_authenticated", "message": "Unauthorized"},
        )
    return owner_id
