# src/api/jobs.py
"""
Bulk job endpoints.

  POST /api/v1/jobs                    submit a find/verify job
  GET  /api/v1/jobs                    caller's recent jobs (no item arrays)
  GET  /api/v1/jobs/{job_id}           full job, items included, for polling
  POST /api/v1/jobs/{job_id}/stop      pause a pending/processing job
  POST /api/v1/jobs/{job_id}/resume    requeue a paused/failed job
  GET  /api/v1/credits                 caller's balances and recent ledger rows
  GET  /api/v1/queue                   pending / processing counts
"""

from __future__ import annotations

import logging
from typing import Annotated, Any

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field, field_validator

from src.api.deps import Services, get_owner_id, get_services
from src.exceptions import (
    AdmissionError,
    InsufficientCredits,
    InvalidJobInput,
    JobNotFound,
    JobStateError,
    NotAuthenticated,
    PlanExpired,
)
from src.jobs.models import Job, JobKind
from src.jobs.query import DEFAULT_LIST_LIMIT, MAX_LIST_LIMIT

log = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", tags=["jobs"])

OwnerId = Annotated[str, Depends(get_owner_id)]
Deps = Annotated[Services, Depends(get_services)]


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class SubmitJobRequest(BaseModel):
    kind: JobKind
    items: list[Any] = Field(min_length=1)

    @field_validator("kind", mode="before")
    @classmethod
    def parse_kind(cls, v):
        if isinstance(v, str):
            return v.strip().lower()
        return v


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

_ADMISSION_STATUS = {
    NotAuthenticated: 401,
    InsufficientCredits: 402,
    PlanExpired: 403,
    InvalidJobInput: 422,
}


def _admission_http_error(exc: AdmissionError) -> HTTPException:
    detail: dict[str, Any] = {"error": exc.code, "message": str(exc)}
    if isinstance(exc, InsufficientCredits):
        detail.update(
            required=exc.required,
            available=exc.available,
            shortfall=exc.shortfall,
        )
    code = _ADMISSION_STATUS.get(type(exc), 400)
    return HTTPException(status_code=code, detail=detail)


def _not_found(job_id: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail={"error": "not_found", "message": f"Job not found: {job_id}"},
    )


def _job_summary(job: Job) -> dict[str, Any]:
    data = job.to_dict()
    data.pop("items", None)
    return data


def _state_conflict(exc: JobStateError) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_409_CONFLICT,
        detail={"error": "invalid_state", "message": str(exc), "status": exc.status},
    )


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------


@router.post("/jobs", status_code=status.HTTP_201_CREATED)
def submit_job(payload: SubmitJobRequest, owner_id: OwnerId, services: Deps) -> dict[str, Any]:
    try:
        job = services.gate.submit(owner_id, payload.kind, payload.items)
    except AdmissionError as exc:
        raise _admission_http_error(exc) from exc
    return {
        "job_id": job.id,
        "status": job.status.value,
        "kind": job.kind.value,
        "total_items": job.total_items,
    }


@router.get("/jobs")
def list_jobs(
    owner_id: OwnerId,
    services: Deps,
    kind: JobKind | None = None,
    limit: int = Query(default=DEFAULT_LIST_LIMIT, ge=1, le=MAX_LIST_LIMIT),
) -> dict[str, Any]:
    jobs = services.query.list_jobs(owner_id, kind=kind, limit=limit)
    return {"jobs": [_job_summary(j) for j in jobs]}


@router.get("/jobs/{job_id}")
def get_job(job_id: str, owner_id: OwnerId, services: Deps) -> dict[str, Any]:
    try:
        job = services.query.get_job(job_id, owner_id)
    except JobNotFound as exc:
        raise _not_found(job_id) from exc
    return job.to_dict()


@router.post("/jobs/{job_id}/stop")
def stop_job(job_id: str, owner_id: OwnerId, services: Deps) -> dict[str, Any]:
    try:
        job = services.control.stop(job_id, owner_id)
    except JobNotFound as exc:
        raise _not_found(job_id) from exc
    except JobStateError as exc:
        raise _state_conflict(exc) from exc
    return _job_summary(job)


@router.post("/jobs/{job_id}/resume")
def resume_job(job_id: str, owner_id: OwnerId, services: Deps) -> dict[str, Any]:
    try:
        job = services.control.resume(job_id, owner_id)
    except JobNotFound as exc:
        raise _not_found(job_id) from exc
    except JobStateError as exc:
        raise _state_conflict(exc) from exc
    try:
        services.trigger(job_id)
    except Exception:
        log.exception(
            "Trigger failed on resume of %s; left pending for recovery",
            job_id,
            extra={"job_id": job_id},
        )
    return _job_summary(job)


@router.get("/credits")
def get_credits(owner_id: OwnerId, services: Deps) -> dict[str, Any]:
    account = services.ledger.get_account(owner_id)
    if account is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"error": "not_found", "message": "No credit account"},
        )
    transactions = services.ledger.list_transactions(owner_id, limit=20)
    return {
        **account.to_dict(),
        "plan_expired": account.plan_expired(),
        "transactions": [t.to_dict() for t in transactions],
    }


@router.get("/queue")
def queue_status(services: Deps) -> dict[str, int]:
    return services.query.queue_status()
