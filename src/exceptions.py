# src/exceptions.py
"""
Shared exception classes used across the bulk job subsystem.

Admission errors are raised synchronously to the submitting caller before any
job exists. Item errors never leave the item they belong to. Executor fatal
errors abort the remaining run but leave the job resumable.
"""

from __future__ import annotations


class AdmissionError(Exception):
    """Base class for rejections raised by the submission gate."""

    code = "admission_error"


class NotAuthenticated(AdmissionError):
    code = "not_authenticated"

    def __init__(self, message: str = "Unauthorized") -> None:
        super().__init__(message)


class PlanExpired(AdmissionError):
    code = "plan_expired"

    def __init__(self, message: str = "Your plan has expired. Please upgrade to Pro.") -> None:
        super().__init__(message)


class InsufficientCredits(AdmissionError):
    """
    Raised when the combined credit pools cannot cover the whole submission.

    No partial job is ever created; the caller gets the shortfall instead.
    """

    code = "insufficient_credits"

    def __init__(self, required: int, available: int) -> None:
        self.required = int(required)
        self.available = int(available)
        super().__init__(
            f"You need {self.required} credits but only have {self.available}. "
            "Please purchase more credits."
        )

    @property
    def shortfall(self) -> int:
        return max(0, self.required - self.available)


class InvalidJobInput(AdmissionError):
    code = "invalid_input"


class ItemError(Exception):
    """
    A single item failed (lookup error or no credit left).

    Recorded on the item's own status field; never aborts the job.
    """

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(reason)


class ExecutorFatalError(Exception):
    """Unexpected failure that aborted a job run; progress up to the last checkpoint is kept."""

    def __init__(self, job_id: str, message: str) -> None:
        self.job_id = job_id
        super().__init__(f"job {job_id} failed: {message}")


class StaleJobError(Exception):
    """Describes a processing job whose executor stopped heartbeating."""

    def __init__(self, job_id: str, updated_at: str | None) -> None:
        self.job_id = job_id
        self.updated_at = updated_at
        super().__init__(f"job {job_id} stale since {updated_at}")


class JobNotFound(LookupError):
    def __init__(self, job_id: str) -> None:
        self.job_id = job_id
        super().__init__(f"Job not found: {job_id}")


class JobStateError(Exception):
    """Raised when a stop/resume request does not fit the job's current status."""

    def __init__(self, job_id: str, status: str, message: str) -> None:
        self.job_id = job_id
        self.status = status
        super().__init__(message)


__all__ = [
    "AdmissionError",
    "NotAuthenticated",
    "PlanExpired",
    "InsufficientCredits",
    "InvalidJobInput",
    "ItemError",
    "ExecutorFatalError",
    "StaleJobError",
    "JobNotFound",
    "JobStateError",
]
