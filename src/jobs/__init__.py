# src/jobs/__init__.py
"""Bulk job records: models, durable store, admission gate and status queries."""

from src.jobs.models import Item, ItemStatus, Job, JobKind, JobStatus
from src.jobs.store import JobStore

__all__ = ["Item", "ItemStatus", "Job", "JobKind", "JobStatus", "JobStore"]
