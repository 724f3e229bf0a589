"""
Job and item records.

A Job is persisted as one row with its items embedded as a JSON array; the
item array is fixed at submission and mutated in place as results arrive.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class JobKind(str, Enum):
    FIND = "find"
    VERIFY = "verify"

    @property
    def operation(self) -> str:
        """Ledger operation name for this kind of work."""
        return "email_find" if self is JobKind.FIND else "email_verify"


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    PAUSED = "paused"


class ItemStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_ITEM_STATUSES = frozenset({ItemStatus.COMPLETED, ItemStatus.FAILED})

# Stopped or aborted jobs that still have items left can be put back to pending.
RESUMABLE_STATUSES = (JobStatus.PAUSED, JobStatus.FAILED)


def items_to_json(items: list[Item]) -> str:
    return json.dumps([it.to_dict() for it in items], separators=(",", ":"))


@dataclass
class Item:
    input: dict[str, Any]
    status: ItemStatus = ItemStatus.PENDING
    result: dict[str, Any] | None = None
    error: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_ITEM_STATUSES

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"input": dict(self.input), "status": self.status.value}
        if self.result is not None:
            out["result"] = self.result
        if self.error is not None:
            out["error"] = self.error
        return out

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Item:
        return cls(
            input=dict(data.get("input") or {}),
            status=ItemStatus(data.get("status") or ItemStatus.PENDING.value),
            result=data.get("result"),
            error=data.get("error"),
        )


@dataclass
class Job:
    id: str
    owner_id: str
    kind: JobKind
    status: JobStatus
    items: list[Item] = field(default_factory=list)
    current_index: int = 0
    processed_count: int = 0
    success_count: int = 0
    failed_count: int = 0
    error_message: str | None = None
    created_at: str | None = None
    updated_at: str | None = None
    completed_at: str | None = None
    resume_attempts: int = 0

    @property
    def total_items(self) -> int:
        return len(self.items)

    @property
    def remaining(self) -> int:
        return max(0, len(self.items) - self.current_index)

    @property
    def is_terminal(self) -> bool:
        return self.status in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.PAUSED)

    def items_json(self) -> str:
        return items_to_json(self.items)

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.id,
            "owner_id": self.owner_id,
            "kind": self.kind.value,
            "status": self.status.value,
            "total_items": self.total_items,
            "current_index": self.current_index,
            "processed_count": self.processed_count,
            "success_count": self.success_count,
            "failed_count": self.failed_count,
            "error_message": self.error_message,
            "items": [it.to_dict() for it in self.items],
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "completed_at": self.completed_at,
        }

    @classmethod
    def from_row(cls, row: Any) -> Job:
        raw_items = row["items_json"]
        items_data = json.loads(raw_items) if raw_items else []
        return cls(
            id=row["id"],
            owner_id=row["owner_id"],
            kind=JobKind(row["kind"]),
            status=JobStatus(row["status"]),
            items=[Item.from_dict(d) for d in items_data],
            current_index=int(row["current_index"] or 0),
            processed_count=int(row["processed_count"] or 0),
            success_count=int(row["success_count"] or 0),
            failed_count=int(row["failed_count"] or 0),
            error_message=row["error_message"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            completed_at=row["completed_at"],
            resume_attempts=int(row["resume_attempts"] or 0),
        )


__all__ = [
    "JobKind",
    "JobStatus",
    "ItemStatus",
    "Item",
    "Job",
    "TERMINAL_ITEM_STATUSES",
    "RESUMABLE_STATUSES",
    "items_to_json",
]
