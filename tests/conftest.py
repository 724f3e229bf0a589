# ruff: noqa: E402
# tests/conftest.py
from __future__ import annotations

import sys
import threading
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import pytest

# Ensure project root importable
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from src.config import ExecutorConfig, RecoveryConfig
from src.credits.ledger import CreditLedger
from src.db import ensure_schema
from src.jobs.models import JobKind
from src.jobs.store import JobStore
from src.lookup.client import LookupResult


@pytest.fixture(autouse=True)
def temp_db(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> str:
    """
    Autouse: every test gets its own SQLite file, wired through DATABASE_URL
    so code that builds its own JobStore()/CreditLedger() lands there too.
    """
    db_path = tmp_path / "jobs.db"
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{db_path}")
    ensure_schema(str(db_path))
    return str(db_path)


@pytest.fixture
def store(temp_db: str) -> JobStore:
    return JobStore(temp_db)


@pytest.fixture
def ledger(temp_db: str) -> CreditLedger:
    return CreditLedger(temp_db)


def future_expiry(days: int = 30) -> datetime:
    return datetime.now(UTC) + timedelta(days=days)


@pytest.fixture
def open_account(ledger: CreditLedger) -> Callable[..., Any]:
    def _open(account_id: str = "user_1", *, find: int = 0, verify: int = 0, expiry=None):
        return ledger.open_account(
            account_id,
            find_credits=find,
            verify_credits=verify,
            plan_expiry=expiry if expiry is not None else future_expiry(),
        )

    return _open


def executor_config(batch_size: int = 1, **overrides: Any) -> ExecutorConfig:
    values = {
        "batch_size": batch_size,
        "heartbeat_interval_seconds": 60.0,
        "batch_delay_seconds": 0.0,
        "max_job_items": 100,
    }
    values.update(overrides)
    return ExecutorConfig(**values)


def recovery_config(**overrides: Any) -> RecoveryConfig:
    values = {
        "scan_interval_seconds": 0.05,
        "stale_after_seconds": 300,
        "pending_grace_seconds": 120,
        "max_auto_resumes": 3,
        "scan_limit": 50,
    }
    values.update(overrides)
    return RecoveryConfig(**values)


class FakeLookup:
    """
    Thread-safe stand-in for LookupClient.

    `respond(kind, item_input)` decides the result; the default answers every
    find with a valid address and every verify with a valid verdict. `on_call`
    runs before responding (used to stop a job mid-run).
    """

    def __init__(
        self,
        respond: Callable[[JobKind, dict[str, Any]], LookupResult] | None = None,
        on_call: Callable[[int, dict[str, Any]], None] | None = None,
    ) -> None:
        self._respond = respond or self._default
        self._on_call = on_call
        self._lock = threading.Lock()
        self.calls: list[dict[str, Any]] = []

    @staticmethod
    def _default(kind: JobKind, item_input: dict[str, Any]) -> LookupResult:
        if kind is JobKind.FIND:
            local = item_input["full_name"].lower().replace(" ", ".")
            return LookupResult(status="valid", email=f"{local}@{item_input['domain']}", confidence=95)
        return LookupResult(status="valid", email=item_input["email"], confidence=60)

    def lookup(self, kind: JobKind, item_input: dict[str, Any]) -> LookupResult:
        with self._lock:
            self.calls.append(dict(item_input))
            n = len(self.calls)
        if self._on_call is not None:
            self._on_call(n, item_input)
        return self._respond(kind, item_input)


def find_inputs(n: int) -> list[dict[str, str]]:
    return [{"full_name": f"Person {i}", "domain": "example.com"} for i in range(n)]


def verify_inputs(n: int) -> list[str]:
    return [f"user{i}@example.com" for i in range(n)]
