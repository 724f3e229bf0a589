# src/db.py
import os
import sqlite3
from datetime import UTC, datetime, timedelta
from typing import Any

# -------------------- basics --------------------

# Seconds a connection waits on a locked database before raising.
BUSY_TIMEOUT_S = float(os.getenv("SQLITE_BUSY_TIMEOUT_SECONDS", "30"))

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS jobs (
  id               TEXT PRIMARY KEY,
  owner_id         TEXT NOT NULL,
  kind             TEXT NOT NULL CHECK (kind IN ('find', 'verify')),
  status           TEXT NOT NULL,
  items_json       TEXT NOT NULL,
  total_items      INTEGER NOT NULL,
  current_index    INTEGER NOT NULL DEFAULT 0,
  processed_count  INTEGER NOT NULL DEFAULT 0,
  success_count    INTEGER NOT NULL DEFAULT 0,
  failed_count     INTEGER NOT NULL DEFAULT 0,
  error_message    TEXT,
  run_token        TEXT,
  resume_attempts  INTEGER NOT NULL DEFAULT 0,
  created_at       TEXT NOT NULL,
  updated_at       TEXT NOT NULL,
  completed_at     TEXT
);

CREATE INDEX IF NOT EXISTS ix_jobs_status_updated ON jobs(status, updated_at);
CREATE INDEX IF NOT EXISTS ix_jobs_owner_created ON jobs(owner_id, created_at);

CREATE TABLE IF NOT EXISTS credit_accounts (
  account_id      TEXT PRIMARY KEY,
  find_credits    INTEGER NOT NULL DEFAULT 0 CHECK (find_credits >= 0),
  verify_credits  INTEGER NOT NULL DEFAULT 0 CHECK (verify_credits >= 0),
  plan_expiry     TEXT,
  updated_at      TEXT
);

CREATE TABLE IF NOT EXISTS credit_transactions (
  id          INTEGER PRIMARY KEY AUTOINCREMENT,
  account_id  TEXT NOT NULL,
  amount      INTEGER NOT NULL,
  operation   TEXT NOT NULL,
  metadata    TEXT,
  created_at  TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS ix_credit_tx_account ON credit_transactions(account_id, created_at);
"""


def _db_path() -> str:
    # Prefer DATABASE_URL if set; otherwise fall back to DATABASE_PATH; otherwise dev.db
    url = os.environ.get("DATABASE_URL")
    if url:
        if not url.startswith("sqlite:///"):
            raise RuntimeError(f"Only sqlite supported; got {url}")
        return url.removeprefix("sqlite:///")
    path = os.environ.get("DATABASE_PATH")
    if path:
        return path
    return "dev.db"


def get_connection(db_path: str | None = None) -> sqlite3.Connection:
    """
    Shared SQLite connection helper for the store, the ledger and scripts.

    - If db_path is None, uses _db_path() (DATABASE_URL/DATABASE_PATH/dev.db).
    - Waits up to BUSY_TIMEOUT_S on a locked database instead of failing fast;
      executor threads and workers write concurrently.
    - Sets row_factory to sqlite3.Row for dict-like access.
    """
    if db_path is None:
        db_path = _db_path()
    con = sqlite3.connect(db_path, timeout=BUSY_TIMEOUT_S)
    con.row_factory = sqlite3.Row
    con.execute("PRAGMA foreign_keys=ON")
    return con


def ensure_schema(db_path: str | None = None) -> None:
    """Create the jobs / credit tables if they do not exist yet."""
    con = get_connection(db_path)
    try:
        if db_path != ":memory:":
            con.execute("PRAGMA journal_mode=WAL")
        con.executescript(SCHEMA_SQL)
        con.commit()
    finally:
        con.close()


# -------------------- timestamps --------------------


def _utc_now_iso(now: datetime | None = None) -> str:
    value = now or datetime.now(UTC)
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    # Millisecond resolution; compare-and-swap on updated_at relies on it.
    return value.astimezone(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _iso_seconds_ago(seconds: float, *, now: datetime | None = None) -> str:
    base = now or datetime.now(UTC)
    if base.tzinfo is None:
        base = base.replace(tzinfo=UTC)
    return _utc_now_iso(base - timedelta(seconds=seconds))


def _parse_utc_dt(value: Any) -> datetime | None:
    """Best-effort parse for DB timestamps."""
    if value is None:
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)
    if isinstance(value, str):
        s = value.strip()
        if not s:
            return None
        if s.endswith("Z"):
            s = s[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(s.replace(" ", "T"))
        except ValueError:
            return None
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=UTC)
        return dt.astimezone(UTC)
    return None
