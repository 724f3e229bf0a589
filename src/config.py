from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv


def _getenv_int(name: str, default: int) -> int:
    v = os.getenv(name, str(default)).strip()
    try:
        return int(v)
    except ValueError as err:
        raise ValueError(f"Environment variable {name} must be an integer; got {v!r}") from err


def _getenv_float(name: str, default: float) -> float:
    v = os.getenv(name, str(default)).strip()
    try:
        return float(v)
    except ValueError as err:
        raise ValueError(f"Environment variable {name} must be a number; got {v!r}") from err


def _getenv_str(name: str, default: str) -> str:
    return os.getenv(name, default).strip()


def _getenv_bool(name: str, default: bool) -> bool:
    """
    Read a loosely-typed boolean from the environment.

    Treats "1", "true", "yes", "on" (case-insensitive) as True;
    "0", "false", "no", "off", "" as False. If unset, returns default.
    """
    raw = os.getenv(name)
    if raw is None:
        return default
    v = raw.strip().lower()
    if v in {"1", "true", "yes", "on"}:
        return True
    if v in {"0", "false", "no", "off", ""}:
        return False
    return True


# Load .env from project root if present
ROOT = Path(__file__).resolve().parents[1]
load_dotenv(ROOT / ".env", override=False)

DEFAULT_DB_URL = f"sqlite:///{(ROOT / 'dev.db').as_posix()}"
DEFAULT_REDIS_URL = "redis://127.0.0.1:6379/0"


@dataclass(frozen=True)
class QueueConfig:
    queue_name: str
    rq_redis_url: str
    job_timeout_seconds: int


@dataclass(frozen=True)
class ExecutorConfig:
    batch_size: int
    heartbeat_interval_seconds: float
    batch_delay_seconds: float
    max_job_items: int


@dataclass(frozen=True)
class RecoveryConfig:
    """
    Knobs for the stale-job scanner.

    stale_after_seconds should stay several multiples of the executor
    heartbeat interval, otherwise a live but slow batch gets requeued.
    """

    scan_interval_seconds: float
    stale_after_seconds: int
    pending_grace_seconds: int
    max_auto_resumes: int
    scan_limit: int


@dataclass(frozen=True)
class LookupConfig:
    base_url: str
    api_key: str | None
    timeout_seconds: float
    connect_timeout_seconds: float
    max_concurrency: int
    rps: int
    throttle_enabled: bool


@dataclass(frozen=True)
class AppConfig:
    queue: QueueConfig
    executor: ExecutorConfig
    recovery: RecoveryConfig
    lookup: LookupConfig


def load_settings() -> AppConfig:
    queue = QueueConfig(
        queue_name=_getenv_str("BULK_QUEUE_NAME", "bulk_jobs"),
        rq_redis_url=_getenv_str("RQ_REDIS_URL", DEFAULT_REDIS_URL),
        job_timeout_seconds=_getenv_int("BULK_JOB_TIMEOUT_SECONDS", 6 * 3600),
    )
    executor = ExecutorConfig(
        batch_size=max(1, _getenv_int("EXECUTOR_BATCH_SIZE", 10)),
        heartbeat_interval_seconds=_getenv_float("HEARTBEAT_INTERVAL_SECONDS", 30.0),
        batch_delay_seconds=_getenv_float("BATCH_DELAY_SECONDS", 0.2),
        max_job_items=_getenv_int("MAX_JOB_ITEMS", 10_000),
    )
    recovery = RecoveryConfig(
        scan_interval_seconds=_getenv_float("RECOVERY_SCAN_INTERVAL_SECONDS", 60.0),
        stale_after_seconds=_getenv_int("STALE_AFTER_SECONDS", 300),
        pending_grace_seconds=_getenv_int("PENDING_GRACE_SECONDS", 120),
        max_auto_resumes=_getenv_int("MAX_AUTO_RESUMES", 3),
        scan_limit=_getenv_int("RECOVERY_SCAN_LIMIT", 50),
    )
    lookup = LookupConfig(
        base_url=_getenv_str("LOOKUP_BASE_URL", "http://127.0.0.1:8500").rstrip("/"),
        api_key=_getenv_str("LOOKUP_API_KEY", "") or None,
        timeout_seconds=_getenv_float("LOOKUP_TIMEOUT_SECONDS", 30.0),
        connect_timeout_seconds=_getenv_float("LOOKUP_CONNECT_TIMEOUT_SECONDS", 5.0),
        max_concurrency=_getenv_int("LOOKUP_MAX_CONCURRENCY", 10),
        rps=_getenv_int("LOOKUP_RPS", 5),
        throttle_enabled=_getenv_bool("LOOKUP_THROTTLE_ENABLED", True),
    )
    return AppConfig(queue=queue, executor=executor, recovery=recovery, lookup=lookup)


app_config: AppConfig = load_settings()

__all__ = [
    "QueueConfig",
    "ExecutorConfig",
    "RecoveryConfig",
    "LookupConfig",
    "AppConfig",
    "load_settings",
    "app_config",
    "DEFAULT_DB_URL",
    "DEFAULT_REDIS_URL",
]
