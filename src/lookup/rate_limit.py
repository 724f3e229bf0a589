# src/lookup/rate_limit.py
"""
Redis-backed throttle shared by every worker calling the lookup service.

A counting semaphore bounds in-flight lookups and a 1s tumbling window bounds
requests per second; both live in Redis so the limits hold across processes.

The module-level primitives (`try_acquire`, `release`, `can_consume_rps`)
are a generic WATCH/MULTI semaphore and per-second counter that work on any
key; only the key layout above them is lookup-specific. `LookupThrottle` is
the part the executor talks to.
"""

import time
from contextlib import contextmanager

from redis import Redis
from redis.exceptions import WatchError

# ---- Keys / constants ----
SEM_KEY = "sem:lookup:{service}"
SEM_TTL = 120  # seconds; prevents deadlocks if a worker dies mid-lease
RPS_KEY = "rps:lookup:{service}:{sec}"


# ---- Time helper ----
def _now_sec() -> int:
    return int(time.time())


# ---- Semaphore primitives ----
def try_acquire(redis: Redis, key: str, limit: int) -> bool:
    """
    Attempt to acquire a semaphore slot under `key`.
    Uses WATCH/MULTI to ensure we don't exceed `limit`.
    """
    while True:
        with redis.pipeline() as p:
            try:
                p.watch(key)
                cur_raw = p.get(key)
                cur = int(cur_raw) if cur_raw is not None else 0
                if cur >= limit:
                    p.unwatch()
                    return False
                p.multi()
                p.incr(key, 1)
                p.expire(key, SEM_TTL)
                p.execute()
                return True
            except WatchError:  # race; retry
                continue


def release(redis: Redis, key: str):
    """
    Release that never goes negative.
    CAS loop: read -> compute -> write/delete.
    """
    while True:
        with redis.pipeline() as p:
            try:
                p.watch(key)
                cur = int(p.get(key) or 0)
                new_val = max(cur - 1, 0)
                p.multi()
                if new_val == 0:
                    p.delete(key)
                else:
                    p.set(key, new_val)
                    p.expire(key, SEM_TTL)
                p.execute()
                return
            except WatchError:
                continue


# ---- Simple RPS window (1s tumbling window) ----
def can_consume_rps(redis: Redis, key: str, limit: int) -> bool:
    window_key = key.format(sec=_now_sec())
    cnt = redis.incr(window_key, 1)
    if cnt == 1:
        redis.expire(window_key, 2)  # 1s window + slack
    return cnt <= limit


class LookupThrottle:
    """
    Concurrency + RPS guard around lookup calls.

        throttle = LookupThrottle(get_redis(), max_concurrency=10, rps=5)
        with throttle.slot():
            client.lookup(kind, item)
    """

    def __init__(
        self,
        redis: Redis,
        *,
        max_concurrency: int,
        rps: int,
        service: str = "default",
        acquire_timeout_s: float = 60.0,
        poll_ms: int = 50,
    ) -> None:
        self.redis = redis
        self.max_concurrency = max(1, int(max_concurrency))
        self.rps = max(1, int(rps))
        self.sem_key = SEM_KEY.format(service=service)
        self.rps_key = RPS_KEY.replace("{service}", service)
        self.acquire_timeout_s = acquire_timeout_s
        self.poll_ms = poll_ms

    @contextmanager
    def slot(self):
        """
        Block until a concurrency slot and an RPS token are both available,
        or raise TimeoutError after acquire_timeout_s.
        """
        deadline = time.monotonic() + self.acquire_timeout_s

        while not try_acquire(self.redis, self.sem_key, self.max_concurrency):
            if time.monotonic() > deadline:
                raise TimeoutError(f"lookup slot acquire timed out for {self.sem_key}")
            time.sleep(self.poll_ms / 1000.0)

        try:
            while not can_consume_rps(self.redis, self.rps_key, self.rps):
                if time.monotonic() > deadline:
                    raise TimeoutError(f"lookup rps budget exhausted for {self.rps_key}")
                time.sleep(self.poll_ms / 1000.0)
            yield
        finally:
            release(self.redis, self.sem_key)


__all__ = [
    "LookupThrottle",
    "try_acquire",
    "release",
    "can_consume_rps",
    "SEM_KEY",
    "RPS_KEY",
]
