import random
import time
from concurrent.futures import ThreadPoolExecutor

import fakeredis
import pytest
import redis

from src.lookup import rate_limit
from src.lookup.rate_limit import LookupThrottle


def test_throttle_caps_concurrency():
    r = fakeredis.FakeRedis()
    limit = 3
    throttle = LookupThrottle(r, max_concurrency=limit, rps=1000, service="cap", poll_ms=5)

    k_cur = "test:lookup:cur"
    k_max = "test:lookup:max"

    def task(i: int):
        with throttle.slot():
            cur = r.incr(k_cur)

            # update 'max seen' atomically
            while True:
                with r.pipeline() as p:
                    try:
                        p.watch(k_max)
                        current_max = int(p.get(k_max) or 0)
                        if cur <= current_max:
                            p.unwatch()
                            break
                        p.multi()
                        p.set(k_max, cur)
                        p.execute()
                        break
                    except redis.WatchError:
                        continue

            time.sleep(0.03 + random.random() * 0.02)
            r.decr(k_cur)

    with ThreadPoolExecutor(max_workers=12) as pool:
        list(pool.map(task, range(24)))

    max_seen = int(r.get(k_max) or 0)
    assert max_seen == limit, f"Observed {max_seen}, expected {limit}"
    assert r.get(throttle.sem_key) is None, "all slots released"


def test_slot_released_on_exception():
    r = fakeredis.FakeRedis()
    throttle = LookupThrottle(r, max_concurrency=1, rps=100, service="boom")

    with pytest.raises(RuntimeError):
        with throttle.slot():
            raise RuntimeError("lookup blew up")

    # the single slot is free again
    with throttle.slot():
        pass


def test_acquire_times_out_when_saturated():
    r = fakeredis.FakeRedis()
    throttle = LookupThrottle(
        r, max_concurrency=1, rps=100, service="busy", acquire_timeout_s=0.1, poll_ms=10
    )
    assert rate_limit.try_acquire(r, throttle.sem_key, 1)

    with pytest.raises(TimeoutError):
        with throttle.slot():
            pass

    rate_limit.release(r, throttle.sem_key)


def test_rps_window_counts_per_second(monkeypatch):
    r = fakeredis.FakeRedis()
    monkeypatch.setattr(rate_limit, "_now_sec", lambda: 1_700_000_000)
    key = "rps:lookup:test:{sec}"

    assert rate_limit.can_consume_rps(r, key, 2)
    assert rate_limit.can_consume_rps(r, key, 2)
    assert not rate_limit.can_consume_rps(r, key, 2)

    monkeypatch.setattr(rate_limit, "_now_sec", lambda: 1_700_000_001)
    assert rate_limit.can_consume_rps(r, key, 2)


def test_release_never_goes_negative():
    r = fakeredis.FakeRedis()
    rate_limit.release(r, "sem:lookup:none")
    assert r.get("sem:lookup:none") is None
