# src/queueing/redis_conn.py
from functools import lru_cache

from redis import Redis

from src.config import app_config


@lru_cache(maxsize=1)
def get_redis() -> Redis:
    # RQ pickles job payloads; keep raw bytes (no decode_responses).
    return Redis.from_url(app_config.queue.rq_redis_url, decode_responses=False)
