# scripts/run_worker.py
from __future__ import annotations

import logging
import os
import sys

from src.db import ensure_schema
from src.queueing.worker import run as run_worker

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO"),
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
    stream=sys.stdout,
)

if __name__ == "__main__":
    # Optional queue list override, e.g. "bulk_jobs" or "bulk_jobs,bulk_jobs_low"
    if len(sys.argv) > 1:
        os.environ["RQ_QUEUE"] = sys.argv[1]
    ensure_schema()
    run_worker()
