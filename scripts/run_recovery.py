# scripts/run_recovery.py
"""
Run the recovery daemon in the foreground.

    python -m scripts.run_recovery          # loop until Ctrl-C
    python -m scripts.run_recovery --once   # single scan, then exit
"""

from __future__ import annotations

import argparse
import logging
import os
import sys

from src.db import ensure_schema
from src.jobs.store import JobStore
from src.queueing.recovery import RecoveryDaemon
from src.queueing.tasks import enqueue_job_run

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO"),
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
    stream=sys.stdout,
)
log = logging.getLogger("run_recovery")


def main(argv: list[str] | None = None) -> int:
    ap = argparse.ArgumentParser(description="Requeue stalled bulk jobs.")
    ap.add_argument("--once", action="store_true", help="Run a single scan and exit.")
    args = ap.parse_args(argv)

    ensure_schema()
    daemon = RecoveryDaemon(JobStore(), enqueue_job_run)
    if args.once:
        report = daemon.scan_once()
        log.info("Scan finished: %s", report.to_dict())
        return 0

    try:
        daemon.run_forever()
    except KeyboardInterrupt:
        log.info("Interrupted; exiting")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
