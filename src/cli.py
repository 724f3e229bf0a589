# src/cli.py
from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from datetime import UTC, datetime, timedelta
from typing import Any

from src.credits.ledger import CreditLedger
from src.db import ensure_schema
from src.exceptions import ExecutorFatalError, JobNotFound, JobStateError
from src.jobs.control import JobControl
from src.jobs.models import Job
from src.jobs.query import JobQuery
from src.jobs.store import JobStore

log = logging.getLogger(__name__)


def _section(title: str) -> None:
    print(f"=== {title} ===")


def _emit_json(payload: Any) -> int:
    print(json.dumps(payload, indent=2, sort_keys=True))
    return 0


def _print_job(job: Job, *, show_items: bool) -> None:
    _section(f"Job {job.id}")
    print(f"  owner      : {job.owner_id}")
    print(f"  kind       : {job.kind.value}")
    print(f"  status     : {job.status.value}")
    print(f"  progress   : {job.current_index}/{job.total_items}")
    print(
        f"  counts     : processed={job.processed_count} "
        f"success={job.success_count} failed={job.failed_count}"
    )
    if job.error_message:
        print(f"  error      : {job.error_message}")
    print(f"  created_at : {job.created_at}")
    print(f"  updated_at : {job.updated_at}")
    if job.completed_at:
        print(f"  completed  : {job.completed_at}")
    print()

    if not show_items:
        return

    _section("Items")
    header = f"{'#':>5} {'status':10} input"
    print("  " + header)
    print("  " + "-" * len(header))
    for i, item in enumerate(job.items):
        label = item.input.get("email") or (
            f"{item.input.get('full_name', '')} @ {item.input.get('domain', '')}"
        )
        suffix = f"  ({item.error})" if item.error else ""
        print(f"  {i:5d} {item.status.value:10} {label}{suffix}")
    print()


def _cmd_job_status(args: argparse.Namespace) -> int:
    store = JobStore()
    job = store.get(args.job_id)
    if job is None:
        print(f"Job not found: {args.job_id}", file=sys.stderr)
        return 1
    if args.json:
        return _emit_json(job.to_dict())
    _print_job(job, show_items=args.items)
    return 0


def _cmd_queue_status(args: argparse.Namespace) -> int:
    status = JobQuery(JobStore()).queue_status()
    if args.json:
        return _emit_json(status)
    _section("Queue")
    print(f"  pending    : {status['pending']}")
    print(f"  processing : {status['processing']}")
    print()
    return 0


def _cmd_grant(args: argparse.Namespace) -> int:
    ledger = CreditLedger()
    if ledger.get_account(args.account_id) is None:
        if not args.create:
            print(f"Unknown account: {args.account_id} (use --create)", file=sys.stderr)
            return 1
        expiry = datetime.now(UTC) + timedelta(days=args.plan_days)
        ledger.open_account(args.account_id, plan_expiry=expiry)

    account = ledger.grant_credits(
        args.account_id,
        find_credits=args.find,
        verify_credits=args.verify,
        metadata={"source": "cli"},
    )
    if args.json:
        return _emit_json(account.to_dict())
    _section(f"Account {account.account_id}")
    print(f"  find credits   : {account.find_credits}")
    print(f"  verify credits : {account.verify_credits}")
    print(f"  plan expiry    : {account.plan_expiry}")
    print()
    return 0


def _recovery_daemon():
    from src.queueing.recovery import RecoveryDaemon
    from src.queueing.tasks import enqueue_job_run

    return RecoveryDaemon(JobStore(), enqueue_job_run)


def _cmd_recover(args: argparse.Namespace) -> int:
    report = _recovery_daemon().scan_once()
    if args.json:
        return _emit_json(report.to_dict())
    _section("Recovery scan")
    for key, ids in report.to_dict().items():
        print(f"  {key:12}: {len(ids)}")
        for job_id in ids:
            print(f"    - {job_id}")
    print()
    return 0


def _cmd_recovery_daemon(args: argparse.Namespace) -> int:
    daemon = _recovery_daemon()
    try:
        daemon.run_forever()
    except KeyboardInterrupt:
        log.info("Recovery daemon interrupted; exiting")
    return 0


def _cmd_run_job(args: argparse.Namespace) -> int:
    """Run one job in this process (no queue); handy for debugging a stuck job."""
    from src.lookup.client import LookupClient
    from src.queueing.tasks import build_executor, build_throttle

    store = JobStore()
    if args.resume:
        try:
            JobControl(store).resume(args.job_id)
        except (JobNotFound, JobStateError) as exc:
            print(f"Job {args.job_id} is not resumable: {exc}", file=sys.stderr)
            return 1

    with LookupClient() as client:
        executor = build_executor(client, throttle=None if args.no_throttle else build_throttle())
        try:
            result = executor.run(args.job_id)
        except ExecutorFatalError as exc:
            print(str(exc), file=sys.stderr)
            return 2

    payload = {
        "job_id": result.job_id,
        "outcome": result.outcome,
        "processed": result.processed,
        "debited": result.debited,
    }
    if args.json:
        return _emit_json(payload)
    _section("Run")
    for key, value in payload.items():
        print(f"  {key:9}: {value}")
    print()
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="bulk-jobs",
        description="Operator CLI for bulk find/verify jobs.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    p = subparsers.add_parser("job-status", help="Show one job's status and items.")
    p.add_argument("job_id")
    p.add_argument("--items", action="store_true", help="Also list every item.")
    p.add_argument("--json", action="store_true", help="Emit the full job as JSON.")
    p.set_defaults(func=_cmd_job_status)

    p = subparsers.add_parser("queue-status", help="Count pending and processing jobs.")
    p.add_argument("--json", action="store_true")
    p.set_defaults(func=_cmd_queue_status)

    p = subparsers.add_parser("grant", help="Top up an account's credit pools.")
    p.add_argument("account_id")
    p.add_argument("--find", type=int, default=0, help="Find credits to add (default: 0).")
    p.add_argument("--verify", type=int, default=0, help="Verify credits to add (default: 0).")
    p.add_argument(
        "--create",
        action="store_true",
        help="Open the account first if it does not exist.",
    )
    p.add_argument(
        "--plan-days",
        type=int,
        default=30,
        help="Plan length in days for a newly created account (default: 30).",
    )
    p.add_argument("--json", action="store_true")
    p.set_defaults(func=_cmd_grant)

    p = subparsers.add_parser("recover", help="Run one recovery scan and exit.")
    p.add_argument("--json", action="store_true")
    p.set_defaults(func=_cmd_recover)

    p = subparsers.add_parser("recovery-daemon", help="Scan for stalled jobs until interrupted.")
    p.set_defaults(func=_cmd_recovery_daemon)

    p = subparsers.add_parser("run-job", help="Run a pending job synchronously in this process.")
    p.add_argument("job_id")
    p.add_argument("--resume", action="store_true", help="Requeue a paused/failed job first.")
    p.add_argument("--no-throttle", action="store_true", help="Skip the Redis lookup throttle.")
    p.add_argument("--json", action="store_true")
    p.set_defaults(func=_cmd_run_job)

    return parser


def main(argv: list[str] | None = None) -> int:
    if not logging.getLogger().handlers:
        logging.basicConfig(
            level=os.getenv("LOG_LEVEL", "INFO"),
            format="%(asctime)s %(levelname)s %(name)s %(message)s",
            stream=sys.stderr,
        )

    parser = build_parser()
    args = parser.parse_args(argv)

    func = getattr(args, "func", None)
    if func is None:
        parser.error("no command specified")
        return 1

    ensure_schema()
    return int(func(args))


if __name__ == "__main__":
    raise SystemExit(main())
