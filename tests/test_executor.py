# tests/test_executor.py
from __future__ import annotations

import sqlite3
import time
from typing import Any

import httpx
import pytest
import respx
from conftest import FakeLookup, executor_config, find_inputs, verify_inputs

from src.credits.ledger import CreditLedger
from src.exceptions import ExecutorFatalError, JobStateError
from src.jobs.control import JobControl
from src.jobs.gate import SubmissionGate
from src.jobs.models import ItemStatus, Job, JobKind, JobStatus
from src.jobs.query import JobQuery
from src.jobs.store import JobStore
from src.lookup.client import LookupClient, LookupResult
from src.queueing.executor import INSUFFICIENT_CREDITS, Heartbeat, JobExecutor


def _submit(store: JobStore, ledger: CreditLedger, owner: str, kind: str, inputs: list[Any]) -> Job:
    gate = SubmissionGate(store, ledger, lambda _job_id: None, config=executor_config())
    return gate.submit(owner, kind, inputs)


def _executor(store, ledger, lookup, batch_size: int = 1) -> JobExecutor:
    return JobExecutor(store, ledger, lookup, config=executor_config(batch_size))


def _assert_counters(job: Job) -> None:
    assert job.processed_count == job.success_count + job.failed_count
    assert job.processed_count <= job.total_items
    assert all(it.is_terminal for it in job.items[: job.current_index])


# ---------------------------------------------------------------------------
# Happy path + ledger summary
# ---------------------------------------------------------------------------


def test_find_job_spills_into_verify_pool(store, ledger, open_account) -> None:
    """3 find items against 2 find + 5 verify credits: 2 from find, 1 from verify."""
    open_account("user_1", find=2, verify=5)
    job = _submit(store, ledger, "user_1", "find", find_inputs(3))

    outcome = _executor(store, ledger, FakeLookup()).run(job.id)

    assert outcome.outcome == "completed"
    assert outcome.debited == 3
    done = store.get(job.id)
    assert done.status is JobStatus.COMPLETED
    assert done.completed_at is not None
    assert (done.processed_count, done.success_count, done.failed_count) == (3, 3, 0)
    assert done.items[0].result["email"] == "person.0@example.com"
    _assert_counters(done)

    account = ledger.get_account("user_1")
    assert (account.find_credits, account.verify_credits) == (0, 4)

    [tx] = ledger.list_transactions("user_1")
    assert tx.amount == -3
    assert tx.operation == "email_find"
    assert tx.metadata == {"job_id": job.id, "bulk": True, "item_count": 3, "outcome": "completed"}


def _mixed_verdicts(kind: JobKind, item_input: dict[str, Any]) -> LookupResult:
    n = int(item_input["email"].split("@")[0].removeprefix("user"))
    if n % 3 == 0:
        return LookupResult(status="valid", email=item_input["email"], confidence=80)
    if n % 3 == 1:
        return LookupResult(status="invalid", email=item_input["email"])
    return LookupResult(status="error", message="timeout: read")


def test_batch_size_does_not_change_final_state(store, ledger, open_account) -> None:
    open_account("serial", verify=25)
    open_account("batched", verify=25)
    serial = _submit(store, ledger, "serial", "verify", verify_inputs(23))
    batched = _submit(store, ledger, "batched", "verify", verify_inputs(23))

    _executor(store, ledger, FakeLookup(_mixed_verdicts), batch_size=1).run(serial.id)
    _executor(store, ledger, FakeLookup(_mixed_verdicts), batch_size=10).run(batched.id)

    a, b = store.get(serial.id), store.get(batched.id)
    assert a.status is b.status is JobStatus.COMPLETED
    assert [it.to_dict() for it in a.items] == [it.to_dict() for it in b.items]
    assert (a.current_index, a.processed_count, a.success_count, a.failed_count) == (
        b.current_index,
        b.processed_count,
        b.success_count,
        b.failed_count,
    )
    assert ledger.available_credits("serial") == ledger.available_credits("batched") == 2


def test_non_success_verdicts_fail_item_but_keep_result(store, ledger, open_account) -> None:
    open_account("user_1", find=2, verify=2)
    find_job = _submit(store, ledger, "user_1", "find", find_inputs(1))
    verify_job = _submit(store, ledger, "user_1", "verify", verify_inputs(1))

    _executor(store, ledger, FakeLookup(lambda k, i: LookupResult(status="valid"))).run(find_job.id)
    _executor(
        store, ledger, FakeLookup(lambda k, i: LookupResult(status="risky", catch_all=True))
    ).run(verify_job.id)

    [found] = store.get(find_job.id).items
    assert found.status is ItemStatus.FAILED, "valid without an email is not a find success"
    assert found.error == "not_found"
    [verified] = store.get(verify_job.id).items
    assert verified.status is ItemStatus.FAILED
    assert verified.error == "risky"
    assert verified.result["catch_all"] is True


# ---------------------------------------------------------------------------
# Transport errors and per-attempt charging
# ---------------------------------------------------------------------------


@respx.mock
def test_all_transport_errors_still_complete(store, ledger, open_account) -> None:
    respx.post("https://lookup.test/verify").mock(side_effect=httpx.ConnectError("refused"))
    open_account("user_1", verify=4)
    job = _submit(store, ledger, "user_1", "verify", verify_inputs(4))

    with LookupClient("https://lookup.test", api_key="k") as client:
        _executor(store, ledger, client, batch_size=2).run(job.id)

    done = store.get(job.id)
    assert done.status is JobStatus.COMPLETED
    assert (done.processed_count, done.success_count, done.failed_count) == (4, 0, 4)
    assert all(it.status is ItemStatus.FAILED for it in done.items)
    # charged per attempt
    assert ledger.available_credits("user_1") == 0
    assert ledger.list_transactions("user_1")[0].amount == -4


def test_lookup_exception_is_an_item_error(store, ledger, open_account) -> None:
    def explode(kind, item_input):
        raise RuntimeError("socket closed")

    open_account("user_1", verify=2)
    job = _submit(store, ledger, "user_1", "verify", verify_inputs(2))

    outcome = _executor(store, ledger, FakeLookup(explode)).run(job.id)

    done = store.get(job.id)
    assert outcome.outcome == "completed"
    assert done.failed_count == 2
    assert done.items[0].error == "RuntimeError: socket closed"
    assert ledger.available_credits("user_1") == 0


def test_out_of_credits_mid_job_fails_remaining_items(store, ledger, open_account) -> None:
    open_account("user_1", verify=4)
    job = _submit(store, ledger, "user_1", "verify", verify_inputs(4))
    # credits spent elsewhere after admission
    assert ledger.check_and_debit("user_1", JobKind.VERIFY, 2)

    lookup = FakeLookup()
    outcome = _executor(store, ledger, lookup).run(job.id)

    done = store.get(job.id)
    assert done.status is JobStatus.COMPLETED
    assert [it.status for it in done.items] == [
        ItemStatus.COMPLETED,
        ItemStatus.COMPLETED,
        ItemStatus.FAILED,
        ItemStatus.FAILED,
    ]
    assert done.items[3].error == INSUFFICIENT_CREDITS
    assert len(lookup.calls) == 2, "no lookup without a credit"
    assert outcome.debited == 2
    assert ledger.list_transactions("user_1")[0].metadata["item_count"] == 4


# ---------------------------------------------------------------------------
# Stop / resume
# ---------------------------------------------------------------------------


def test_stop_after_two_items_then_resume(store, ledger, open_account) -> None:
    open_account("user_1", verify=10)
    job = _submit(store, ledger, "user_1", "verify", verify_inputs(5))

    def stop_on_second(n: int, _input: dict[str, Any]) -> None:
        if n == 2:
            assert store.stop(job.id, "user_1")

    lookup = FakeLookup(on_call=stop_on_second)
    first = _executor(store, ledger, lookup).run(job.id)

    paused = store.get(job.id)
    assert first.outcome == "stopped"
    assert paused.status is JobStatus.PAUSED
    assert paused.current_index == 2
    assert paused.error_message is None
    assert ledger.available_credits("user_1") == 8
    assert [t.amount for t in ledger.list_transactions("user_1")] == [-2]
    _assert_counters(paused)
    before = [it.to_dict() for it in paused.items[:2]]

    assert store.requeue(job.id, from_statuses=[JobStatus.PAUSED], owner_id="user_1")
    second = _executor(store, ledger, lookup).run(job.id)

    done = store.get(job.id)
    assert second.outcome == "completed"
    assert done.status is JobStatus.COMPLETED
    assert [it.to_dict() for it in done.items[:2]] == before
    assert [c["email"] for c in lookup.calls] == verify_inputs(5)
    assert (done.processed_count, done.success_count) == (5, 5)
    assert [t.amount for t in ledger.list_transactions("user_1")] == [-3, -2]
    assert ledger.available_credits("user_1") == 5


def test_stop_and_resume_inside_a_batch_charges_once(store, ledger, open_account) -> None:
    """
    Stopping and immediately resuming while a batch is in flight must not let
    a second run redo (and re-charge) that batch.
    """
    open_account("user_1", verify=5)
    job = _submit(store, ledger, "user_1", "verify", verify_inputs(5))
    control = JobControl(store)
    refused: list[str] = []

    def stop_then_resume(n: int, _input: dict[str, Any]) -> None:
        if n == 1:
            control.stop(job.id, "user_1")
            try:
                control.resume(job.id, "user_1")
            except JobStateError as exc:
                refused.append(str(exc))

    lookup = FakeLookup(on_call=stop_then_resume)
    first = _executor(store, ledger, lookup, batch_size=3).run(job.id)

    assert len(refused) == 1 and "still finishing" in refused[0]
    assert (first.outcome, first.processed, first.debited) == ("stopped", 3, 3)
    assert store.read_status(job.id) == (JobStatus.PAUSED, None)
    assert store.get(job.id).current_index == 3

    control.resume(job.id, "user_1")
    second = _executor(store, ledger, lookup, batch_size=3).run(job.id)

    done = store.get(job.id)
    assert (second.outcome, second.processed, second.debited) == ("completed", 2, 2)
    assert (done.processed_count, done.success_count) == (5, 5)
    assert sorted(c["email"] for c in lookup.calls) == sorted(verify_inputs(5))
    assert [t.amount for t in ledger.list_transactions("user_1")] == [-2, -3]
    assert ledger.available_credits("user_1") == 0


def test_stop_during_final_batch_completes_job(store, ledger, open_account) -> None:
    open_account("user_1", verify=3)
    job = _submit(store, ledger, "user_1", "verify", verify_inputs(3))

    def stop_now(n: int, _input: dict[str, Any]) -> None:
        if n == 1:
            store.stop(job.id, "user_1")

    outcome = _executor(store, ledger, FakeLookup(on_call=stop_now), batch_size=3).run(job.id)

    assert outcome.outcome == "completed"
    assert store.read_status(job.id) == (JobStatus.COMPLETED, None)


def test_in_flight_batch_is_visible_as_processing(store, ledger, open_account) -> None:
    open_account("user_1", verify=5)
    job = _submit(store, ledger, "user_1", "verify", verify_inputs(5))
    query = JobQuery(store)
    seen: list[list[ItemStatus]] = []

    def snapshot(n: int, _input: dict[str, Any]) -> None:
        if n == 1:
            seen.append([it.status for it in query.get_job(job.id, "user_1").items])

    _executor(store, ledger, FakeLookup(on_call=snapshot), batch_size=3).run(job.id)

    assert seen == [[ItemStatus.PROCESSING] * 3 + [ItemStatus.PENDING] * 2]
    assert all(it.status is ItemStatus.COMPLETED for it in store.get(job.id).items)


def test_paused_job_is_not_claimed(store, ledger, open_account) -> None:
    open_account("user_1", verify=1)
    job = _submit(store, ledger, "user_1", "verify", verify_inputs(1))
    store.stop(job.id, "user_1")

    lookup = FakeLookup()
    outcome = _executor(store, ledger, lookup).run(job.id)

    assert outcome.outcome == "skipped"
    assert lookup.calls == []
    assert store.get(job.id).status is JobStatus.PAUSED


def test_lost_lease_stops_without_overwriting(store, ledger, open_account) -> None:
    """A run whose job was requeued underneath it must not write its checkpoint."""
    open_account("user_1", verify=3)
    job = _submit(store, ledger, "user_1", "verify", verify_inputs(3))

    def requeue_underneath(n: int, _input: dict[str, Any]) -> None:
        if n == 1:
            assert store.requeue(job.id, from_statuses=[JobStatus.PROCESSING])

    outcome = _executor(store, ledger, FakeLookup(on_call=requeue_underneath)).run(job.id)

    assert outcome.outcome == "lease_lost"
    again = store.get(job.id)
    assert again.status is JobStatus.PENDING
    assert again.current_index == 0

    # the debit was taken, but no item of this run was committed
    assert (outcome.processed, outcome.debited) == (0, 1)
    [tx] = ledger.list_transactions("user_1")
    assert tx.amount == -1
    assert tx.metadata["item_count"] == 0
    assert tx.metadata["outcome"] == "lease_lost"


# ---------------------------------------------------------------------------
# Fatal errors
# ---------------------------------------------------------------------------


def test_fatal_error_marks_failed_and_keeps_progress(store, ledger, open_account, monkeypatch) -> None:
    open_account("user_1", verify=5)
    job = _submit(store, ledger, "user_1", "verify", verify_inputs(5))

    real_debit = ledger.check_and_debit
    calls = {"n": 0}

    def flaky_debit(*args, **kwargs):
        calls["n"] += 1
        if calls["n"] == 3:
            raise RuntimeError("database is locked")
        return real_debit(*args, **kwargs)

    monkeypatch.setattr(ledger, "check_and_debit", flaky_debit)

    with pytest.raises(ExecutorFatalError) as ei:
        _executor(store, ledger, FakeLookup()).run(job.id)
    assert ei.value.job_id == job.id

    failed = store.get(job.id)
    assert failed.status is JobStatus.FAILED
    assert "database is locked" in failed.error_message
    assert failed.current_index == 2
    _assert_counters(failed)
    assert ledger.list_transactions("user_1")[0].metadata["outcome"] == "failed"

    monkeypatch.setattr(ledger, "check_and_debit", real_debit)
    assert store.requeue(job.id, from_statuses=[JobStatus.FAILED])
    _executor(store, ledger, FakeLookup()).run(job.id)

    done = store.get(job.id)
    assert done.status is JobStatus.COMPLETED
    assert done.error_message is None
    assert done.processed_count == 5
    assert ledger.available_credits("user_1") == 0


def test_fatal_error_in_batch_commits_prefix(store, ledger, open_account, monkeypatch) -> None:
    """
    An unexpected error on the third item of a concurrent batch commits items
    0-1 only; the ledger summary still matches every debit actually taken.
    """
    open_account("user_1", verify=10)
    job = _submit(store, ledger, "user_1", "verify", verify_inputs(4))
    executor = _executor(store, ledger, FakeLookup(), batch_size=4)

    real_process = executor._process_item

    def process(job_, item, counters):
        if item.input["email"] == "user2@example.com":
            raise sqlite3.OperationalError("disk I/O error")
        return real_process(job_, item, counters)

    monkeypatch.setattr(executor, "_process_item", process)

    with pytest.raises(ExecutorFatalError):
        executor.run(job.id)

    failed = store.get(job.id)
    assert failed.status is JobStatus.FAILED
    assert failed.current_index == 2
    assert [it.status for it in failed.items] == [
        ItemStatus.COMPLETED,
        ItemStatus.COMPLETED,
        ItemStatus.PENDING,
        ItemStatus.PENDING,
    ]
    _assert_counters(failed)
    # items 0, 1 and 3 were debited; 3 will be re-attempted on resume
    assert ledger.available_credits("user_1") == 7
    assert ledger.list_transactions("user_1")[0].amount == -3


# ---------------------------------------------------------------------------
# Heartbeat
# ---------------------------------------------------------------------------


def test_heartbeat_refreshes_updated_at(store, ledger, open_account) -> None:
    open_account("user_1", verify=1)
    job = _submit(store, ledger, "user_1", "verify", verify_inputs(1))
    store.claim(job.id, "tok")
    store.set_updated_at(job.id, "2000-01-01T00:00:00.000Z")

    with Heartbeat(store, job.id, "tok", interval_s=0.02):
        deadline = time.monotonic() + 2.0
        while time.monotonic() < deadline:
            if store.get(job.id).updated_at != "2000-01-01T00:00:00.000Z":
                break
            time.sleep(0.01)

    assert store.get(job.id).updated_at > "2000-01-01T00:00:00.000Z"


def test_heartbeat_ignores_foreign_token(store, ledger, open_account) -> None:
    open_account("user_1", verify=1)
    job = _submit(store, ledger, "user_1", "verify", verify_inputs(1))
    store.claim(job.id, "tok")
    store.set_updated_at(job.id, "2000-01-01T00:00:00.000Z")

    hb = Heartbeat(store, job.id, "someone-else", interval_s=0.02).start()
    time.sleep(0.1)
    hb.stop()

    assert store.get(job.id).updated_at == "2000-01-01T00:00:00.000Z"
