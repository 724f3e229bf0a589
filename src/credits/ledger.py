# src/credits/ledger.py
"""
Credit ledger: per-account balances split across two pools plus an
append-only transaction log.

Every balance change goes through this module. The per-item debit is one
conditional UPDATE, so the availability check and the decrement happen
under the same SQLite write lock; concurrent executor threads (and other
worker processes sharing the database) can never overdraw an account.

Pool preference:
  - find work drains find_credits first, then spills into verify_credits;
  - verify work drains verify_credits first, then spills into find_credits.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from collections.abc import Iterator
from contextlib import closing, contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from src.db import _parse_utc_dt, _utc_now_iso, get_connection
from src.jobs.models import JobKind

log = logging.getLogger(__name__)

OP_GRANT = "credit_grant"
OP_PLAN_EXPIRED = "plan_expired"

_POOLS = {
    JobKind.FIND: ("find_credits", "verify_credits"),
    JobKind.VERIFY: ("verify_credits", "find_credits"),
}


@dataclass(frozen=True)
class CreditAccount:
    account_id: str
    find_credits: int
    verify_credits: int
    plan_expiry: str | None = None

    @property
    def total(self) -> int:
        return self.find_credits + self.verify_credits

    def plan_expired(self, now: datetime | None = None) -> bool:
        """An account with no recorded plan expiry has no active plan."""
        expiry = _parse_utc_dt(self.plan_expiry)
        if expiry is None:
            return True
        return expiry < (now or datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        return {
            "account_id": self.account_id,
            "find_credits": self.find_credits,
            "verify_credits": self.verify_credits,
            "total_credits": self.total,
            "plan_expiry": self.plan_expiry,
        }


@dataclass(frozen=True)
class CreditTransaction:
    id: int
    account_id: str
    amount: int
    operation: str
    metadata: dict[str, Any]
    created_at: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "account_id": self.account_id,
            "amount": self.amount,
            "operation": self.operation,
            "metadata": self.metadata,
            "created_at": self.created_at,
        }


def _row_to_account(row: sqlite3.Row) -> CreditAccount:
    return CreditAccount(
        account_id=row["account_id"],
        find_credits=int(row["find_credits"] or 0),
        verify_credits=int(row["verify_credits"] or 0),
        plan_expiry=row["plan_expiry"],
    )


def _row_to_transaction(row: sqlite3.Row) -> CreditTransaction:
    raw = row["metadata"]
    try:
        meta = json.loads(raw) if raw else {}
    except json.JSONDecodeError:
        meta = {"raw": raw}
    return CreditTransaction(
        id=int(row["id"]),
        account_id=row["account_id"],
        amount=int(row["amount"]),
        operation=row["operation"],
        metadata=meta if isinstance(meta, dict) else {"raw": meta},
        created_at=row["created_at"],
    )


def _expiry_str(value: datetime | str | None) -> str | None:
    if value is None or isinstance(value, str):
        return value
    return _utc_now_iso(value)


class CreditLedger:
    def __init__(self, db_path: str | None = None) -> None:
        self.db_path = db_path

    @contextmanager
    def _connect(self, *, immediate: bool = False) -> Iterator[sqlite3.Connection]:
        with closing(get_connection(self.db_path)) as con:
            if immediate:
                # Take the write lock up front for read-then-write sequences.
                con.execute("BEGIN IMMEDIATE")
            with con:
                yield con

    # ---- accounts ---------------------------------------------------------------

    def open_account(
        self,
        account_id: str,
        *,
        find_credits: int = 0,
        verify_credits: int = 0,
        plan_expiry: datetime | str | None = None,
    ) -> CreditAccount:
        """Create (or overwrite) an account row; used by provisioning and tests."""
        if find_credits < 0 or verify_credits < 0:
            raise ValueError("credit pools cannot be negative")
        with self._connect() as con:
            con.execute(
                """
                INSERT INTO credit_accounts
                  (account_id, find_credits, verify_credits, plan_expiry, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(account_id) DO UPDATE SET
                  find_credits   = excluded.find_credits,
                  verify_credits = excluded.verify_credits,
                  plan_expiry    = excluded.plan_expiry,
                  updated_at     = excluded.updated_at
                """,
                (
                    account_id,
                    int(find_credits),
                    int(verify_credits),
                    _expiry_str(plan_expiry),
                    _utc_now_iso(),
                ),
            )
        return CreditAccount(account_id, int(find_credits), int(verify_credits), _expiry_str(plan_expiry))

    def get_account(self, account_id: str) -> CreditAccount | None:
        with self._connect() as con:
            row = con.execute(
                """
                SELECT account_id, find_credits, verify_credits, plan_expiry
                  FROM credit_accounts WHERE account_id = ?
                """,
                (account_id,),
            ).fetchone()
        return _row_to_account(row) if row else None

    def available_credits(self, account_id: str) -> int:
        account = self.get_account(account_id)
        return account.total if account else 0

    # ---- debits -----------------------------------------------------------------

    def check_and_debit(self, account_id: str, kind: JobKind | str, amount: int = 1) -> bool:
        """
        Atomically debit `amount` credits, preferring the pool that matches `kind`.

        Returns False (and changes nothing) when the two pools together hold
        less than `amount`. The SET expressions all read the pre-update row, so
        the spill-over arithmetic and the WHERE guard see one consistent balance.
        """
        if amount < 1:
            raise ValueError(f"debit amount must be positive; got {amount}")
        primary, secondary = _POOLS[JobKind(kind)]
        with self._connect() as con:
            cur = con.execute(
                f"""
                UPDATE credit_accounts
                   SET {primary}   = {primary} - MIN({primary}, :amount),
                       {secondary} = {secondary} - (:amount - MIN({primary}, :amount)),
                       updated_at  = :now
                 WHERE account_id = :account_id
                   AND find_credits + verify_credits >= :amount
                """,
                {"amount": int(amount), "now": _utc_now_iso(), "account_id": account_id},
            )
            return cur.rowcount == 1

    def grant_credits(
        self,
        account_id: str,
        *,
        find_credits: int = 0,
        verify_credits: int = 0,
        metadata: dict[str, Any] | None = None,
    ) -> CreditAccount:
        """Top up an existing account and append a positive ledger row."""
        if find_credits < 0 or verify_credits < 0:
            raise ValueError("grant amounts cannot be negative")
        now = _utc_now_iso()
        with self._connect(immediate=True) as con:
            cur = con.execute(
                """
                UPDATE credit_accounts
                   SET find_credits = find_credits + ?,
                       verify_credits = verify_credits + ?,
                       updated_at = ?
                 WHERE account_id = ?
                """,
                (int(find_credits), int(verify_credits), now, account_id),
            )
            if cur.rowcount != 1:
                raise KeyError(f"unknown credit account: {account_id}")
            meta = dict(metadata or {})
            meta.update({"find_credits": int(find_credits), "verify_credits": int(verify_credits)})
            self._insert_transaction(
                con, account_id, int(find_credits) + int(verify_credits), OP_GRANT, meta, now
            )
            row = con.execute(
                """
                SELECT account_id, find_credits, verify_credits, plan_expiry
                  FROM credit_accounts WHERE account_id = ?
                """,
                (account_id,),
            ).fetchone()
        return _row_to_account(row)

    def reset_expired_plan(self, account_id: str, *, now: datetime | None = None) -> int:
        """
        Zero both pools of an account whose plan has expired.

        Returns the number of credits forfeited (0 if the plan is still active
        or the account was already empty).
        """
        ts = _utc_now_iso(now)
        with self._connect(immediate=True) as con:
            row = con.execute(
                """
                SELECT account_id, find_credits, verify_credits, plan_expiry
                  FROM credit_accounts WHERE account_id = ?
                """,
                (account_id,),
            ).fetchone()
            if not row:
                return 0
            account = _row_to_account(row)
            if not account.plan_expired(now) or account.total == 0:
                return 0
            con.execute(
                """
                UPDATE credit_accounts
                   SET find_credits = 0, verify_credits = 0, updated_at = ?
                 WHERE account_id = ?
                """,
                (ts, account_id),
            )
            self._insert_transaction(
                con,
                account_id,
                -account.total,
                OP_PLAN_EXPIRED,
                {
                    "find_credits": account.find_credits,
                    "verify_credits": account.verify_credits,
                    "plan_expiry": account.plan_expiry,
                },
                ts,
            )
        log.info("Plan expired for %s; forfeited %d credits", account_id, account.total)
        return account.total

    # ---- transaction log --------------------------------------------------------

    @staticmethod
    def _insert_transaction(
        con: sqlite3.Connection,
        account_id: str,
        amount: int,
        operation: str,
        metadata: dict[str, Any] | None,
        created_at: str,
    ) -> int:
        cur = con.execute(
            """
            INSERT INTO credit_transactions (account_id, amount, operation, metadata, created_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (
                account_id,
                int(amount),
                operation,
                json.dumps(metadata or {}, separators=(",", ":")),
                created_at,
            ),
        )
        return int(cur.lastrowid)

    def record_transaction(
        self,
        account_id: str,
        amount: int,
        operation: str,
        metadata: dict[str, Any] | None = None,
    ) -> int:
        """
        Append one ledger row. Does not touch balances.

        The executor calls this once per run with the run's total consumption,
        so the log grows with job count rather than item count.
        """
        with self._connect() as con:
            return self._insert_transaction(
                con, account_id, amount, operation, metadata, _utc_now_iso()
            )

    def list_transactions(
        self,
        account_id: str,
        *,
        operation: str | None = None,
        limit: int = 100,
    ) -> list[CreditTransaction]:
        sql = """
            SELECT id, account_id, amount, operation, metadata, created_at
              FROM credit_transactions
             WHERE account_id = ?
        """
        params: list[Any] = [account_id]
        if operation:
            sql += " AND operation = ?"
            params.append(operation)
        sql += " ORDER BY id DESC LIMIT ?"
        params.append(max(1, int(limit)))
        with self._connect() as con:
            rows = con.execute(sql, tuple(params)).fetchall()
        return [_row_to_transaction(r) for r in rows]


__all__ = [
    "CreditAccount",
    "CreditTransaction",
    "CreditLedger",
    "OP_GRANT",
    "OP_PLAN_EXPIRED",
]
