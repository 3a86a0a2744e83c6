"""SQLite ledger: balance accounts, settled payments and pending invoices.

Debits are a single conditional UPDATE guarded by the balance, so concurrent
debits on one account serialize on the write lock and can never drive the
balance below zero.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from dataclasses import replace
from typing import Any

from errors import DuplicateJob, DuplicatePayment, InsufficientFunds
from models import PURPOSE_DEPOSIT, PURPOSE_JOB, AccountRecord, Invoice, InvoiceRecord, SettlementRecord
from storage.database import SQLiteDatabase
from storage.interfaces import Ledger
from utils import format_rfc3339, json_dumps, parse_rfc3339

logger = logging.getLogger("ledger")


def _non_negative(amount_msats: int) -> int:
    amount = int(amount_msats)
    if amount < 0:
        raise ValueError(f"amount must be non-negative (got {amount_msats})")
    return amount


def _row_to_settlement(row: sqlite3.Row) -> SettlementRecord:
    return SettlementRecord(
        payment_hash=row["payment_hash"],
        requester=row["requester"],
        amount_msats=int(row["amount_msats"]),
        purpose=row["purpose"],
        request=json.loads(row["request_json"]) if row["request_json"] is not None else None,
        job_id=row["job_id"],
        result_id=row["result_id"],
        created_at=parse_rfc3339(row["created_at"]),
        credited_at=parse_rfc3339(row["credited_at"]) if row["credited_at"] is not None else None,
    )


class SQLiteLedger(Ledger):
    def __init__(self, db: SQLiteDatabase):
        self._db = db

    def _ensure_account(self, conn: sqlite3.Connection, requester: str) -> None:
        now = format_rfc3339(self._db.now())
        conn.execute(
            "INSERT OR IGNORE INTO accounts(requester, balance_msats, created_at, updated_at) VALUES (?, 0, ?, ?);",
            (requester, now, now),
        )

    def _balance(self, conn: sqlite3.Connection, requester: str) -> int:
        row = conn.execute("SELECT balance_msats FROM accounts WHERE requester = ?;", (requester,)).fetchone()
        return int(row["balance_msats"]) if row is not None else 0

    def get_account(self, requester: str, *, conn: sqlite3.Connection | None = None) -> AccountRecord | None:
        with self._db.session(conn) as c:
            row = c.execute(
                "SELECT requester, balance_msats, created_at FROM accounts WHERE requester = ?;", (requester,)
            ).fetchone()
            if row is None:
                return None
            return AccountRecord(
                requester=row["requester"],
                balance_msats=int(row["balance_msats"]),
                created_at=parse_rfc3339(row["created_at"]),
            )

    def balance(self, requester: str) -> int:
        with self._db.connect() as conn:
            return self._balance(conn, requester)

    def debit(self, requester: str, amount_msats: int, *, conn: sqlite3.Connection | None = None) -> int:
        amount = _non_negative(amount_msats)
        with self._db.transaction(conn) as c:
            cur = c.execute(
                """
                UPDATE accounts SET balance_msats = balance_msats - ?, updated_at = ?
                WHERE requester = ? AND balance_msats >= ?;
                """,
                (amount, format_rfc3339(self._db.now()), requester, amount),
            )
            if cur.rowcount != 1:
                raise InsufficientFunds(
                    f"Insufficient balance for {requester}: need {amount} msats", required_msats=amount
                )
            balance = self._balance(c, requester)
        logger.info("ledger_debit", extra={"event": "ledger_debit", "requester": requester})
        return balance

    def credit(self, requester: str, amount_msats: int, *, conn: sqlite3.Connection | None = None) -> int:
        amount = _non_negative(amount_msats)
        now = format_rfc3339(self._db.now())
        with self._db.transaction(conn) as c:
            c.execute(
                """
                INSERT INTO accounts(requester, balance_msats, created_at, updated_at) VALUES (?, ?, ?, ?)
                ON CONFLICT(requester) DO UPDATE SET
                  balance_msats = balance_msats + excluded.balance_msats,
                  updated_at = excluded.updated_at;
                """,
                (requester, amount, now, now),
            )
            balance = self._balance(c, requester)
        logger.info("ledger_credit", extra={"event": "ledger_credit", "requester": requester})
        return balance

    def record_settlement(
        self,
        payment_hash: str,
        requester: str,
        amount_msats: int,
        *,
        purpose: str,
        request: dict[str, Any] | None = None,
        conn: sqlite3.Connection | None = None,
    ) -> SettlementRecord:
        amount = _non_negative(amount_msats)
        now = self._db.now()
        with self._db.transaction(conn) as c:
            self._ensure_account(c, requester)
            try:
                c.execute(
                    """
                    INSERT INTO settlements(payment_hash, requester, amount_msats, purpose, request_json, created_at)
                    VALUES (?, ?, ?, ?, ?, ?);
                    """,
                    (
                        payment_hash,
                        requester,
                        amount,
                        purpose,
                        json_dumps(request) if request is not None else None,
                        format_rfc3339(now),
                    ),
                )
            except sqlite3.IntegrityError as e:
                raise DuplicatePayment(f"Payment already settled: {payment_hash}") from e
        logger.info(
            "settlement_recorded",
            extra={"event": "settlement_recorded", "payment_hash": payment_hash, "requester": requester},
        )
        return SettlementRecord(
            payment_hash=payment_hash,
            requester=requester,
            amount_msats=amount,
            purpose=purpose,
            request=request,
            job_id=None,
            result_id=None,
            created_at=now,
        )

    def record_deposit(self, payment_hash: str, requester: str, amount_msats: int) -> int:
        with self._db.transaction() as conn:
            self.record_settlement(payment_hash, requester, amount_msats, purpose=PURPOSE_DEPOSIT, conn=conn)
            return self.credit(requester, amount_msats, conn=conn)

    def get_settlement(self, payment_hash: str, *, conn: sqlite3.Connection | None = None) -> SettlementRecord | None:
        with self._db.session(conn) as c:
            row = c.execute("SELECT * FROM settlements WHERE payment_hash = ?;", (payment_hash,)).fetchone()
            return _row_to_settlement(row) if row is not None else None

    def claim_settlement(
        self,
        payment_hash: str,
        *,
        requester: str,
        job_id: str,
        amount_msats: int,
        conn: sqlite3.Connection | None = None,
    ) -> SettlementRecord:
        with self._db.transaction(conn) as c:
            settlement = self.get_settlement(payment_hash, conn=c)
            if settlement is None:
                raise InsufficientFunds(f"No settled payment for {payment_hash}", required_msats=amount_msats)
            if settlement.requester != requester:
                raise InsufficientFunds(
                    f"Payment {payment_hash} was not made by {requester}", required_msats=amount_msats
                )
            if settlement.purpose != PURPOSE_JOB:
                raise InsufficientFunds(
                    f"Payment {payment_hash} was a balance deposit, not a job payment", required_msats=amount_msats
                )
            if settlement.credited_at is not None:
                raise DuplicatePayment(f"Payment {payment_hash} was already credited to the balance")
            if settlement.amount_msats < amount_msats:
                raise InsufficientFunds(
                    f"Payment {payment_hash} covers {settlement.amount_msats} msats, job costs {amount_msats}",
                    required_msats=amount_msats,
                )
            cur = c.execute(
                "UPDATE settlements SET job_id = ? WHERE payment_hash = ? AND job_id IS NULL AND credited_at IS NULL;",
                (job_id, payment_hash),
            )
            if cur.rowcount != 1:
                raise DuplicateJob(f"Payment already funds a job: {payment_hash}")
            return replace(settlement, job_id=job_id)

    def credit_unclaimed_settlement(self, payment_hash: str, *, conn: sqlite3.Connection | None = None) -> bool:
        with self._db.transaction(conn) as c:
            settlement = self.get_settlement(payment_hash, conn=c)
            if settlement is None or settlement.purpose != PURPOSE_JOB:
                return False
            cur = c.execute(
                """
                UPDATE settlements SET credited_at = ?
                WHERE payment_hash = ? AND job_id IS NULL AND credited_at IS NULL;
                """,
                (format_rfc3339(self._db.now()), payment_hash),
            )
            if cur.rowcount != 1:
                return False
            self.credit(settlement.requester, settlement.amount_msats, conn=c)
        logger.info(
            "settlement_credited",
            extra={"event": "settlement_credited", "payment_hash": payment_hash, "requester": settlement.requester},
        )
        return True

    def list_unclaimed_settlements(self) -> list[SettlementRecord]:
        with self._db.connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM settlements
                WHERE purpose = ? AND job_id IS NULL AND credited_at IS NULL
                ORDER BY created_at ASC, rowid ASC;
                """,
                (PURPOSE_JOB,),
            ).fetchall()
            return [_row_to_settlement(r) for r in rows]

    def link_settlement_result(self, payment_hash: str, result_id: str, *, conn: sqlite3.Connection | None = None) -> None:
        with self._db.transaction(conn) as c:
            c.execute(
                "UPDATE settlements SET result_id = ? WHERE payment_hash = ? AND result_id IS NULL;",
                (result_id, payment_hash),
            )

    def save_invoice(self, invoice: InvoiceRecord, *, conn: sqlite3.Connection | None = None) -> None:
        with self._db.transaction(conn) as c:
            try:
                c.execute(
                    """
                    INSERT INTO invoices(payment_hash, bolt11, requester, amount_msats, purpose, request_json, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?);
                    """,
                    (
                        invoice.invoice.payment_hash,
                        invoice.invoice.bolt11,
                        invoice.requester,
                        invoice.invoice.amount_msats,
                        invoice.purpose,
                        json_dumps(invoice.request) if invoice.request is not None else None,
                        format_rfc3339(invoice.created_at),
                    ),
                )
            except sqlite3.IntegrityError as e:
                raise DuplicatePayment(f"Invoice already issued: {invoice.invoice.payment_hash}") from e

    def get_invoice(self, payment_hash: str, *, conn: sqlite3.Connection | None = None) -> InvoiceRecord | None:
        with self._db.session(conn) as c:
            row = c.execute("SELECT * FROM invoices WHERE payment_hash = ?;", (payment_hash,)).fetchone()
            if row is None:
                return None
            return InvoiceRecord(
                invoice=Invoice(
                    payment_hash=row["payment_hash"], bolt11=row["bolt11"], amount_msats=int(row["amount_msats"])
                ),
                requester=row["requester"],
                purpose=row["purpose"],
                request=json.loads(row["request_json"]) if row["request_json"] is not None else None,
                created_at=parse_rfc3339(row["created_at"]),
            )
