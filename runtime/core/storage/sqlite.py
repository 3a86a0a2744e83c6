"""SQLite storage driver (default persistence).

This module provides the job store behind the DB-agnostic storage interfaces
and the `SQLiteStores` container that ties the job store, ledger and oracle
store to one database file.

Tables are append-only where required:
- job_events: append-only audit log
- event_jobs: one link per job, link order is the fan-out order
Jobs are mutable only through conditional updates, and never after a result
identifier is attached.
"""

from __future__ import annotations

import json
import sqlite3
from contextlib import AbstractContextManager
from datetime import datetime
from pathlib import Path
from typing import Any

from errors import DuplicateJob, InvalidSchedule, InvalidTransition, NotFoundError
from models import JobRecord, JobRequest
from storage.database import JOB_IMMUTABLE, RUN_DATE_NOT_FUTURE, SQLiteDatabase
from storage.interfaces import JobStore, StoreSet
from storage.sqlite_ledger import SQLiteLedger
from storage.sqlite_oracle import SQLiteOracleStore
from utils import Clock, format_rfc3339, json_dumps, parse_rfc3339, utcnow

_JOB_COLUMNS = (
    "job_id, payment_hash, requester, state, trigger_kind, funding, amount_msats, request_json, run_date, "
    "created_at, updated_at, started_at, terminal_at, output, failure_code, failure_reason, result_id"
)


def _opt_iso(dt: datetime | None) -> str | None:
    return format_rfc3339(dt) if dt is not None else None


def _opt_dt(value: str | None) -> datetime | None:
    return parse_rfc3339(value) if value is not None else None


def _row_to_job(row: sqlite3.Row) -> JobRecord:
    return JobRecord(
        job_id=row["job_id"],
        payment_hash=row["payment_hash"],
        requester=row["requester"],
        state=row["state"],
        trigger=row["trigger_kind"],
        funding=row["funding"],
        amount_msats=int(row["amount_msats"]),
        request=JobRequest.from_document(json.loads(row["request_json"])),
        run_date=row["run_date"],
        created_at=parse_rfc3339(row["created_at"]),
        updated_at=parse_rfc3339(row["updated_at"]),
        started_at=_opt_dt(row["started_at"]),
        terminal_at=_opt_dt(row["terminal_at"]),
        output=row["output"],
        failure_code=row["failure_code"],
        failure_reason=row["failure_reason"],
        result_id=row["result_id"],
    )


class SQLiteJobStore(JobStore):
    def __init__(self, db: SQLiteDatabase):
        self._db = db

    def create(self, job: JobRecord, *, conn: sqlite3.Connection | None = None) -> None:
        with self._db.transaction(conn) as c:
            try:
                c.execute(
                    f"""
                    INSERT INTO jobs({_JOB_COLUMNS})
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
                    """,
                    (
                        job.job_id,
                        job.payment_hash,
                        job.requester,
                        job.state,
                        job.trigger,
                        job.funding,
                        job.amount_msats,
                        json_dumps(job.request.raw),
                        job.run_date,
                        format_rfc3339(job.created_at),
                        format_rfc3339(job.updated_at),
                        _opt_iso(job.started_at),
                        _opt_iso(job.terminal_at),
                        job.output,
                        job.failure_code,
                        job.failure_reason,
                        job.result_id,
                    ),
                )
            except sqlite3.IntegrityError as e:
                if RUN_DATE_NOT_FUTURE in str(e):
                    raise InvalidSchedule(f"run_date must be in the future (got {job.run_date})") from e
                if "payment_hash" in str(e):
                    raise DuplicateJob(f"Payment already funds a job: {job.payment_hash}") from e
                raise DuplicateJob(f"Job already exists: {job.job_id}") from e

    def get(self, job_id: str, *, conn: sqlite3.Connection | None = None) -> JobRecord:
        with self._db.session(conn) as c:
            row = c.execute(f"SELECT {_JOB_COLUMNS} FROM jobs WHERE job_id = ?;", (job_id,)).fetchone()
            if row is None:
                raise NotFoundError("Job", job_id)
            return _row_to_job(row)

    def exists(self, job_id: str, *, conn: sqlite3.Connection | None = None) -> bool:
        with self._db.session(conn) as c:
            row = c.execute("SELECT 1 FROM jobs WHERE job_id = ? OR payment_hash = ? LIMIT 1;", (job_id, job_id)).fetchone()
            return row is not None

    def compare_and_set(self, job: JobRecord, *, expected_state: str, conn: sqlite3.Connection | None = None) -> bool:
        with self._db.transaction(conn) as c:
            try:
                cur = c.execute(
                    """
                    UPDATE jobs SET
                      state = ?,
                      updated_at = ?,
                      started_at = ?,
                      terminal_at = ?,
                      output = ?,
                      failure_code = ?,
                      failure_reason = ?
                    WHERE job_id = ? AND state = ? AND result_id IS NULL;
                    """,
                    (
                        job.state,
                        format_rfc3339(job.updated_at),
                        _opt_iso(job.started_at),
                        _opt_iso(job.terminal_at),
                        job.output,
                        job.failure_code,
                        job.failure_reason,
                        job.job_id,
                        expected_state,
                    ),
                )
            except sqlite3.IntegrityError as e:
                raise InvalidTransition(f"Job {job.job_id} cannot be updated: {e}") from e
            return cur.rowcount == 1

    def reschedule(self, job_id: str, run_date: int, *, now: datetime, conn: sqlite3.Connection | None = None) -> bool:
        with self._db.transaction(conn) as c:
            try:
                cur = c.execute(
                    """
                    UPDATE jobs SET run_date = ?, updated_at = ?
                    WHERE job_id = ? AND state = 'awaiting_trigger' AND trigger_kind = 'scheduled';
                    """,
                    (run_date, format_rfc3339(now), job_id),
                )
            except sqlite3.IntegrityError as e:
                if RUN_DATE_NOT_FUTURE in str(e):
                    raise InvalidSchedule(f"run_date must be in the future (got {run_date})") from e
                raise
            return cur.rowcount == 1

    def attach_result(self, job_id: str, result_id: str, *, now: datetime, conn: sqlite3.Connection | None = None) -> bool:
        with self._db.transaction(conn) as c:
            try:
                cur = c.execute(
                    "UPDATE jobs SET result_id = ?, updated_at = ? WHERE job_id = ? AND result_id IS NULL;",
                    (result_id, format_rfc3339(now), job_id),
                )
            except sqlite3.IntegrityError as e:
                if JOB_IMMUTABLE in str(e):
                    return False
                raise
            return cur.rowcount == 1

    def list_by_state(self, state: str, *, trigger: str | None = None) -> list[JobRecord]:
        with self._db.connect() as conn:
            if trigger is None:
                rows = conn.execute(
                    f"SELECT {_JOB_COLUMNS} FROM jobs WHERE state = ? ORDER BY created_at ASC, rowid ASC;", (state,)
                ).fetchall()
            else:
                rows = conn.execute(
                    f"SELECT {_JOB_COLUMNS} FROM jobs WHERE state = ? AND trigger_kind = ? ORDER BY created_at ASC, rowid ASC;",
                    (state, trigger),
                ).fetchall()
            return [_row_to_job(r) for r in rows]

    def list_unpublished(self, states: tuple[str, ...]) -> list[JobRecord]:
        if not states:
            return []
        placeholders = ", ".join("?" for _ in states)
        with self._db.connect() as conn:
            rows = conn.execute(
                f"""
                SELECT {_JOB_COLUMNS} FROM jobs
                WHERE state IN ({placeholders}) AND result_id IS NULL
                ORDER BY created_at ASC, rowid ASC;
                """,
                tuple(states),
            ).fetchall()
            return [_row_to_job(r) for r in rows]

    def link_event(self, job_id: str, event_id: int, *, conn: sqlite3.Connection | None = None) -> None:
        with self._db.transaction(conn) as c:
            try:
                c.execute("INSERT INTO event_jobs(job_id, event_id) VALUES (?, ?);", (job_id, event_id))
            except sqlite3.IntegrityError as e:
                raise DuplicateJob(f"Job already linked to an event: {job_id}") from e

    def linked_jobs(self, event_id: int, *, conn: sqlite3.Connection | None = None) -> list[str]:
        with self._db.session(conn) as c:
            rows = c.execute("SELECT job_id FROM event_jobs WHERE event_id = ? ORDER BY link_id ASC;", (event_id,)).fetchall()
            return [r["job_id"] for r in rows]

    def linked_event_id(self, job_id: str, *, conn: sqlite3.Connection | None = None) -> int | None:
        with self._db.session(conn) as c:
            row = c.execute("SELECT event_id FROM event_jobs WHERE job_id = ?;", (job_id,)).fetchone()
            return int(row["event_id"]) if row is not None else None

    def record_event(
        self,
        *,
        job_id: str,
        event_type: str,
        details: dict[str, Any] | None = None,
        conn: sqlite3.Connection | None = None,
    ) -> None:
        with self._db.transaction(conn) as c:
            c.execute(
                "INSERT INTO job_events(ts, job_id, event_type, details_json) VALUES (?, ?, ?, ?);",
                (format_rfc3339(self._db.now()), job_id, event_type, json_dumps(details or {})),
            )

    def list_events(self, job_id: str) -> list[dict[str, Any]]:
        with self._db.connect() as conn:
            rows = conn.execute(
                "SELECT ts, event_type, details_json FROM job_events WHERE job_id = ? ORDER BY event_id ASC;", (job_id,)
            ).fetchall()
            return [
                {"ts": r["ts"], "event_type": r["event_type"], "details": json.loads(r["details_json"] or "{}")} for r in rows
            ]


class SQLiteStores(StoreSet):
    """Convenience container for the stores backed by one SQLite file."""

    def __init__(self, sqlite_path: Path, *, clock: Clock = utcnow):
        self.db = SQLiteDatabase(sqlite_path, clock=clock)
        self.jobs = SQLiteJobStore(self.db)
        self.ledger = SQLiteLedger(self.db)
        self.oracle = SQLiteOracleStore(self.db)

    def transaction(self) -> AbstractContextManager[sqlite3.Connection]:
        return self.db.transaction()

    def now(self) -> datetime:
        return self.db.now()
