"""SQLite database handle, transactions and schema.

SQLite is used as a local, file-backed state store. Every write unit runs in a
`BEGIN IMMEDIATE` transaction so concurrent writers serialize on the database
lock instead of racing on stale reads.

Temporal and write-once invariants are enforced by the database itself:
- jobs.run_date must be strictly in the future on insert, and on update when it changes
- a job row with a result_id is immutable
- oracle event outcomes and nonce signatures are written once
- account balances never go negative (CHECK constraint)

The current time is exposed to SQL as `dvm_now()` (unix seconds) from the
clock the database was built with, so tests can pin it.
"""

from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Iterator

from errors import StorageFault
from utils import Clock, unix_seconds, utcnow

logger = logging.getLogger("storage")

SCHEMA_VERSION = 1

# Messages raised by the schema triggers; stores match on them.
RUN_DATE_NOT_FUTURE = "run_date must be in the future"
JOB_IMMUTABLE = "job is immutable once a result is attached"
ATTESTATION_WRITE_ONCE = "attestation is write-once"

_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS jobs (
      job_id TEXT PRIMARY KEY,
      payment_hash TEXT NOT NULL UNIQUE,
      requester TEXT NOT NULL,
      state TEXT NOT NULL,
      trigger_kind TEXT NOT NULL,
      funding TEXT NOT NULL,
      amount_msats INTEGER NOT NULL CHECK (amount_msats >= 0),
      request_json TEXT NOT NULL,
      run_date INTEGER,
      created_at TEXT NOT NULL,
      updated_at TEXT NOT NULL,
      started_at TEXT,
      terminal_at TEXT,
      output TEXT,
      failure_code TEXT,
      failure_reason TEXT,
      result_id TEXT
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_jobs_state ON jobs(state, trigger_kind, created_at);",
    "CREATE INDEX IF NOT EXISTS idx_jobs_requester ON jobs(requester, created_at);",
    f"""
    CREATE TRIGGER IF NOT EXISTS jobs_run_date_future_insert
    BEFORE INSERT ON jobs
    WHEN NEW.run_date IS NOT NULL AND NEW.run_date <= dvm_now()
    BEGIN
      SELECT RAISE(ABORT, '{RUN_DATE_NOT_FUTURE}');
    END;
    """,
    f"""
    CREATE TRIGGER IF NOT EXISTS jobs_run_date_future_update
    BEFORE UPDATE OF run_date ON jobs
    WHEN NEW.run_date IS NOT OLD.run_date AND NEW.run_date IS NOT NULL AND NEW.run_date <= dvm_now()
    BEGIN
      SELECT RAISE(ABORT, '{RUN_DATE_NOT_FUTURE}');
    END;
    """,
    f"""
    CREATE TRIGGER IF NOT EXISTS jobs_immutable_after_result
    BEFORE UPDATE ON jobs
    WHEN OLD.result_id IS NOT NULL
    BEGIN
      SELECT RAISE(ABORT, '{JOB_IMMUTABLE}');
    END;
    """,
    """
    CREATE TABLE IF NOT EXISTS job_events (
      event_id INTEGER PRIMARY KEY AUTOINCREMENT,
      ts TEXT NOT NULL,
      job_id TEXT NOT NULL,
      event_type TEXT NOT NULL,
      details_json TEXT
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_job_events_job_id ON job_events(job_id, event_id);",
    """
    CREATE TABLE IF NOT EXISTS accounts (
      requester TEXT PRIMARY KEY,
      balance_msats INTEGER NOT NULL DEFAULT 0 CHECK (balance_msats >= 0),
      created_at TEXT NOT NULL,
      updated_at TEXT NOT NULL
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS settlements (
      payment_hash TEXT PRIMARY KEY,
      requester TEXT NOT NULL REFERENCES accounts(requester),
      amount_msats INTEGER NOT NULL CHECK (amount_msats >= 0),
      purpose TEXT NOT NULL,
      request_json TEXT,
      job_id TEXT UNIQUE,
      result_id TEXT,
      credited_at TEXT,
      created_at TEXT NOT NULL
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS invoices (
      payment_hash TEXT PRIMARY KEY,
      bolt11 TEXT NOT NULL UNIQUE,
      requester TEXT NOT NULL,
      amount_msats INTEGER NOT NULL CHECK (amount_msats >= 0),
      purpose TEXT NOT NULL,
      request_json TEXT,
      created_at TEXT NOT NULL
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS oracle_metadata (
      singleton INTEGER PRIMARY KEY CHECK (singleton = 1),
      public_key TEXT NOT NULL,
      name TEXT NOT NULL,
      created_at TEXT NOT NULL
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS oracle_events (
      event_id INTEGER PRIMARY KEY AUTOINCREMENT,
      name TEXT NOT NULL UNIQUE,
      is_enum INTEGER NOT NULL,
      outcomes_json TEXT,
      nb_digits INTEGER,
      maturity INTEGER,
      announcement_json TEXT NOT NULL,
      announcement_signature TEXT,
      announcement_event_id TEXT,
      outcome TEXT,
      attested_at TEXT,
      attestation_event_id TEXT,
      created_at TEXT NOT NULL,
      updated_at TEXT NOT NULL
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS oracle_nonces (
      event_id INTEGER NOT NULL REFERENCES oracle_events(event_id),
      idx INTEGER NOT NULL,
      nonce TEXT NOT NULL UNIQUE,
      outcome TEXT,
      signature TEXT,
      PRIMARY KEY (event_id, idx)
    );
    """,
    f"""
    CREATE TRIGGER IF NOT EXISTS oracle_events_outcome_write_once
    BEFORE UPDATE OF outcome, attested_at ON oracle_events
    WHEN OLD.outcome IS NOT NULL
    BEGIN
      SELECT RAISE(ABORT, '{ATTESTATION_WRITE_ONCE}');
    END;
    """,
    f"""
    CREATE TRIGGER IF NOT EXISTS oracle_nonces_signature_write_once
    BEFORE UPDATE OF outcome, signature ON oracle_nonces
    WHEN OLD.signature IS NOT NULL
    BEGIN
      SELECT RAISE(ABORT, '{ATTESTATION_WRITE_ONCE}');
    END;
    """,
    """
    CREATE TABLE IF NOT EXISTS event_jobs (
      link_id INTEGER PRIMARY KEY AUTOINCREMENT,
      job_id TEXT NOT NULL UNIQUE REFERENCES jobs(job_id),
      event_id INTEGER NOT NULL REFERENCES oracle_events(event_id)
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_event_jobs_event_id ON event_jobs(event_id, link_id);",
]


class SQLiteDatabase:
    def __init__(self, path: Path, *, clock: Clock = utcnow):
        self.path = path.resolve()
        self._clock = clock
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageFault(f"Cannot create database directory {self.path.parent}: {e}") from e
        self._migrate()

    def now(self) -> datetime:
        return self._clock()

    def _sql_now(self) -> float:
        return unix_seconds(self._clock())

    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        """One connection per operation. sqlite3 failures other than constraint
        violations surface as StorageFault."""
        try:
            conn = sqlite3.connect(str(self.path), timeout=30, isolation_level=None)
        except sqlite3.Error as e:
            raise StorageFault(f"Cannot open SQLite database {self.path}: {e}") from e
        try:
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA foreign_keys = ON;")
            conn.execute("PRAGMA trusted_schema = ON;")
            conn.create_function("dvm_now", 0, self._sql_now)
            yield conn
        except sqlite3.IntegrityError:
            raise
        except sqlite3.Error as e:
            raise StorageFault(f"SQLite failure on {self.path}: {e}") from e
        finally:
            conn.close()

    @contextmanager
    def transaction(self, conn: sqlite3.Connection | None = None) -> Iterator[sqlite3.Connection]:
        """Open a write transaction, or join the caller's when `conn` is given."""
        if conn is not None:
            yield conn
            return
        with self.connect() as own:
            own.execute("BEGIN IMMEDIATE;")
            try:
                yield own
            except BaseException:
                if own.in_transaction:
                    own.execute("ROLLBACK;")
                raise
            own.execute("COMMIT;")

    @contextmanager
    def session(self, conn: sqlite3.Connection | None = None) -> Iterator[sqlite3.Connection]:
        """A connection for reads: the caller's if given, else a fresh one."""
        if conn is not None:
            yield conn
            return
        with self.connect() as own:
            yield own

    def _migrate(self) -> None:
        with self.connect() as conn:
            conn.execute("PRAGMA journal_mode = WAL;")
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS schema_version (
                  version INTEGER NOT NULL
                );
                """
            )
            row = conn.execute("SELECT version FROM schema_version LIMIT 1;").fetchone()
            if row is None:
                conn.execute("INSERT INTO schema_version(version) VALUES (?);", (SCHEMA_VERSION,))
                version = SCHEMA_VERSION
            else:
                version = int(row["version"])

            if version != SCHEMA_VERSION:
                raise StorageFault(f"Unsupported SQLite schema_version: {version}")

            for statement in _SCHEMA:
                conn.execute(statement)
        logger.info("storage_ready", extra={"event": "storage_ready"})
