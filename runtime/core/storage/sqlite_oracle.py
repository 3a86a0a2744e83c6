"""SQLite oracle store: the pinned oracle identity, events, nonces and attestations."""

from __future__ import annotations

import json
import logging
import sqlite3
from datetime import datetime
from typing import Any

from errors import AlreadyAttested, ConfigError, DuplicateEventName
from models import NonceRecord, OracleEventRecord
from storage.database import ATTESTATION_WRITE_ONCE, SQLiteDatabase
from storage.interfaces import OracleStore
from utils import format_rfc3339, json_dumps, parse_rfc3339

logger = logging.getLogger("oracle.store")

_EVENT_COLUMNS = (
    "event_id, name, is_enum, outcomes_json, nb_digits, maturity, announcement_json, announcement_signature, "
    "announcement_event_id, outcome, attested_at, attestation_event_id, created_at"
)


class SQLiteOracleStore(OracleStore):
    def __init__(self, db: SQLiteDatabase):
        self._db = db

    def pin_identity(self, public_key: str, name: str) -> None:
        with self._db.transaction() as conn:
            row = conn.execute("SELECT public_key FROM oracle_metadata WHERE singleton = 1;").fetchone()
            if row is None:
                conn.execute(
                    "INSERT INTO oracle_metadata(singleton, public_key, name, created_at) VALUES (1, ?, ?, ?);",
                    (public_key, name, format_rfc3339(self._db.now())),
                )
                logger.info("oracle_identity_pinned", extra={"event": "oracle_identity_pinned"})
                return
            if row["public_key"] != public_key:
                raise ConfigError(
                    f"Database is bound to oracle key {row['public_key']}, refusing to run as {public_key}"
                )

    def _load_nonces(self, conn: sqlite3.Connection, event_id: int) -> tuple[NonceRecord, ...]:
        rows = conn.execute(
            "SELECT idx, nonce, outcome, signature FROM oracle_nonces WHERE event_id = ? ORDER BY idx ASC;", (event_id,)
        ).fetchall()
        return tuple(
            NonceRecord(index=int(r["idx"]), nonce=r["nonce"], outcome=r["outcome"], signature=r["signature"]) for r in rows
        )

    def _row_to_event(self, conn: sqlite3.Connection, row: sqlite3.Row) -> OracleEventRecord:
        outcomes = json.loads(row["outcomes_json"]) if row["outcomes_json"] is not None else None
        return OracleEventRecord(
            event_id=int(row["event_id"]),
            name=row["name"],
            is_enum=bool(row["is_enum"]),
            outcomes=tuple(outcomes) if outcomes is not None else None,
            nb_digits=row["nb_digits"],
            maturity=row["maturity"],
            announcement=json.loads(row["announcement_json"]),
            announcement_signature=row["announcement_signature"],
            nonces=self._load_nonces(conn, int(row["event_id"])),
            created_at=parse_rfc3339(row["created_at"]),
            outcome=row["outcome"],
            attested_at=parse_rfc3339(row["attested_at"]) if row["attested_at"] is not None else None,
            announcement_event_id=row["announcement_event_id"],
            attestation_event_id=row["attestation_event_id"],
        )

    def create_event(
        self,
        *,
        name: str,
        is_enum: bool,
        outcomes: tuple[str, ...] | None,
        nb_digits: int | None,
        maturity: int | None,
        announcement: dict[str, Any],
        announcement_signature: str | None,
        nonces: list[str],
        conn: sqlite3.Connection | None = None,
    ) -> OracleEventRecord:
        now = format_rfc3339(self._db.now())
        with self._db.transaction(conn) as c:
            try:
                cur = c.execute(
                    """
                    INSERT INTO oracle_events(
                      name, is_enum, outcomes_json, nb_digits, maturity,
                      announcement_json, announcement_signature, created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?);
                    """,
                    (
                        name,
                        1 if is_enum else 0,
                        json_dumps(list(outcomes)) if outcomes is not None else None,
                        nb_digits,
                        maturity,
                        json_dumps(announcement),
                        announcement_signature,
                        now,
                        now,
                    ),
                )
            except sqlite3.IntegrityError as e:
                raise DuplicateEventName(f"Oracle event already exists: {name}") from e
            event_id = int(cur.lastrowid)
            c.executemany(
                "INSERT INTO oracle_nonces(event_id, idx, nonce) VALUES (?, ?, ?);",
                [(event_id, idx, nonce) for idx, nonce in enumerate(nonces)],
            )
            row = c.execute(f"SELECT {_EVENT_COLUMNS} FROM oracle_events WHERE event_id = ?;", (event_id,)).fetchone()
            return self._row_to_event(c, row)

    def get_event(self, name: str, *, conn: sqlite3.Connection | None = None) -> OracleEventRecord | None:
        with self._db.session(conn) as c:
            row = c.execute(f"SELECT {_EVENT_COLUMNS} FROM oracle_events WHERE name = ?;", (name,)).fetchone()
            return self._row_to_event(c, row) if row is not None else None

    def get_event_by_id(self, event_id: int, *, conn: sqlite3.Connection | None = None) -> OracleEventRecord | None:
        with self._db.session(conn) as c:
            row = c.execute(f"SELECT {_EVENT_COLUMNS} FROM oracle_events WHERE event_id = ?;", (event_id,)).fetchone()
            return self._row_to_event(c, row) if row is not None else None

    def save_attestation(
        self,
        event_id: int,
        *,
        outcome: str,
        nonce_outcomes: list[str],
        signatures: list[str],
        now: datetime,
        conn: sqlite3.Connection | None = None,
    ) -> bool:
        ts = format_rfc3339(now)
        with self._db.transaction(conn) as c:
            try:
                cur = c.execute(
                    """
                    UPDATE oracle_events SET outcome = ?, attested_at = ?, updated_at = ?
                    WHERE event_id = ? AND outcome IS NULL;
                    """,
                    (outcome, ts, ts, event_id),
                )
                if cur.rowcount != 1:
                    return False
                for idx, (nonce_outcome, signature) in enumerate(zip(nonce_outcomes, signatures)):
                    c.execute(
                        """
                        UPDATE oracle_nonces SET outcome = ?, signature = ?
                        WHERE event_id = ? AND idx = ? AND signature IS NULL;
                        """,
                        (nonce_outcome, signature, event_id, idx),
                    )
            except sqlite3.IntegrityError as e:
                if ATTESTATION_WRITE_ONCE in str(e):
                    raise AlreadyAttested(f"Oracle event {event_id} is already attested") from e
                raise
            return True

    def set_announcement_event_id(self, event_id: int, announcement_event_id: str) -> None:
        with self._db.transaction() as conn:
            conn.execute(
                "UPDATE oracle_events SET announcement_event_id = ?, updated_at = ? WHERE event_id = ?;",
                (announcement_event_id, format_rfc3339(self._db.now()), event_id),
            )

    def set_attestation_event_id(self, event_id: int, attestation_event_id: str) -> None:
        with self._db.transaction() as conn:
            conn.execute(
                "UPDATE oracle_events SET attestation_event_id = ?, updated_at = ? WHERE event_id = ?;",
                (attestation_event_id, format_rfc3339(self._db.now()), event_id),
            )
