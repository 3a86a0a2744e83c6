"""Small utility helpers used across the core runtime."""

from __future__ import annotations

import hashlib
import json
import math
from datetime import datetime, timezone
from typing import Any, Callable

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def unix_seconds(dt: datetime) -> float:
    return dt.astimezone(timezone.utc).timestamp()


def from_unix(ts: float) -> datetime:
    return datetime.fromtimestamp(ts, tz=timezone.utc)


def parse_rfc3339(dt: str) -> datetime:
    """Parse RFC3339-ish timestamps as written by `format_rfc3339`.

    Python's datetime.fromisoformat does not accept trailing "Z" on older interpreters, so we normalize.
    """
    s = dt.strip()
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    parsed = datetime.fromisoformat(s)
    if parsed.tzinfo is None:
        raise ValueError("date-time must be timezone-aware (include Z or offset)")
    return parsed.astimezone(timezone.utc)


def format_rfc3339(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def json_dumps(obj: Any) -> str:
    return json.dumps(obj, ensure_ascii=True, sort_keys=True, separators=(",", ":"))


def sha256_hex(data: bytes | str) -> str:
    if isinstance(data, str):
        data = data.encode("utf-8")
    return hashlib.sha256(data).hexdigest()


def canonical_hash(obj: Any) -> str:
    """sha256 of the canonical JSON form (sorted keys, compact separators)."""
    return sha256_hex(json_dumps(obj))


def price_msats(time_ms: float, msats_per_ms: float) -> int:
    return int(math.ceil(time_ms * msats_per_ms))
