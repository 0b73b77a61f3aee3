"""Deterministic serialization and content hashing for observations."""

from __future__ import annotations

import hashlib
import json
import math
from datetime import UTC, datetime
from typing import Any


def utc_now() -> datetime:
    """Return current UTC datetime (timezone-aware)."""
    return datetime.now(UTC)


def as_utc(value: datetime | None) -> datetime | None:
    """
    Normalize a datetime to timezone-aware UTC.

    SQLite returns naive datetimes for values that were written as UTC, so
    anything read back from the database goes through here before being
    compared with `utc_now()`.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def minute_bucket(moment: datetime) -> int:
    """Whole minutes since the epoch; observations within one minute share a bucket."""
    return math.floor(as_utc(moment).timestamp() / 60)


def _normalize(value: Any, seen: set[int]) -> Any:
    if isinstance(value, dict):
        if id(value) in seen:
            raise ValueError("Cannot stable-serialize a circular structure")
        seen.add(id(value))
        try:
            return {str(k): _normalize(value[k], seen) for k in sorted(value, key=str)}
        finally:
            seen.discard(id(value))
    if isinstance(value, (list, tuple)):
        if id(value) in seen:
            raise ValueError("Cannot stable-serialize a circular structure")
        seen.add(id(value))
        try:
            return [_normalize(v, seen) for v in value]
        finally:
            seen.discard(id(value))
    if isinstance(value, datetime):
        return as_utc(value).isoformat()
    return value


def stable_json_dumps(value: Any) -> str:
    """
    Serialize a value to JSON with object keys sorted at every depth.

    Two structurally equal values always produce the same string, which is
    what makes the snapshot content hash deterministic.

    Raises:
        ValueError: If the value contains a reference cycle
    """
    return json.dumps(
        _normalize(value, set()),
        separators=(",", ":"),
        ensure_ascii=False,
        allow_nan=False,
    )


def sha256_hex(text: str) -> str:
    """Hex-encoded SHA-256 of a UTF-8 string."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def content_hash(value: Any) -> str:
    """Hash of the stable serialization of a value."""
    return sha256_hex(stable_json_dumps(value))
