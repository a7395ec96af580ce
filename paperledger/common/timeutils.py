"""
UTC timestamp helpers shared by the ledger store and analytics.

Rules:
- Naive `datetime` (no tzinfo) is assumed to be **UTC**.
- Storage text format is fixed-width ISO8601 with microseconds and an explicit
  `+00:00` offset, so lexicographic order equals chronological order.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

_STORAGE_FORMAT = "%Y-%m-%dT%H:%M:%S.%f+00:00"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def format_storage_ts(dt: datetime) -> str:
    return to_utc(dt).strftime(_STORAGE_FORMAT)


def parse_storage_ts(value: Any) -> datetime:
    """
    Parse a timestamp as returned by a DB driver (text or datetime) into tz-aware UTC.
    """
    if isinstance(value, datetime):
        return to_utc(value)
    if isinstance(value, str):
        s = value.strip()
        if s.endswith("Z"):
            s = s[:-1] + "+00:00"
        return to_utc(datetime.fromisoformat(s))
    raise TypeError(f"unsupported timestamp value: {type(value).__name__}")
