"""Shared datetime parsing and epoch-millisecond helpers.

Credential expiry has been persisted in several shapes over time
(epoch millis, ``{"seconds": ..}`` / ``{"_seconds": ..}`` timestamp
objects, ISO strings, native datetimes).  :func:`expiry_to_epoch_ms`
is the single place that folds all of them into epoch milliseconds.
"""

from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Any, Mapping, Optional


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def now_ms() -> int:
    return int(time.time() * 1000)


def to_utc(dt: datetime) -> datetime:
    """Ensure a datetime is UTC-aware."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def parse_iso_datetime(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 string (with or without ``Z`` suffix) to UTC.

    Returns *None* on invalid or empty input rather than raising.
    """
    if isinstance(value, datetime):
        return to_utc(value)
    if value is None:
        return None
    text = str(value).strip()
    if not text:
        return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return to_utc(datetime.fromisoformat(text))
    except (ValueError, TypeError):
        return None


def epoch_ms_to_datetime(epoch_ms: Any) -> Optional[datetime]:
    if epoch_ms is None:
        return None
    try:
        return datetime.fromtimestamp(int(epoch_ms) / 1000.0, tz=timezone.utc)
    except (ValueError, TypeError, OSError):
        return None


def datetime_to_epoch_ms(dt: datetime) -> int:
    return int(to_utc(dt).timestamp() * 1000)


def expiry_to_epoch_ms(value: Any) -> Optional[int]:
    """Normalize any historical expiry representation to epoch millis."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, datetime):
        return datetime_to_epoch_ms(value)
    if isinstance(value, Mapping):
        seconds = value.get("seconds", value.get("_seconds"))
        if seconds is None:
            return None
        nanos = value.get("nanoseconds", value.get("_nanoseconds")) or 0
        try:
            return int(seconds) * 1000 + int(nanos) // 1_000_000
        except (TypeError, ValueError):
            return None
    if isinstance(value, str):
        text = value.strip()
        if text.isdigit():
            return int(text)
        parsed = parse_iso_datetime(text)
        return datetime_to_epoch_ms(parsed) if parsed else None
    return None
