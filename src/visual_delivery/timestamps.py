"""
Canonical local timestamps.

All persisted timestamps use local time with millisecond precision and an
explicit numeric offset, e.g. ``2026-10-19T11:43:05.120+02:00``.
"""

from datetime import datetime
from typing import Optional


def to_local_iso(value) -> Optional[str]:
    """
    Normalize a datetime, epoch seconds or ISO string to canonical local time.

    Returns None when the value cannot be interpreted as a point in time.
    """
    if isinstance(value, bool) or value is None:
        return None
    try:
        if isinstance(value, datetime):
            dt = value
        elif isinstance(value, (int, float)):
            dt = datetime.fromtimestamp(value)
        elif isinstance(value, str):
            text = value.strip()
            if not text:
                return None
            if text.endswith('Z'):
                text = text[:-1] + '+00:00'
            dt = datetime.fromisoformat(text)
        else:
            return None
    except (ValueError, OverflowError, OSError):
        return None

    # Naive values are taken as local wall-clock time
    dt = dt.astimezone()
    return dt.isoformat(timespec='milliseconds')


def now_local_iso() -> str:
    return to_local_iso(datetime.now())


def ensure_local_iso(value, fallback: Optional[str] = None) -> str:
    return to_local_iso(value) or fallback or now_local_iso()


def parse_iso(value: str) -> Optional[datetime]:
    if not isinstance(value, str) or not value:
        return None
    text = value[:-1] + '+00:00' if value.endswith('Z') else value
    try:
        dt = datetime.fromisoformat(text)
    except ValueError:
        return None
    return dt.astimezone() if dt.tzinfo is None else dt


def advance(previous: Optional[str]) -> str:
    """Return "now", but never earlier than ``previous`` (keeps updated_at non-decreasing)."""
    now = now_local_iso()
    prev = parse_iso(previous) if previous else None
    if prev is not None and prev > parse_iso(now):
        return to_local_iso(prev)
    return now
