"""Timestamp normalization for replay offsets."""

from __future__ import annotations

import math
import re
from datetime import datetime, timedelta

NAN = float("nan")

# A negative UTC offset after the time part, e.g. "T10:00:00-05:00".
_NEGATIVE_OFFSET = re.compile(r"[T ][^-]*-\d{2}(?::?\d{2})?$")


def normalize_timestamp(ts: str) -> str:
    """Append a UTC offset to timestamps that carry no timezone marker.

    Args:
        ts: ISO 8601-like timestamp, with or without ``Z`` / ``+hh:mm``.

    Returns:
        The timestamp with ``+00:00`` appended if it had no timezone marker.
    """
    if "+" in ts or "Z" in ts or _NEGATIVE_OFFSET.search(ts):
        return ts
    return ts + "+00:00"


def parse_timestamp(ts: str) -> datetime:
    """Parse a normalized ISO 8601 timestamp to an aware datetime.

    Raises:
        ValueError: If the timestamp is malformed.
    """
    return datetime.fromisoformat(normalize_timestamp(ts).replace("Z", "+00:00"))


def offset_from_start(event_timestamp: str, session_start_timestamp: str) -> float:
    """Milliseconds between the session start and an event.

    Both inputs are normalized independently with the same rule. The result
    may be negative for events recorded before the session start.

    Returns:
        Integer milliseconds, or NaN if either timestamp is malformed.
    """
    try:
        event_dt = parse_timestamp(event_timestamp)
        start_dt = parse_timestamp(session_start_timestamp)
    except (TypeError, ValueError):
        return NAN
    return (event_dt - start_dt) // timedelta(milliseconds=1)


def is_valid_offset(offset: float) -> bool:
    """False for offsets from unparseable timestamps."""
    return not math.isnan(offset)


def format_time(ms: float) -> str:
    """Format a cursor time as 'MM:SS'."""
    total_seconds = int(max(0, ms) // 1000)
    minutes = total_seconds // 60
    seconds = total_seconds % 60
    return f"{minutes:02d}:{seconds:02d}"


def progress_percentage(current_ms: float, duration_ms: float) -> float:
    """Cursor position as a percentage of the session, 0 for empty sessions."""
    if duration_ms <= 0:
        return 0.0
    return round(current_ms * 100 / duration_ms, 1)
