"""Time utilities for consistent timestamp handling."""

from datetime import datetime, timezone
from typing import Any


def utc_now() -> datetime:
    """Return current UTC timestamp (timezone-aware)."""
    return datetime.now(timezone.utc)


def from_epoch_seconds(value: Any) -> datetime | None:
    """Convert a provider epoch-seconds timestamp to an aware datetime.

    Evolution sends `messageTimestamp` as an int, a numeric string, or a
    protobuf Long serialized as {"low": ..., "high": ..., "unsigned": ...}.
    Returns None for anything unusable.
    """
    if isinstance(value, dict):
        value = value.get("low")
    if isinstance(value, bool) or value is None:
        return None
    try:
        seconds = float(value)
    except (TypeError, ValueError):
        return None
    if seconds <= 0:
        return None
    try:
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None
