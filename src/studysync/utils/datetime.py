"""Datetime utilities with consistent millisecond timestamps.

Records and sync bookkeeping store wall-clock times as integer milliseconds
since the epoch (UTC). Remote backends report RFC 3339 strings; these helpers
convert between the two so nothing downstream handles mixed representations.
"""

import time
from datetime import datetime, timezone
from typing import Optional, Union


def now_ms() -> int:
    """Return the current wall-clock time in milliseconds since the epoch."""
    return int(time.time() * 1000)


def ensure_aware(dt: Optional[datetime]) -> Optional[datetime]:
    """Ensure datetime is timezone-aware, assuming UTC if naive.

    Args:
        dt: Datetime to check/convert, or None

    Returns:
        Timezone-aware datetime in UTC, or None if input was None
    """
    if dt is None:
        return None

    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)

    return dt


def datetime_to_ms(dt: datetime) -> int:
    """Convert a datetime to epoch milliseconds (naive values are taken as UTC)."""
    return int(ensure_aware(dt).timestamp() * 1000)


def ms_to_datetime(value: Optional[int]) -> Optional[datetime]:
    """Convert epoch milliseconds to an aware UTC datetime."""
    if value is None:
        return None
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc)


def parse_timestamp_ms(value: Union[str, int, float, datetime, None]) -> Optional[int]:
    """Normalize a remote timestamp to epoch milliseconds.

    Accepts RFC 3339 strings (``2024-05-01T10:00:00.123Z``), datetimes, or
    numbers already expressed in milliseconds. Unparseable input yields None.

    Args:
        value: Timestamp in any of the supported representations

    Returns:
        Milliseconds since the epoch, or None
    """
    if value is None or value == "":
        return None

    if isinstance(value, datetime):
        return datetime_to_ms(value)

    if isinstance(value, (int, float)):
        return int(value)

    text = str(value).strip()
    if text.isdigit():
        return int(text)

    # fromisoformat() only learned the "Z" suffix in 3.11
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"

    try:
        return datetime_to_ms(datetime.fromisoformat(text))
    except ValueError:
        return None


def format_timestamp(value: Optional[int]) -> str:
    """Human-readable rendering of a millisecond timestamp."""
    if not value:
        return "Never"
    return ms_to_datetime(value).strftime("%Y-%m-%d %H:%M:%S UTC")
