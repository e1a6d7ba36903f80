"""Timestamp helpers. Every timestamp in pipewatch is a timezone-aware UTC datetime."""

from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value) -> datetime | None:
    """Parse an ISO-8601 string (``Z`` suffix allowed) or datetime into aware UTC.

    Returns None for empty or unparseable input.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(text)
        except ValueError:
            return None
    else:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def elapsed_ms(start: datetime | None, end: datetime | None) -> int | None:
    """Milliseconds between two instants, or None when either is missing."""
    if start is None or end is None:
        return None
    return int(round((end - start).total_seconds() * 1000))
