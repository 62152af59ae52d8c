"""
Datetime utilities for contact dedup services.
"""
from datetime import datetime, timezone
from typing import Any, Optional


def make_aware(dt: Optional[datetime]) -> Optional[datetime]:
    """
    Ensure datetime is timezone-aware (UTC if naive).

    Args:
        dt: A datetime object that may or may not have timezone info

    Returns:
        The same datetime with UTC timezone if it was naive,
        or the original timezone-aware datetime, or None if input was None
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 column value (or datetime) into an aware datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return make_aware(value)
    return make_aware(datetime.fromisoformat(str(value).replace("Z", "+00:00")))


def utc_now_iso() -> str:
    """Current UTC time as an ISO-8601 string for timestamp columns."""
    return datetime.now(timezone.utc).isoformat()
