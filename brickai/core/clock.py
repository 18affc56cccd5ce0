"""
UTC Clock Helpers

All stored and logged timestamps are timezone-aware UTC.
"""

from datetime import datetime, timezone
from typing import Optional


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to values read back from stores that drop the offset (SQLite)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def utc_isoformat() -> str:
    """Current time as ``YYYY-MM-DDTHH:MM:SS.ffffffZ``."""
    return utc_now().isoformat().replace("+00:00", "Z")
