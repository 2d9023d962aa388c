"""
Datetime utility functions.
"""

from datetime import datetime
from typing import Optional, Union
import pytz


def utcnow() -> datetime:
    """
    Get current UTC datetime using pytz.UTC.

    Returns:
        Current UTC datetime with pytz timezone information
    """
    return datetime.now(pytz.UTC)


def ensure_utc(value: Optional[Union[str, datetime]]) -> Optional[datetime]:
    """
    Normalize a datetime (or ISO-8601 string) to an aware UTC datetime.

    Naive values are assumed to already be UTC; SQLite hands back naive
    datetimes even for timezone-aware columns.
    """
    if value is None:
        return None
    if isinstance(value, str):
        value = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if value.tzinfo is None:
        return pytz.UTC.localize(value)
    return value.astimezone(pytz.UTC)

