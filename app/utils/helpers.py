"""
Helper Functions
================

Common utility functions used across the application.
"""

from datetime import datetime, timezone
from typing import Optional, Union


def utc_now() -> datetime:
    """Get current UTC datetime with timezone info."""
    return datetime.now(timezone.utc)


def ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes; convert aware ones to UTC."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def from_unix_timestamp(
    value: Union[int, float, str, None],
    *,
    millis: bool = False,
) -> Optional[datetime]:
    """
    Convert a provider epoch timestamp to an aware UTC datetime.

    Stripe sends seconds, Apple receipts send milliseconds as strings.
    """
    if value is None or value == "":
        return None
    seconds = float(value) / 1000 if millis else float(value)
    return datetime.fromtimestamp(seconds, tz=timezone.utc)
