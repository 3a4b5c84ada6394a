"""
Utilities Module
================

Helper functions and utility classes.
"""

from app.utils.helpers import ensure_utc, from_unix_timestamp, utc_now

__all__ = ["ensure_utc", "from_unix_timestamp", "utc_now"]
