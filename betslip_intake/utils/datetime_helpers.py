"""
Date and time utilities for the Betslip Intake bot.

This module provides helper functions for consistent datetime handling.
"""

from datetime import datetime, timezone
from typing import Optional


def utc_now_iso() -> str:
    """
    Return current UTC time as ISO8601 with Z suffix.

    Returns:
        Current UTC time in ISO8601 format with 'Z' suffix.
        Example: "2025-10-29T14:30:00.123456Z"
    """
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def get_date_string(dt: Optional[datetime] = None) -> str:
    """
    Get date string in YYYY-MM-DD format.

    Args:
        dt: Datetime object. If None, uses current local time, since
            "today" for a slip is the sender's calendar day.

    Returns:
        Date string in YYYY-MM-DD format.
    """
    if dt is None:
        dt = datetime.now()

    return dt.strftime("%Y-%m-%d")
