"""
UTC Time Utilities
"""

from datetime import datetime

from config.settings import UTC


def get_current_utc() -> datetime:
    """Return the current datetime in UTC."""
    return datetime.now(tz=UTC)


def utc_timestamp() -> str:
    """ISO-8601 UTC timestamp with millisecond precision, for alert payloads."""
    return get_current_utc().isoformat(timespec="milliseconds")
