"""Datetime utilities for consistent UTC handling."""
from datetime import datetime, timedelta, timezone


def utcnow() -> datetime:
    """
    Get current UTC time as a naive datetime.

    Every DateTime column in the schema is naive and holds UTC, so values
    produced here compare directly with values read back from the database.

    Returns:
        datetime: Current UTC time without tzinfo
    """
    return datetime.now(timezone.utc).replace(tzinfo=None)


def window_start(now: datetime, duration_seconds: int) -> datetime:
    """Start of the epoch-aligned window of `duration_seconds` that contains `now`."""
    epoch = datetime(1970, 1, 1)
    elapsed = int((now - epoch).total_seconds())
    return epoch + timedelta(seconds=(elapsed // duration_seconds) * duration_seconds)
