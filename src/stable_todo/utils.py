from __future__ import annotations

import time
from datetime import datetime, timedelta, timezone

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


# PUBLIC_INTERFACE
def now_nanos() -> int:
    """Return the platform time as nanoseconds since the Unix epoch."""
    return time.time_ns()


# PUBLIC_INTERFACE
def datetime_to_nanos(value: datetime) -> int:
    """
    Convert a datetime to nanoseconds since the Unix epoch.

    Naive datetimes are taken as UTC. Instants before the epoch are rejected
    because timestamps are stored unsigned.
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    delta = value - _EPOCH
    if delta < timedelta(0):
        raise ValueError("timestamps before 1970-01-01 are not supported")
    return (delta // timedelta(microseconds=1)) * 1000
