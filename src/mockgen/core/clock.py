"""Time helpers.

All persisted timestamps are naive UTC datetimes so they compare the same way on
PostgreSQL ``timestamp without time zone`` columns and on SQLite.
"""

import time
from datetime import datetime, timezone
from typing import Callable

Clock = Callable[[], datetime]
MonotonicClock = Callable[[], float]


def utcnow() -> datetime:
    """Current UTC time as a naive datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def monotonic() -> float:
    return time.monotonic()
