"""
Time source

Timestamps are stored as naive UTC. Services take a ``Clock`` so tests can move
time forward without sleeping.
"""
from datetime import datetime, timezone
from typing import Callable

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    """Current time as naive UTC, matching the DateTime columns"""
    return datetime.now(timezone.utc).replace(tzinfo=None)
