"""Naive-UTC time helpers shared by the security components.

All timestamps are stored as naive UTC datetimes so they compare the same way
on every SQL backend.
"""

import math
from datetime import datetime, timedelta, timezone
from typing import Callable

EPOCH = datetime(1970, 1, 1)

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def epoch_seconds(dt: datetime) -> int:
    return int((dt - EPOCH).total_seconds())


def window_start(now: datetime, window_seconds: int) -> datetime:
    """Start of the fixed window containing ``now``: floor(now / w) * w."""
    ts = epoch_seconds(now)
    return EPOCH + timedelta(seconds=ts - ts % window_seconds)


def seconds_until(moment: datetime, now: datetime) -> int:
    """Whole seconds from ``now`` to ``moment``, rounded up, never below 1."""
    return max(1, math.ceil((moment - now).total_seconds()))
