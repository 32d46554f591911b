# PATH: core/time.py
"""
Clock helpers.

Stateful components (risk gate, pool caches, price feed, nonce manager)
take a Clock, a zero-argument callable returning a Unix timestamp, so
tests can drive them with a fake clock.
"""

import time
from datetime import date, datetime
from typing import Callable

Clock = Callable[[], float]

SECONDS_PER_HOUR = 3600


def now_timestamp() -> float:
    return time.time()


def local_day(timestamp: float) -> date:
    """Calendar day in the host's local timezone; daily risk limits roll over at local midnight."""
    return datetime.fromtimestamp(timestamp).date()
