# src/celofx_gate/core/clock.py
"""Time utilities shared by the ledger, authenticators and rate limiter."""

import time
from collections.abc import Callable

MillisClock = Callable[[], int]
SecondsClock = Callable[[], int]


def now_ms() -> int:
    """Return the current epoch time in milliseconds."""
    return int(time.time() * 1000)


def now_seconds() -> int:
    """Return the current epoch time in whole seconds."""
    return int(time.time())
