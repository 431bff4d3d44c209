"""Wall clock helpers, all protocol timestamps are milliseconds since epoch."""

from __future__ import annotations

import time
from collections.abc import Callable

Clock = Callable[[], int]
"""Returns the current time in milliseconds since epoch."""


def now_ms() -> int:
    """Return the current wall clock time in milliseconds since epoch."""
    return time.time_ns() // 1_000_000
