"""
Wall-clock helpers.

Persisted documents and scheduler bookkeeping use integer epoch
milliseconds, matching the legacy on-disk format.
"""

import time
from typing import Callable

Clock = Callable[[], int]


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)
