"""
Time source shared by the resilience components.

Every service takes a ``Clock`` so tests can drive time explicitly.
"""

import math
import time


class Clock:
    """Wall clock in epoch milliseconds."""

    def now_ms(self) -> int:
        return int(time.time() * 1000)

    def now(self) -> float:
        """Current time in epoch seconds."""
        return self.now_ms() / 1000


def seconds_until(target_ms: int, now_ms: int) -> int:
    """Whole seconds from ``now_ms`` until ``target_ms``, rounded up, never negative."""
    return max(0, math.ceil((target_ms - now_ms) / 1000))


system_clock = Clock()
