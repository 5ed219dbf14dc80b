from __future__ import annotations

import time
from typing import Callable, Optional


class RunDeadlineExceeded(TimeoutError):
    """
    The run-level deadline expired; raised before the next portal step starts.
    """


class Deadline:
    """
    Wall-clock budget for one run. `seconds=None` (or <= 0) means unbounded.
    """

    def __init__(self, seconds: Optional[float] = None, *, clock: Optional[Callable[[], float]] = None) -> None:
        self._clock = clock or time.monotonic
        self._expires_at = None if not seconds or seconds <= 0 else self._clock() + float(seconds)

    @property
    def bounded(self) -> bool:
        return self._expires_at is not None

    def remaining(self) -> Optional[float]:
        if self._expires_at is None:
            return None
        return max(0.0, self._expires_at - self._clock())

    def expired(self) -> bool:
        rem = self.remaining()
        return rem is not None and rem <= 0

    def check(self, step: str) -> None:
        if self.expired():
            raise RunDeadlineExceeded(f"Run deadline exceeded before step {step!r}")

    def clamp_ms(self, timeout_ms: int) -> int:
        """
        Shrink a per-operation timeout so it never outlives the run deadline (minimum 1ms).
        """
        rem = self.remaining()
        if rem is None:
            return int(timeout_ms)
        return max(1, min(int(timeout_ms), int(rem * 1000)))
