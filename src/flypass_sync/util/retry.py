from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar


logger = logging.getLogger(__name__)
T = TypeVar("T")


class RetryExhaustedError(RuntimeError):
    """
    Raised when every attempt allowed by a `RetryPolicy` failed. The last failure is chained as `__cause__`.
    """

    def __init__(self, op: str, attempts: int, last_exc: BaseException) -> None:
        super().__init__(f"{op} failed after {attempts} attempts: {last_exc}")
        self.op = op
        self.attempts = attempts
        self.last_exc = last_exc


@dataclass(frozen=True)
class RetryPolicy:
    """
    Bounded retry: at most `max_attempts` calls, sleeping `delay_seconds * backoff ** (n - 1)` between them
    (capped by `max_delay_seconds`). `backoff=1.0` gives a fixed delay.
    """

    max_attempts: int = 5
    delay_seconds: float = 1.0
    backoff: float = 1.0
    max_delay_seconds: float = 30.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("RetryPolicy.max_attempts must be >= 1")
        if self.delay_seconds < 0:
            raise ValueError("RetryPolicy.delay_seconds must be >= 0")
        if self.backoff < 1.0:
            raise ValueError("RetryPolicy.backoff must be >= 1.0")

    def delay_for(self, attempt: int) -> float:
        return min(self.delay_seconds * (self.backoff ** (attempt - 1)), self.max_delay_seconds)

    def call(
        self,
        fn: Callable[[], T],
        *,
        op: str = "operation",
        retry_on: tuple[type[BaseException], ...] = (Exception,),
        sleep: Optional[Callable[[float], None]] = None,
    ) -> T:
        """
        Call `fn` until it returns. Exceptions outside `retry_on` propagate immediately.
        """
        sleeper = sleep or time.sleep
        last_exc: Optional[BaseException] = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                return fn()
            except retry_on as e:
                last_exc = e
                if attempt >= self.max_attempts:
                    break
                delay = self.delay_for(attempt)
                logger.info(
                    "%s failed (attempt %d/%d); retrying in %.2fs. (%s)",
                    op,
                    attempt,
                    self.max_attempts,
                    delay,
                    e,
                )
                sleeper(delay)

        assert last_exc is not None
        raise RetryExhaustedError(op, self.max_attempts, last_exc) from last_exc
