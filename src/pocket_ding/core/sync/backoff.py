"""Capped exponential backoff tracked per key."""

import threading
import time
from collections.abc import Callable

from loguru import logger

from pocket_ding.config import MAX_BACKOFF

# First delay after a failure, in seconds.
INITIAL_BACKOFF: float = 30.0

_MAX_DOUBLINGS = 32


class Backoff:
    """Remember failures per key and when each key may be tried again.

    The delay doubles with every consecutive failure up to ``cap``. A server
    ``retry_after`` hint is honored when it asks for longer.
    """

    def __init__(
        self,
        *,
        initial: float = INITIAL_BACKOFF,
        cap: float = MAX_BACKOFF,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.initial = initial
        self.cap = cap
        self._clock = clock
        self._lock = threading.Lock()
        self._failures: dict[str, int] = {}
        self._not_before: dict[str, float] = {}

    def failure(self, key: str, retry_after: float | None = None) -> float:
        """Record a failure and return the delay before ``key`` is ready again."""
        with self._lock:
            count = self._failures.get(key, 0) + 1
            self._failures[key] = count
            # Exponent is bounded so long failure streaks cannot overflow.
            delay = min(self.initial * 2 ** min(count - 1, _MAX_DOUBLINGS), self.cap)
            if retry_after is not None:
                delay = max(delay, retry_after)
            self._not_before[key] = self._clock() + delay
        logger.debug("Backing off {} for {:.0f}s (failure {})", key, delay, count)
        return delay

    def success(self, key: str) -> None:
        with self._lock:
            self._failures.pop(key, None)
            self._not_before.pop(key, None)

    def ready(self, key: str) -> bool:
        return self.remaining(key) <= 0

    def remaining(self, key: str) -> float:
        """Seconds until ``key`` may be tried again; 0 when ready."""
        with self._lock:
            not_before = self._not_before.get(key)
        if not_before is None:
            return 0.0
        return max(not_before - self._clock(), 0.0)

    def failures(self, key: str) -> int:
        with self._lock:
            return self._failures.get(key, 0)
