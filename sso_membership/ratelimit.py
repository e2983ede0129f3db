"""
Leaky bucket rate limiting for outbound API calls.

Each bucket releases one token every ``per_seconds / rate`` seconds. Callers
that arrive early block until their slot comes up.
"""

import time
import threading
import logging
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class LeakyBucket:
    """
    Blocking leaky bucket limiter.

    Calls to take() are spaced evenly so that no more than ``rate`` tokens are
    released in any ``per_seconds`` window. The limiter is safe to share
    between threads.
    """

    def __init__(self, rate: int, per_seconds: float = 60.0, name: str = 'default',
                 clock: Optional[Callable[[], float]] = None,
                 sleep: Optional[Callable[[float], None]] = None):
        """
        Initialize the bucket.

        Args:
            rate: Number of tokens released per window
            per_seconds: Window length in seconds
            name: Lane name used in log messages
            clock: Monotonic clock, overridable for tests
            sleep: Sleep function, overridable for tests
        """
        if rate <= 0:
            raise ValueError(f"Rate must be positive, got {rate}")
        if per_seconds <= 0:
            raise ValueError(f"Window must be positive, got {per_seconds}")

        self.rate = rate
        self.per_seconds = per_seconds
        self.name = name
        self.interval = per_seconds / rate
        self._clock = clock or time.monotonic
        self._sleep = sleep or time.sleep
        self._lock = threading.Lock()
        self._next_slot = None

    def take(self) -> float:
        """
        Take one token, blocking until it is available.

        Returns:
            Seconds spent waiting
        """
        with self._lock:
            now = self._clock()
            if self._next_slot is None or self._next_slot <= now:
                # Idle bucket, release immediately
                self._next_slot = now + self.interval
                return 0.0

            wait = self._next_slot - now
            self._next_slot += self.interval

        logger.debug(f"Rate limit reached on {self.name} lane, waiting {wait:.3f}s")
        self._sleep(wait)
        return wait

    def reset(self):
        """Forget previous traffic so the next call is released immediately."""
        with self._lock:
            self._next_slot = None
