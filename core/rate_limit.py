"""Token bucket rate limiting for bridge commands."""

import threading
import time
from collections.abc import Callable

from core.errors import ConfigError


class TokenBucket:
    """Thread-safe token bucket.

    Allows bursts up to capacity, then one token every 1/rate seconds.
    The lock is the only synchronisation point between dispatch workers.
    """

    def __init__(self, rate: float, capacity: int, clock: Callable[[], float] = time.monotonic):
        if rate <= 0:
            raise ConfigError(f"Token bucket rate must be positive, got {rate}")
        if capacity < 1:
            raise ConfigError(f"Token bucket capacity must be at least 1, got {capacity}")
        self.rate = rate
        self.capacity = capacity
        self._clock = clock
        self._tokens = float(capacity)
        self._last_refill = clock()
        self._lock = threading.Lock()

    def _refill(self):
        now = self._clock()
        elapsed = max(0.0, now - self._last_refill)
        self._tokens = min(self.capacity, self._tokens + elapsed * self.rate)
        self._last_refill = now

    @property
    def available(self) -> float:
        with self._lock:
            self._refill()
            return self._tokens

    def delay(self, tokens: int = 1) -> float:
        """Seconds until tokens could be taken, 0.0 if available now."""
        with self._lock:
            self._refill()
            missing = tokens - self._tokens
            return max(0.0, missing / self.rate)

    def try_acquire(self, tokens: int = 1) -> bool:
        """Take tokens if available without waiting."""
        with self._lock:
            self._refill()
            if self._tokens >= tokens:
                self._tokens -= tokens
                return True
            return False

    def acquire(self, tokens: int = 1, timeout: float | None = None,
                cancel: threading.Event | None = None) -> bool:
        """Take tokens, waiting for the bucket to refill if needed.

        Args:
            tokens: Number of tokens to take
            timeout: Maximum seconds to wait (None waits indefinitely)
            cancel: Event that aborts the wait when set

        Returns:
            True once the tokens were taken, False on timeout or cancel
        """
        if tokens > self.capacity:
            raise ValueError(f"Cannot take {tokens} tokens from a bucket of {self.capacity}")

        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            with self._lock:
                self._refill()
                if self._tokens >= tokens:
                    self._tokens -= tokens
                    return True
                wait = (tokens - self._tokens) / self.rate

            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                wait = min(wait, remaining)

            if cancel is not None:
                if cancel.wait(wait):
                    return False
            else:
                time.sleep(wait)
