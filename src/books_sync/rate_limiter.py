"""
Fixed-window rate limiter guarding every outbound API call.

The remote accounting API enforces a hard ceiling (100 calls per minute).
One limiter instance is constructed per process and injected into the API
client; there is no module-level counter.
"""

import threading
import time
from dataclasses import dataclass
from typing import Callable

from books_sync.exceptions import RateLimitError


@dataclass
class RateLimiterStats:
    """Statistics for monitoring rate limiter behavior."""
    requests_made: int = 0
    requests_throttled: int = 0
    requests_rejected: int = 0
    total_wait_time: float = 0.0
    last_request_time: float = 0.0


@dataclass
class RateBudget:
    """Snapshot of the current window."""
    window_start: float
    calls_in_window: int
    limit: int
    window_seconds: float

    def expired(self, now: float) -> bool:
        return now - self.window_start >= self.window_seconds

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.calls_in_window)


class FixedWindowRateLimiter:
    """
    Thread-safe fixed-window limiter.

    How it works:
    - A window opens at the first admission after the previous one expired
    - Each admission increments ``calls_in_window`` under a lock
    - Once ``limit`` is reached, callers either sleep until the window
      rolls over (blocking mode) or get ``RateLimitError`` immediately

    After sleeping, the caller re-checks from scratch: other threads may
    have consumed the fresh window, or more than one window may have
    passed while it slept.

    Example:
        limiter = FixedWindowRateLimiter(limit=100, window_seconds=60)

        with limiter:  # Blocks until the call is admitted
            make_api_request()
    """

    def __init__(
        self,
        limit: int = 100,
        window_seconds: float = 60.0,
        blocking: bool = True,
        max_wait: float | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize rate limiter.

        Args:
            limit: Max calls admitted per window
            window_seconds: Window length
            blocking: Sleep until admitted (True) or fail fast (False)
            max_wait: In blocking mode, give up after this many seconds
            clock: Monotonic time source (injectable for tests)
            sleep: Sleep function (injectable for tests)
        """
        if limit <= 0:
            raise ValueError("limit must be positive")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")

        self.blocking = blocking
        self.max_wait = max_wait
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._budget = RateBudget(
            window_start=clock(),
            calls_in_window=0,
            limit=limit,
            window_seconds=window_seconds,
        )

        self.stats = RateLimiterStats()

    @property
    def limit(self) -> int:
        return self._budget.limit

    @property
    def window_seconds(self) -> float:
        return self._budget.window_seconds

    def _roll_window(self, now: float) -> None:
        """Open a new window if the current one expired. Must hold lock."""
        if self._budget.expired(now):
            self._budget.window_start = now
            self._budget.calls_in_window = 0

    def admit(self, timeout: float | None = None) -> float:
        """
        Admit one call, blocking or failing per configuration.

        Args:
            timeout: Max seconds to wait (overrides ``max_wait``)

        Returns:
            Seconds spent waiting before admission

        Raises:
            RateLimitError: Non-blocking mode with an exhausted window, or
                the wait deadline passed
        """
        limit_wait = timeout if timeout is not None else self.max_wait
        deadline = None if limit_wait is None else self._clock() + limit_wait
        waited = 0.0

        while True:
            with self._lock:
                now = self._clock()
                self._roll_window(now)

                if self._budget.calls_in_window < self._budget.limit:
                    self._budget.calls_in_window += 1
                    self.stats.requests_made += 1
                    self.stats.last_request_time = time.time()
                    return waited

                wait_time = (
                    self._budget.window_start + self._budget.window_seconds - now
                )

                if not self.blocking:
                    self.stats.requests_rejected += 1
                    raise RateLimitError(
                        f"Rate limit of {self._budget.limit} calls per "
                        f"{self._budget.window_seconds:g}s reached",
                        retry_after=wait_time,
                    )

                if deadline is not None:
                    remaining = deadline - now
                    if remaining <= 0:
                        self.stats.requests_rejected += 1
                        raise RateLimitError(
                            "Timed out waiting for rate limit window",
                            retry_after=wait_time,
                        )
                    wait_time = min(wait_time, remaining)

            # Wait outside the lock
            self.stats.requests_throttled += 1
            self.stats.total_wait_time += wait_time
            waited += wait_time
            self._sleep(wait_time)

    def __enter__(self) -> "FixedWindowRateLimiter":
        """Context manager that admits one call."""
        self.admit()
        return self

    def __exit__(self, *args) -> None:
        pass

    def budget(self) -> RateBudget:
        """Copy of the current window state."""
        with self._lock:
            self._roll_window(self._clock())
            return RateBudget(
                window_start=self._budget.window_start,
                calls_in_window=self._budget.calls_in_window,
                limit=self._budget.limit,
                window_seconds=self._budget.window_seconds,
            )

    @property
    def remaining(self) -> int:
        """Calls still available in the current window."""
        return self.budget().remaining

    def seconds_until_reset(self) -> float:
        with self._lock:
            now = self._clock()
            self._roll_window(now)
            return max(0.0, self._budget.window_start + self._budget.window_seconds - now)

    def reset(self) -> None:
        """Start a fresh window (for tests and reconnection)."""
        with self._lock:
            self._budget.window_start = self._clock()
            self._budget.calls_in_window = 0

    def get_stats(self) -> dict:
        """Get rate limiter statistics for monitoring."""
        budget = self.budget()
        return {
            "requests_made": self.stats.requests_made,
            "requests_throttled": self.stats.requests_throttled,
            "requests_rejected": self.stats.requests_rejected,
            "total_wait_time_seconds": round(self.stats.total_wait_time, 2),
            "calls_in_window": budget.calls_in_window,
            "limit": budget.limit,
            "window_seconds": budget.window_seconds,
        }
