"""Per-origin rate limiting for provider requests.

Fixed time windows per (origin, category). Three independent limiters exist
so a burst of transaction requests cannot starve plain queries and vice versa.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable

from wallet_broker.config import RateLimitConfig

CONNECTION = "connection"
TRANSACTION = "transaction"
GENERAL = "general"


@dataclass
class WindowState:
    """Counter for one origin inside the current window."""

    count: int
    window_start: float


class RateLimiter:
    """Fixed-window counter keyed by origin."""

    def __init__(
        self,
        max_requests: int,
        window_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._windows: dict[str, WindowState] = {}

    def _current(self, origin: str) -> WindowState | None:
        state = self._windows.get(origin)
        if state is None:
            return None
        if self._clock() - state.window_start >= self.window_seconds:
            del self._windows[origin]
            return None
        return state

    def is_allowed(self, origin: str) -> bool:
        """Count this call and return True if it fits in the origin's window."""
        state = self._current(origin)
        if state is None:
            self._windows[origin] = WindowState(count=1, window_start=self._clock())
            return True
        if state.count >= self.max_requests:
            return False
        state.count += 1
        return True

    def get_reset_time(self, origin: str) -> int:
        """Milliseconds until the origin's window resets (0 if no window is open)."""
        state = self._current(origin)
        if state is None:
            return 0
        remaining = self.window_seconds - (self._clock() - state.window_start)
        return max(0, int(remaining * 1000))

    def get_remaining_requests(self, origin: str) -> int:
        state = self._current(origin)
        if state is None:
            return self.max_requests
        return max(0, self.max_requests - state.count)

    def prune(self) -> int:
        """Drop every elapsed window. Returns how many were removed."""
        now = self._clock()
        expired = [
            origin
            for origin, state in self._windows.items()
            if now - state.window_start >= self.window_seconds
        ]
        for origin in expired:
            del self._windows[origin]
        return len(expired)

    def reset(self, origin: str) -> None:
        self._windows.pop(origin, None)

    def reset_all(self) -> None:
        self._windows.clear()


class RateLimiters:
    """Process-wide set of the three category limiters."""

    _instance: RateLimiters | None = None

    def __init__(
        self,
        config: RateLimitConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        config = config or RateLimitConfig()
        self.connection = RateLimiter(
            config.connection.max_requests, config.connection.window_seconds, clock
        )
        self.transaction = RateLimiter(
            config.transaction.max_requests, config.transaction.window_seconds, clock
        )
        self.general = RateLimiter(
            config.general.max_requests, config.general.window_seconds, clock
        )

    @classmethod
    def get(cls) -> RateLimiters:
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    @classmethod
    def configure(
        cls,
        config: RateLimitConfig,
        clock: Callable[[], float] = time.monotonic,
    ) -> RateLimiters:
        """Replace the process-wide instance with one built from *config*."""
        cls._instance = cls(config, clock)
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        cls._instance = None

    def for_category(self, category: str) -> RateLimiter:
        if category == CONNECTION:
            return self.connection
        if category == TRANSACTION:
            return self.transaction
        return self.general

    def prune(self) -> int:
        return sum(
            limiter.prune() for limiter in (self.connection, self.transaction, self.general)
        )

    def reset_all(self) -> None:
        for limiter in (self.connection, self.transaction, self.general):
            limiter.reset_all()
