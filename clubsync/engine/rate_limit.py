"""
Fixed-window rate limiter for outbound traffic.

Guards channel emissions and network requests per action key (for example
`room:R1:react` or `api:PUT:R1`) so that a runaway retry loop cannot flood
the server. Purely local; the server enforces its own limits.
"""
import time
from typing import Callable, Dict, Tuple


class RateLimiter:
    """Per-key `{count, window_start}` counters."""

    def __init__(
        self,
        max_actions: int = 30,
        window_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_actions = max_actions
        self.window_seconds = window_seconds
        self._clock = clock
        # Store: {key: (count, window_start)}
        self._windows: Dict[str, Tuple[int, float]] = {}

    def __len__(self) -> int:
        """Number of keys with a window still open."""
        return len(self._windows)

    def _prune(self, now: float) -> None:
        expired = [
            key for key, (_, window_start) in self._windows.items()
            if now - window_start >= self.window_seconds
        ]
        for key in expired:
            del self._windows[key]

    def _current(self, key: str) -> Tuple[int, float]:
        now = self._clock()
        count, window_start = self._windows.get(key, (0, now))
        if now - window_start >= self.window_seconds:
            count, window_start = 0, now
        return count, window_start

    def allow(self, key: str) -> bool:
        """Count one action for `key`; False once the window's maximum is exceeded."""
        self._prune(self._clock())
        count, window_start = self._current(key)
        count += 1
        self._windows[key] = (count, window_start)
        return count <= self.max_actions

    def remaining(self, key: str) -> int:
        count, _ = self._current(key)
        return max(self.max_actions - count, 0)

    def reset(self, key: str) -> None:
        self._windows.pop(key, None)
