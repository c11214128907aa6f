"""Per-client sliding-window request limiter for the signing endpoint."""

import time
from collections import deque
from threading import Lock
from typing import Callable, Optional


class SlidingWindowLimiter:
    """Allow at most ``max_requests`` per ``window_seconds`` for each key.

    Args:
        max_requests: Requests admitted per window; 0 disables the limit.
        window_seconds: Rolling window length.
        clock: Returns the current time in seconds; injected for tests.
    """

    def __init__(
        self,
        max_requests: int = 30,
        window_seconds: float = 60.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._hits: dict[str, deque] = {}
        self._lock = Lock()

    def hit(self, key: str) -> Optional[float]:
        """Record a request for *key*.

        Returns ``None`` when admitted, otherwise the seconds until the
        oldest request leaves the window.  Rejected requests are not counted.
        """
        if self.max_requests <= 0:
            return None
        now = self._clock()
        with self._lock:
            window = self._hits.setdefault(key, deque())
            cutoff = now - self.window_seconds
            while window and window[0] <= cutoff:
                window.popleft()
            if len(window) >= self.max_requests:
                return max(0.0, window[0] + self.window_seconds - now)
            window.append(now)
            if len(self._hits) > 10_000:
                self._hits = {k: v for k, v in self._hits.items() if v and v[-1] > cutoff}
            return None
