"""Per-client fixed-window request limiting."""
from __future__ import annotations

import math
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional


@dataclass
class _Window:
    count: int
    reset_at: float


class RateLimiter:
    """Allows ``limit`` requests per client per ``window_seconds``.

    Expired windows are dropped at most once per window length, so the table only
    holds clients seen during the last window or so.
    """

    def __init__(self, limit: int, window_seconds: float, clock: Callable[[], float] = time.monotonic) -> None:
        self.limit = limit
        self.window_seconds = window_seconds
        self._clock = clock
        self._windows: Dict[str, _Window] = {}
        self._next_sweep = clock() + window_seconds

    def __len__(self) -> int:
        return len(self._windows)

    def _sweep(self, now: float) -> None:
        if now < self._next_sweep:
            return
        self._windows = {client: window for client, window in self._windows.items() if window.reset_at >= now}
        self._next_sweep = now + self.window_seconds

    def check(self, client: str) -> Optional[int]:
        """Count one request; return the seconds until reset when the client is over its limit."""
        now = self._clock()
        self._sweep(now)
        window = self._windows.get(client)
        if window is None or now > window.reset_at:
            self._windows[client] = _Window(count=1, reset_at=now + self.window_seconds)
            return None
        if window.count >= self.limit:
            return max(1, math.ceil(window.reset_at - now))
        window.count += 1
        return None

    def reset(self) -> None:
        self._windows.clear()
