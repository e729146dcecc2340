from __future__ import annotations

import math
import time
from dataclasses import dataclass
from typing import Callable


@dataclass(slots=True)
class RateDecision:
    allowed: bool
    limit: int
    remaining: int
    reset_at: float
    retry_after: int

    def headers(self) -> dict[str, str]:
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(int(math.ceil(self.reset_at))),
        }
        if not self.allowed:
            headers["Retry-After"] = str(self.retry_after)
        return headers


class FixedWindowRateLimiter:
    """Counts requests per client in fixed windows of ``window_seconds``."""

    def __init__(
        self,
        limit: int = 100,
        window_seconds: int = 60,
        clock: Callable[[], float] = time.time,
    ):
        self.limit = limit
        self.window_seconds = window_seconds
        self._clock = clock
        self._windows: dict[str, tuple[int, int]] = {}

    def hit(self, client: str) -> RateDecision:
        now = self._clock()
        window = int(now // self.window_seconds)
        start, count = self._windows.get(client, (window, 0))
        if start != window:
            count = 0
        count += 1
        self._windows[client] = (window, count)
        if len(self._windows) > 10_000:
            self._prune(window)

        reset_at = (window + 1) * self.window_seconds
        return RateDecision(
            allowed=count <= self.limit,
            limit=self.limit,
            remaining=max(0, self.limit - count),
            reset_at=reset_at,
            retry_after=max(1, int(math.ceil(reset_at - now))),
        )

    def _prune(self, current_window: int) -> None:
        for client in [c for c, (w, _) in self._windows.items() if w != current_window]:
            del self._windows[client]
