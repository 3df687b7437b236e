"""Per-process fixed-window rate limiting.

A window opens on the first request for a ``(group, client)`` pair and lasts
``window_ms``; the counter resets only once that duration has elapsed. State
lives in an explicitly owned :class:`RateLimitStore` so each application (and
each test) gets its own counters.
"""

from __future__ import annotations

import math
import time
from dataclasses import dataclass
from typing import Callable, Dict, Tuple

from .config import ServerConfig

WindowKey = Tuple[str, str]


@dataclass
class RateWindow:
    started_at: float
    count: int = 0


class RateLimitStore:
    def __init__(self, prune_threshold: int = 10_000):
        self.prune_threshold = prune_threshold
        self._windows: Dict[WindowKey, RateWindow] = {}

    def get(self, key: WindowKey) -> RateWindow | None:
        return self._windows.get(key)

    def put(self, key: WindowKey, window: RateWindow) -> None:
        self._windows[key] = window

    def prune(self, now: float, window_s: float) -> None:
        expired = [
            key
            for key, window in self._windows.items()
            if now - window.started_at >= window_s
        ]
        for key in expired:
            del self._windows[key]

    def __len__(self) -> int:
        return len(self._windows)


@dataclass
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    reset_after_s: float

    def headers(self) -> dict[str, str]:
        reset = str(max(0, math.ceil(self.reset_after_s)))
        headers = {
            "RateLimit-Limit": str(self.limit),
            "RateLimit-Remaining": str(self.remaining),
            "RateLimit-Reset": reset,
        }
        if not self.allowed:
            headers["Retry-After"] = reset
        return headers


class FixedWindowRateLimiter:
    def __init__(
        self,
        window_ms: int,
        max_requests: int,
        store: RateLimitStore | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.window_s = window_ms / 1000
        self.max_requests = max_requests
        self.store = store if store is not None else RateLimitStore()
        self.clock = clock

    @classmethod
    def from_config(
        cls, cfg: ServerConfig, store: RateLimitStore | None = None
    ) -> "FixedWindowRateLimiter":
        return cls(cfg.rate_limit_window_ms, cfg.rate_limit_max, store=store)

    def hit(self, group: str, client_key: str) -> RateLimitDecision:
        """Count one request and decide whether it may proceed."""

        now = self.clock()
        key = (group, client_key)
        window = self.store.get(key)
        if window is None or now - window.started_at >= self.window_s:
            if len(self.store) >= self.store.prune_threshold:
                self.store.prune(now, self.window_s)
            window = RateWindow(started_at=now)
            self.store.put(key, window)

        window.count += 1
        return RateLimitDecision(
            allowed=window.count <= self.max_requests,
            limit=self.max_requests,
            remaining=max(0, self.max_requests - window.count),
            reset_after_s=self.window_s - (now - window.started_at),
        )
