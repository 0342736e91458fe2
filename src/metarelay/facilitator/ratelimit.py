"""
Rate Limiter

Fixed-window request caps per key. A window opens on the first hit of a key
and lasts ``window_seconds``; at most ``limit`` hits are accepted inside it.
Windows of different keys are independent.
"""

import time
from dataclasses import dataclass
from typing import Callable, Dict

from pydantic import BaseModel, Field

from ..engine.exceptions import RateLimited


class RateLimitStatus(BaseModel):
    """Represents the outcome of a rate limit check."""

    allowed: bool = Field(
        description="Whether the request is permitted under the configured quota",
    )
    limit: int = Field(
        description="Maximum number of requests allowed within the window",
        ge=0,
    )
    remaining: int = Field(
        description="Number of requests still available before hitting the limit",
        ge=0,
    )
    retry_after_seconds: float = Field(
        description="Seconds until the window resets if the request was blocked",
        ge=0,
    )


@dataclass
class _Window:
    started_at: float
    count: int = 0


class FixedWindowRateLimiter:
    """
    Per-key fixed-window counter.

    Args:
        limit: Hits accepted per window.
        window_seconds: Window length.
        clock: Monotonic clock, injectable for tests.
        sweep_every: Expired windows are dropped every ``sweep_every`` hits.
    """

    def __init__(
        self,
        limit: int,
        window_seconds: float,
        *,
        clock: Callable[[], float] = time.monotonic,
        sweep_every: int = 1024,
    ):
        if limit <= 0:
            raise ValueError("limit must be positive")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        self.limit = limit
        self.window_seconds = window_seconds
        self._clock = clock
        self._sweep_every = sweep_every
        self._windows: Dict[str, _Window] = {}
        self._hits_since_sweep = 0

    def _current(self, key: str, now: float) -> _Window:
        window = self._windows.get(key)
        if window is None or now - window.started_at >= self.window_seconds:
            window = _Window(started_at=now)
            self._windows[key] = window
        return window

    def _retry_after(self, window: _Window, now: float) -> float:
        return max(self.window_seconds - (now - window.started_at), 1e-3)

    def hit(self, key: str) -> RateLimitStatus:
        """
        Count one request for ``key``.

        Raises:
            RateLimited: When the window is exhausted. ``retry_after`` is the
                time left in the current window.
        """
        now = self._clock()
        self._maybe_sweep(now)
        window = self._current(key, now)
        if window.count >= self.limit:
            retry_after = self._retry_after(window, now)
            raise RateLimited(
                "Rate limit exceeded",
                retry_after=retry_after,
                details={"limit": self.limit},
            )
        window.count += 1
        return RateLimitStatus(
            allowed=True,
            limit=self.limit,
            remaining=self.limit - window.count,
            retry_after_seconds=0,
        )

    def peek(self, key: str) -> RateLimitStatus:
        """Report the state of ``key`` without counting a hit."""
        now = self._clock()
        window = self._windows.get(key)
        if window is None or now - window.started_at >= self.window_seconds:
            return RateLimitStatus(allowed=True, limit=self.limit, remaining=self.limit, retry_after_seconds=0)
        allowed = window.count < self.limit
        return RateLimitStatus(
            allowed=allowed,
            limit=self.limit,
            remaining=max(0, self.limit - window.count),
            retry_after_seconds=0 if allowed else self._retry_after(window, now),
        )

    def sweep(self) -> int:
        """Drop expired windows. Returns how many were removed."""
        return self._sweep(self._clock())

    def _maybe_sweep(self, now: float) -> None:
        self._hits_since_sweep += 1
        if self._hits_since_sweep >= self._sweep_every:
            self._sweep(now)

    def _sweep(self, now: float) -> int:
        self._hits_since_sweep = 0
        expired = [k for k, w in self._windows.items() if now - w.started_at >= self.window_seconds]
        for key in expired:
            del self._windows[key]
        return len(expired)

    def clear(self) -> None:
        self._windows.clear()
        self._hits_since_sweep = 0

    def __len__(self) -> int:
        return len(self._windows)
