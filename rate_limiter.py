"""In-process sliding-window rate limiting."""

from __future__ import annotations

import asyncio
import math
import os
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, Optional


@dataclass
class RateLimitResult:
    success: bool
    limit: int
    remaining: int
    reset: float  # epoch seconds at which a slot frees up

    def retry_after(self, now: float) -> int:
        return max(1, math.ceil(self.reset - now))


class SlidingWindowRateLimiter:
    """At most ``limit`` hits per identifier in any ``window_s`` window.

    Rejected attempts do not consume a slot.
    """

    def __init__(self, limit: int, window_s: float, clock: Callable[[], float] = time.time):
        self.limit = limit
        self.window_s = window_s
        self._clock = clock
        self._hits: Dict[str, Deque[float]] = {}
        self._lock = asyncio.Lock()

    async def check(self, identifier: str) -> RateLimitResult:
        async with self._lock:
            now = self._clock()
            hits = self._hits.setdefault(identifier, deque())
            while hits and hits[0] <= now - self.window_s:
                hits.popleft()
            if len(hits) >= self.limit:
                return RateLimitResult(False, self.limit, 0, hits[0] + self.window_s)
            hits.append(now)
            return RateLimitResult(True, self.limit, self.limit - len(hits), hits[0] + self.window_s)

    async def reset(self, identifier: str) -> None:
        async with self._lock:
            self._hits.pop(identifier, None)


def rate_limit_headers(result: RateLimitResult, now: Optional[float] = None) -> Dict[str, str]:
    headers = {
        "X-RateLimit-Limit": str(result.limit),
        "X-RateLimit-Remaining": str(result.remaining),
        "X-RateLimit-Reset": str(int(math.ceil(result.reset))),
    }
    if not result.success:
        headers["Retry-After"] = str(result.retry_after(time.time() if now is None else now))
    return headers


WEBHOOK_RATE_LIMIT = int(os.getenv("WEBHOOK_RATE_LIMIT", "1000"))
API_RATE_LIMIT = int(os.getenv("API_RATE_LIMIT", "100"))
AUTH_RATE_LIMIT = int(os.getenv("AUTH_RATE_LIMIT", "10"))
PLATFORM_RATE_LIMIT = int(os.getenv("PLATFORM_RATE_LIMIT", "30"))


def webhook_rate_limiter() -> SlidingWindowRateLimiter:
    return SlidingWindowRateLimiter(WEBHOOK_RATE_LIMIT, 60)


def api_rate_limiter() -> SlidingWindowRateLimiter:
    return SlidingWindowRateLimiter(API_RATE_LIMIT, 60)


def auth_rate_limiter() -> SlidingWindowRateLimiter:
    return SlidingWindowRateLimiter(AUTH_RATE_LIMIT, 60)


def platform_rate_limiter() -> SlidingWindowRateLimiter:
    return SlidingWindowRateLimiter(PLATFORM_RATE_LIMIT, 60)


__all__ = [
    "RateLimitResult",
    "SlidingWindowRateLimiter",
    "api_rate_limiter",
    "auth_rate_limiter",
    "platform_rate_limiter",
    "rate_limit_headers",
    "webhook_rate_limiter",
]
