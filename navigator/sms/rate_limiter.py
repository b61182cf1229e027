"""Per-phone SMS rate limiter with sliding windows.

Phones are never stored in clear: the window key is the SHA-256 of the
normalised number. Two limits apply:
  - general: 10 messages per hour
  - screening_link: 3 links per 24 hours
"""

from __future__ import annotations

import hashlib
import logging
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimit:
    max_requests: int
    window_seconds: float


LIMITS: dict[str, RateLimit] = {
    "general": RateLimit(max_requests=10, window_seconds=3600),
    "screening_link": RateLimit(max_requests=3, window_seconds=86400),
}

SWEEP_INTERVAL_SECONDS = 300


@dataclass
class RateLimitDecision:
    allowed: bool
    remaining: int
    retry_after: int = 0  # seconds


def hash_phone(phone: str) -> str:
    return hashlib.sha256(f"{phone}-ratelimit".encode("utf-8")).hexdigest()


class SmsRateLimiter:
    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._windows: dict[tuple[str, str], deque[float]] = {}
        self._last_sweep = clock()

    def _window(self, key: tuple[str, str], now: float, limit: RateLimit) -> deque[float]:
        window = self._windows.get(key) or deque()
        cutoff = now - limit.window_seconds
        while window and window[0] <= cutoff:
            window.popleft()
        return window

    def _sweep(self, now: float) -> None:
        """Drop windows whose newest entry has aged out, so idle phones do not accumulate."""
        if now - self._last_sweep < SWEEP_INTERVAL_SECONDS:
            return
        self._last_sweep = now
        expired = [
            key
            for key, window in self._windows.items()
            if not window or window[-1] <= now - LIMITS[key[0]].window_seconds
        ]
        for key in expired:
            del self._windows[key]
        if expired:
            logger.debug("SMS rate limiter evicted %d idle windows", len(expired))

    def consume(self, phone: str, kind: str = "general") -> RateLimitDecision:
        """Record one message for `phone` if the limit allows it."""
        limit = LIMITS[kind]
        now = self._clock()
        self._sweep(now)
        key = (kind, hash_phone(phone))
        window = self._window(key, now, limit)

        if len(window) >= limit.max_requests:
            retry_after = int(window[0] + limit.window_seconds - now) + 1
            logger.warning("SMS rate limit hit kind=%s retry_after=%ds", kind, retry_after)
            return RateLimitDecision(allowed=False, remaining=0, retry_after=retry_after)

        window.append(now)
        self._windows[key] = window
        return RateLimitDecision(allowed=True, remaining=limit.max_requests - len(window))

    def reset(self, phone: str | None = None) -> None:
        if phone is None:
            self._windows.clear()
            return
        digest = hash_phone(phone)
        for key in [k for k in self._windows if k[1] == digest]:
            del self._windows[key]


sms_rate_limiter = SmsRateLimiter()
