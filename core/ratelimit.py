"""
core/ratelimit.py -- Fixed-window ("reset on expiry") request counters.

Built on the `limits` package (the engine under slowapi):
  FixedWindowRateLimiter  the window starts at the first hit for a key and
                          expires window_ms later; hit() increments, then
                          allows while count <= limit.
  storage                 limits' MemoryStorage (process-local, expires keys
                          itself) or RedisStorage when REDIS_URL is set, so
                          counters are shared across workers.

Each (limit, window) pair is a RateLimitItemPerSecond; its key includes the
identifier, so the same identifier under two policies never collides.

Availability beats strictness: any storage error makes check() fail open
(log and allow). get_status() degrades to a full allowance the same way.

Layer rule: no imports from api/ or auth/.
"""

from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass

from limits import RateLimitItemPerSecond
from limits.storage import MemoryStorage, Storage, storage_from_string
from limits.strategies import FixedWindowRateLimiter

logger = logging.getLogger("portcullis.ratelimit")


@dataclass(frozen=True)
class RateLimitStatus:
    limit: int
    remaining: int
    reset_at: int  # epoch milliseconds

    def headers(self) -> dict[str, str]:
        """Standard X-RateLimit-* response headers. Reset is unix seconds, rounded up."""
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(math.ceil(self.reset_at / 1000)),
        }


def rate_limit_item(limit: int, window_ms: int) -> RateLimitItemPerSecond:
    """`limit` hits per window; limits counts whole seconds, so the window is rounded up."""
    return RateLimitItemPerSecond(limit, max(1, math.ceil(window_ms / 1000)))


class RateLimiter:
    """Counts requests per identifier against a limits storage.

    Usage:
        limiter = RateLimiter(MemoryStorage())
        if not limiter.check(f"signup:{ip}", limit=5, window_ms=60_000):
            raise RateLimitError()
    """

    def __init__(self, storage: Storage) -> None:
        self.storage = storage
        self._strategy = FixedWindowRateLimiter(storage)

    def check(self, identifier: str, limit: int, window_ms: int) -> bool:
        """Record one request and return True if it is within the limit."""
        try:
            return self._strategy.hit(rate_limit_item(limit, window_ms), identifier)
        except Exception:
            logger.exception("Rate limit storage failed for %r; allowing request", identifier)
            return True

    def get_status(self, identifier: str, limit: int, window_ms: int) -> RateLimitStatus:
        """Return remaining allowance and window reset time without counting a request."""
        now_ms = int(time.time() * 1000)
        try:
            stats = self._strategy.get_window_stats(rate_limit_item(limit, window_ms), identifier)
        except Exception:
            logger.exception("Rate limit storage failed reading status for %r", identifier)
            return RateLimitStatus(limit=limit, remaining=limit, reset_at=now_ms + window_ms)
        if stats.remaining >= limit:
            # No open window: the next hit would start one now.
            return RateLimitStatus(limit=limit, remaining=limit, reset_at=now_ms + window_ms)
        return RateLimitStatus(limit=limit, remaining=stats.remaining, reset_at=int(stats.reset_time * 1000))

    def reset(self, identifier: str, limit: int, window_ms: int) -> None:
        """Clear the counter, e.g. after a multi-step flow completes successfully."""
        try:
            self._strategy.clear(rate_limit_item(limit, window_ms), identifier)
        except Exception:
            logger.exception("Rate limit storage failed clearing %r", identifier)


def build_rate_limit_storage(redis_url: str) -> Storage:
    """Return Redis storage when redis_url is set and reachable, else memory storage."""
    if not redis_url:
        logger.info("No REDIS_URL configured, using in-memory rate limiting")
        return MemoryStorage()
    storage = storage_from_string(redis_url)
    if not storage.check():
        logger.warning("Redis unavailable for rate limiting, using in-memory storage")
        return MemoryStorage()
    logger.info("Rate limiting configured with Redis")
    return storage
