"""Request limiter for public booking endpoints.

With Redis each key is a fixed-window counter shared by every worker; without
it a sliding window is kept per process.
"""
from __future__ import annotations

import logging
import threading
import time

import redis

logger = logging.getLogger(__name__)

RATE_LIMIT_PREFIX = "ratelimit"
CLEANUP_INTERVAL_SECONDS = 60


class RateLimiter:
    def __init__(self, clock=time.monotonic) -> None:
        self._clock = clock
        self._hits: dict[str, tuple[float, list[float]]] = {}
        self._lock = threading.Lock()
        self._last_cleanup = clock()
        self._redis = None

    def use_redis(self, client) -> None:
        self._redis = client

    def hit(self, key: str, limit: int, window_seconds: float) -> bool:
        """Record a request; False once ``limit`` requests fell inside the window."""
        if self._redis is not None:
            return self._hit_redis(key, limit, window_seconds)

        now = self._clock()
        with self._lock:
            self._cleanup(now)
            _, stamps = self._hits.get(key, (window_seconds, []))
            recent = [stamp for stamp in stamps if now - stamp < window_seconds]
            if len(recent) >= limit:
                self._hits[key] = (window_seconds, recent)
                return False
            recent.append(now)
            self._hits[key] = (window_seconds, recent)
            return True

    def _hit_redis(self, key: str, limit: int, window_seconds: float) -> bool:
        redis_key = f"{RATE_LIMIT_PREFIX}:{key}"
        try:
            count = self._redis.incr(redis_key)
            if count == 1:
                self._redis.expire(redis_key, max(1, int(window_seconds)))
        except redis.RedisError as exc:
            # Fail open while Redis is unreachable.
            logger.warning("Rate limit check for %s skipped: %s", key, exc)
            return True
        return count <= limit

    def _cleanup(self, now: float) -> None:
        if now - self._last_cleanup < CLEANUP_INTERVAL_SECONDS:
            return
        self._last_cleanup = now
        stale = [
            key
            for key, (window_seconds, stamps) in self._hits.items()
            if not stamps or now - stamps[-1] >= window_seconds
        ]
        for key in stale:
            del self._hits[key]
        if stale:
            logger.debug("Dropped %d idle rate limit keys", len(stale))

    def tracked_keys(self) -> int:
        with self._lock:
            return len(self._hits)

    def reset(self) -> None:
        with self._lock:
            self._hits.clear()


rate_limiter = RateLimiter()
