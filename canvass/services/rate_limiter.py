"""Submission rate limiting.

This module caps the number of submission attempts a caller key may make
in a fixed window. Two backends are provided:

- InMemoryRateLimiter: lock-protected counters for a single process
- RedisRateLimiter: shared counters (INCR + PEXPIRE) for several workers

Both answer the same question with the same result shape, so the
orchestrator receives the limiter as a constructor argument.
"""

import math
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional

import redis

from canvass.config import Settings, get_settings
from canvass.logging_config import get_logger

logger = get_logger(__name__)


class RateLimiterUnavailableError(Exception):
    """Raised when the limiter's storage cannot be reached."""
    pass


@dataclass
class RateLimitResult:
    """Outcome of a single rate limit check.

    Attributes:
        allowed: Whether the attempt may proceed
        limit: Attempts allowed per window
        remaining: Attempts left in the current window
        reset_at_epoch_ms: When the current window ends
        retry_after_seconds: Seconds until the window ends (0 when allowed)
    """
    allowed: bool
    limit: int
    remaining: int
    reset_at_epoch_ms: int
    retry_after_seconds: int = 0

    def headers(self) -> dict[str, str]:
        """Rate limit headers for the HTTP response."""
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(self.reset_at_epoch_ms),
        }
        if not self.allowed:
            headers["Retry-After"] = str(self.retry_after_seconds)
        return headers


def _result(count: int, limit: int, reset_at_ms: int, now_ms: int) -> RateLimitResult:
    """Build a result from the post-increment count of a window."""
    allowed = count <= limit
    retry_after = 0 if allowed else max(1, math.ceil((reset_at_ms - now_ms) / 1000))
    return RateLimitResult(
        allowed=allowed,
        limit=limit,
        remaining=max(0, limit - count),
        reset_at_epoch_ms=reset_at_ms,
        retry_after_seconds=retry_after,
    )


class InMemoryRateLimiter:
    """Fixed-window limiter backed by a process-local dictionary.

    Usage:
        limiter = InMemoryRateLimiter(max_attempts=50, window_seconds=900)
        result = limiter.check_limit("ip:10.0.0.1")
        if not result.allowed:
            ...
    """

    def __init__(
        self,
        max_attempts: int = 50,
        window_seconds: int = 15 * 60,
        clock: Callable[[], float] = time.time
    ):
        """Initialize limiter.

        Args:
            max_attempts: Attempts allowed per window
            window_seconds: Window length
            clock: Returns current time in seconds (injectable for tests)
        """
        self.max_attempts = max_attempts
        self.window_ms = window_seconds * 1000
        self._clock = clock
        self._windows: dict[str, tuple[int, int]] = {}
        self._next_sweep_ms = 0
        self._lock = threading.Lock()

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def check_limit(self, key: str) -> RateLimitResult:
        """Count an attempt for key and report whether it is allowed.

        The attempt that first exceeds the threshold, and every later
        attempt in the same window, is refused with remaining == 0.
        """
        now_ms = self._now_ms()
        with self._lock:
            if now_ms >= self._next_sweep_ms:
                self._sweep_locked(now_ms)
            count, reset_at_ms = self._windows.get(key, (0, 0))
            if now_ms >= reset_at_ms:
                count, reset_at_ms = 0, now_ms + self.window_ms
            count += 1
            self._windows[key] = (count, reset_at_ms)

        result = _result(count, self.max_attempts, reset_at_ms, now_ms)
        if not result.allowed:
            logger.warning(f"Rate limit exceeded for {key} ({count}/{self.max_attempts})")
        return result

    def reset_key(self, key: str) -> None:
        """Forget the window of one key."""
        with self._lock:
            self._windows.pop(key, None)

    def clear_all(self) -> None:
        """Forget every window."""
        with self._lock:
            self._windows.clear()

    def cleanup(self) -> int:
        """Drop expired windows.

        Returns:
            Number of windows removed
        """
        now_ms = self._now_ms()
        with self._lock:
            return self._sweep_locked(now_ms)

    def _sweep_locked(self, now_ms: int) -> int:
        """Drop expired windows; caller holds the lock.

        check_limit() sweeps at most once per window length, so memory stays
        bounded by the keys seen in roughly two windows.
        """
        expired = [key for key, (_, reset_at) in self._windows.items() if now_ms >= reset_at]
        for key in expired:
            del self._windows[key]
        self._next_sweep_ms = now_ms + self.window_ms
        if expired:
            logger.debug(f"Removed {len(expired)} expired rate limit windows")
        return len(expired)

    def get_stats(self) -> dict:
        """Summarize limiter state for diagnostics."""
        now_ms = self._now_ms()
        with self._lock:
            active = [
                count for count, reset_at in self._windows.values() if now_ms < reset_at
            ]
        return {
            "backend": "memory",
            "active_keys": len(active),
            "blocked_keys": sum(1 for count in active if count > self.max_attempts),
            "max_attempts": self.max_attempts,
            "window_ms": self.window_ms,
        }


class RedisRateLimiter:
    """Fixed-window limiter with counters shared through Redis.

    Each key maps to a counter that expires with its window. INCR and
    PEXPIRE NX run in one transaction so concurrent workers see a single
    count.
    """

    KEY_PREFIX = "canvass:ratelimit:"

    def __init__(
        self,
        client: redis.Redis,
        max_attempts: int = 50,
        window_seconds: int = 15 * 60,
        clock: Callable[[], float] = time.time
    ):
        self.client = client
        self.max_attempts = max_attempts
        self.window_ms = window_seconds * 1000
        self._clock = clock

    @classmethod
    def from_url(cls, url: str, max_attempts: int, window_seconds: int) -> "RedisRateLimiter":
        """Create a limiter from a redis:// URL."""
        client = redis.Redis.from_url(url, socket_timeout=1, socket_connect_timeout=1)
        return cls(client, max_attempts=max_attempts, window_seconds=window_seconds)

    def check_limit(self, key: str) -> RateLimitResult:
        """Count an attempt for key and report whether it is allowed.

        Raises:
            RateLimiterUnavailableError: If Redis cannot be reached
        """
        redis_key = f"{self.KEY_PREFIX}{key}"
        now_ms = int(self._clock() * 1000)
        try:
            pipe = self.client.pipeline()
            pipe.incr(redis_key)
            pipe.pexpire(redis_key, self.window_ms, nx=True)
            pipe.pttl(redis_key)
            count, _, ttl_ms = pipe.execute()
        except redis.RedisError as e:
            logger.error(f"Rate limiter storage unavailable: {e}")
            raise RateLimiterUnavailableError(str(e)) from e

        if ttl_ms is None or ttl_ms < 0:
            ttl_ms = self.window_ms
        result = _result(int(count), self.max_attempts, now_ms + int(ttl_ms), now_ms)
        if not result.allowed:
            logger.warning(f"Rate limit exceeded for {key} ({count}/{self.max_attempts})")
        return result

    def reset_key(self, key: str) -> None:
        """Forget the window of one key."""
        try:
            self.client.delete(f"{self.KEY_PREFIX}{key}")
        except redis.RedisError as e:
            raise RateLimiterUnavailableError(str(e)) from e

    def clear_all(self) -> None:
        """Forget every window owned by this limiter."""
        try:
            keys = list(self.client.scan_iter(match=f"{self.KEY_PREFIX}*"))
            if keys:
                self.client.delete(*keys)
        except redis.RedisError as e:
            raise RateLimiterUnavailableError(str(e)) from e

    def get_stats(self) -> dict:
        """Summarize limiter state for diagnostics."""
        try:
            active = sum(1 for _ in self.client.scan_iter(match=f"{self.KEY_PREFIX}*"))
        except redis.RedisError as e:
            raise RateLimiterUnavailableError(str(e)) from e
        return {
            "backend": "redis",
            "active_keys": active,
            "max_attempts": self.max_attempts,
            "window_ms": self.window_ms,
        }


def build_rate_limiter(
    settings: Settings,
    max_attempts: Optional[int] = None,
    window_seconds: Optional[int] = None
):
    """Create the limiter configured in settings.

    Args:
        settings: Application settings
        max_attempts: Overrides RATE_LIMIT_MAX (used by the batch limiter)
        window_seconds: Overrides RATE_LIMIT_WINDOW_SECONDS

    Returns:
        RedisRateLimiter when RATE_LIMIT_REDIS_URL is set, otherwise InMemoryRateLimiter
    """
    if max_attempts is None:
        max_attempts = settings.rate_limit_max
    if window_seconds is None:
        window_seconds = settings.rate_limit_window_seconds

    if settings.rate_limit_redis_url:
        logger.info("Using Redis rate limiter")
        return RedisRateLimiter.from_url(
            settings.rate_limit_redis_url,
            max_attempts=max_attempts,
            window_seconds=window_seconds,
        )
    return InMemoryRateLimiter(max_attempts=max_attempts, window_seconds=window_seconds)


_limiter_instance: Optional[object] = None
_batch_limiter_instance: Optional[object] = None


def get_rate_limiter():
    """Get global rate limiter instance, creating it on first call."""
    global _limiter_instance
    if _limiter_instance is None:
        _limiter_instance = build_rate_limiter(get_settings())
    return _limiter_instance


def get_batch_rate_limiter():
    """Get the stricter limiter for batch uploads, creating it on first call."""
    global _batch_limiter_instance
    if _batch_limiter_instance is None:
        settings = get_settings()
        _batch_limiter_instance = build_rate_limiter(
            settings,
            max_attempts=settings.batch_rate_limit_max,
            window_seconds=settings.batch_rate_limit_window_seconds,
        )
    return _batch_limiter_instance
