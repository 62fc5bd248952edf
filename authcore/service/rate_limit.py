from __future__ import annotations

import asyncio
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Mapping, Optional, Tuple

from authcore.logging import get_logger
from authcore.service.errors import RateLimitedError
from authcore.storage.errors import TRANSIENT_STORE_ERRORS
from authcore.storage.redis_cache import RedisCache

logger = get_logger(__name__)


@dataclass
class RateLimitResult:
    count: int
    limit_exceeded: bool
    reset_epoch: int
    limit: int
    backend_available: bool = True

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.count)

    def retry_after(self, now: Optional[float] = None) -> int:
        now = time.time() if now is None else now
        return max(1, int(self.reset_epoch - now))


class RateLimiter:
    """Fixed-window counters keyed by ``<purpose>:<client>``.

    Counting happens in the fast store with one atomic pipeline. Without a
    fast store an in-process counter with the same window semantics is used.
    Backend failures and timeouts fail open.
    """

    def __init__(
        self,
        cache: Optional[RedisCache],
        *,
        timeout_seconds: float = 3.0,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self.cache = cache
        self.timeout_seconds = timeout_seconds
        self._clock = clock or time.time
        self._local_lock = threading.Lock()
        # key -> (count, window_reset_epoch)
        self._local_counters: Dict[str, Tuple[int, float]] = {}

    def _local_increment(self, key: str, window_seconds: int) -> Tuple[int, int]:
        now = self._clock()
        with self._local_lock:
            count, reset_at = self._local_counters.get(key, (0, 0.0))
            if reset_at <= now:
                count, reset_at = 0, now + window_seconds
            count += 1
            self._local_counters[key] = (count, reset_at)
        return count, max(1, int(reset_at - now))

    def _local_peek(self, key: str) -> Tuple[int, int]:
        now = self._clock()
        with self._local_lock:
            count, reset_at = self._local_counters.get(key, (0, 0.0))
        if reset_at <= now:
            return 0, 0
        return count, int(reset_at - now)

    async def check(self, key: str, window_seconds: int, max_attempts: int) -> RateLimitResult:
        if window_seconds <= 0:
            logger.warning("rate_limit_invalid_window", key=key, window_seconds=window_seconds)
            window_seconds = 60
        now = self._clock()
        if self.cache is None:
            count, ttl = self._local_increment(key, window_seconds)
        else:
            try:
                count, ttl = await asyncio.wait_for(
                    self.cache.increment_rate_limit(key, window_seconds),
                    timeout=self.timeout_seconds,
                )
            except TRANSIENT_STORE_ERRORS as exc:
                logger.warning(
                    "rate_limit_backend_unavailable", key=key, error=str(exc) or type(exc).__name__
                )
                return RateLimitResult(
                    count=0,
                    limit_exceeded=False,
                    reset_epoch=int(now + window_seconds),
                    limit=max_attempts,
                    backend_available=False,
                )
        result = RateLimitResult(
            count=count,
            limit_exceeded=count > max_attempts,
            reset_epoch=int(now + ttl),
            limit=max_attempts,
        )
        if result.limit_exceeded:
            logger.info("rate_limit_exceeded", key=key, count=count, limit=max_attempts)
        return result

    async def enforce(self, key: str, window_seconds: int, max_attempts: int) -> RateLimitResult:
        """Count one hit and raise ``RateLimitedError`` once the window is exhausted."""
        result = await self.check(key, window_seconds, max_attempts)
        if result.limit_exceeded:
            raise RateLimitedError(result.retry_after(self._clock()), limit=max_attempts)
        return result

    async def peek(self, key: str, max_attempts: int) -> RateLimitResult:
        """Read the current window without counting a hit."""
        now = self._clock()
        if self.cache is None:
            count, ttl = self._local_peek(key)
        else:
            try:
                count, ttl = await asyncio.wait_for(
                    self.cache.get_rate_limit(key), timeout=self.timeout_seconds
                )
            except TRANSIENT_STORE_ERRORS as exc:
                logger.warning(
                    "rate_limit_backend_unavailable", key=key, error=str(exc) or type(exc).__name__
                )
                return RateLimitResult(
                    count=0,
                    limit_exceeded=False,
                    reset_epoch=int(now),
                    limit=max_attempts,
                    backend_available=False,
                )
        return RateLimitResult(
            count=count,
            limit_exceeded=count > max_attempts,
            reset_epoch=int(now + ttl),
            limit=max_attempts,
        )

    async def reset(self, key: str) -> None:
        if self.cache is None:
            with self._local_lock:
                self._local_counters.pop(key, None)
            return
        try:
            await asyncio.wait_for(self.cache.reset_rate_limit(key), timeout=self.timeout_seconds)
        except TRANSIENT_STORE_ERRORS as exc:
            logger.warning("rate_limit_backend_unavailable", key=key, error=str(exc) or type(exc).__name__)


def client_ip(headers: Mapping[str, str], peer: Optional[str] = None) -> str:
    """Resolve the caller address, first match wins.

    Order: X-Forwarded-For (first hop), X-Real-IP, CF-Connecting-IP, the
    socket peer, then ``"unknown"``.
    """

    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    for header in ("x-real-ip", "cf-connecting-ip"):
        value = (headers.get(header) or "").strip()
        if value:
            return value
    return peer or "unknown"
