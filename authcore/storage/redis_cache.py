from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

import redis.asyncio as aioredis

from authcore.logging import get_logger
from authcore.storage.errors import TRANSIENT_STORE_ERRORS

logger = get_logger(__name__)


class RedisCache:
    """Thin Redis wrapper for session mirrors, rate counters and OAuth state."""

    SESSION_PREFIX = "session:"
    RATE_LIMIT_PREFIX = "rate_limit:"
    OAUTH_STATE_PREFIX = "auth:oauth:"

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = 5.0,
        client: Any = None,
    ):
        self.redis_url = redis_url
        self.client = client or aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    @staticmethod
    def _ttl_seconds(expires_at: datetime) -> int:
        """Compute a TTL from an absolute expiry, clamped to at least one second.

        Naive timestamps are treated as UTC.
        """

        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        else:
            expires_at = expires_at.astimezone(timezone.utc)
        return max(1, int((expires_at - datetime.now(timezone.utc)).total_seconds()))

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        from redis import Redis

        # Short-lived sync client so the async pool is not bound to a startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def ping(self) -> bool:
        return bool(await self.client.ping())

    # session mirror
    def _session_key(self, session_token: str) -> str:
        return f"{self.SESSION_PREFIX}{session_token}"

    async def set_session(
        self, session_token: str, payload: Dict[str, Any], expires_at: datetime
    ) -> int:
        ttl = self._ttl_seconds(expires_at)
        await self.client.set(self._session_key(session_token), json.dumps(payload), ex=ttl)
        return ttl

    async def get_session(self, session_token: str) -> Optional[Dict[str, Any]]:
        cached = await self.client.get(self._session_key(session_token))
        if cached is None:
            return None
        try:
            data = json.loads(cached)
        except (json.JSONDecodeError, TypeError):
            # Unreadable mirror entries are dropped and rebuilt from the durable row
            await self.client.delete(self._session_key(session_token))
            return None
        return data if isinstance(data, dict) else None

    async def delete_session(self, session_token: str) -> bool:
        return bool(await self.client.delete(self._session_key(session_token)))

    async def purge_user_sessions(self, user_id: str) -> int:
        """Drop every mirrored session owned by ``user_id`` via a key scan.

        Used for cleanup of mirror entries whose durable rows are already gone;
        regular revocation goes through the durable row list instead.
        """

        removed = 0
        async for key in self.client.scan_iter(match=f"{self.SESSION_PREFIX}*"):
            cached = await self.client.get(key)
            if not cached:
                continue
            try:
                owner = json.loads(cached).get("user_id")
            except (json.JSONDecodeError, TypeError, AttributeError):
                owner = None
            if owner == user_id:
                removed += int(await self.client.delete(key))
        return removed

    # rate limit counters
    async def increment_rate_limit(self, key: str, window_seconds: int) -> Tuple[int, int]:
        """Atomically bump a fixed-window counter and return ``(count, ttl)``.

        ``SET NX EX`` creates the key with its expiry only when it is absent, so
        the window is anchored at the first increment; ``INCR`` keeps that TTL.
        """

        redis_key = f"{self.RATE_LIMIT_PREFIX}{key}"
        pipe = self.client.pipeline(transaction=True)
        pipe.set(redis_key, 0, ex=window_seconds, nx=True)
        pipe.incr(redis_key)
        pipe.ttl(redis_key)
        _, count, ttl = await pipe.execute()
        count, ttl = int(count), int(ttl)
        if ttl < 0:
            # A counter left without an expiry; repair it but keep the count
            try:
                await self.client.expire(redis_key, window_seconds)
            except TRANSIENT_STORE_ERRORS as exc:
                logger.warning(
                    "rate_limit_expire_failed", key=key, error=str(exc) or type(exc).__name__
                )
            ttl = window_seconds
        return count, ttl

    async def get_rate_limit(self, key: str) -> Tuple[int, int]:
        redis_key = f"{self.RATE_LIMIT_PREFIX}{key}"
        pipe = self.client.pipeline(transaction=True)
        pipe.get(redis_key)
        pipe.ttl(redis_key)
        raw, ttl = await pipe.execute()
        return int(raw or 0), max(int(ttl), 0)

    async def reset_rate_limit(self, key: str) -> None:
        await self.client.delete(f"{self.RATE_LIMIT_PREFIX}{key}")

    # OAuth state
    async def set_oauth_state(self, state: str, provider: str, expires_at: datetime) -> None:
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        else:
            expires_at = expires_at.astimezone(timezone.utc)

        ttl = self._ttl_seconds(expires_at)
        payload = {"provider": provider, "expires_at": expires_at.isoformat()}
        await self.client.set(f"{self.OAUTH_STATE_PREFIX}{state}", json.dumps(payload), ex=ttl)

    async def pop_oauth_state(self, state: str) -> Optional[tuple[str, datetime]]:
        """Atomically get and delete OAuth state so a state value is single-use.

        Returns:
            Tuple of (provider, expires_at) or None if not found
        """
        cached = await self.client.getdel(f"{self.OAUTH_STATE_PREFIX}{state}")
        if cached is None:
            return None

        try:
            data = json.loads(cached)
        except (json.JSONDecodeError, TypeError):
            return None

        expires_raw = data.get("expires_at")
        expires_at = datetime.now(timezone.utc)
        if isinstance(expires_raw, str):
            try:
                expires_at = datetime.fromisoformat(expires_raw)
            except ValueError:
                pass
        return data.get("provider"), expires_at

    async def close(self) -> None:
        """Close the connection pool. Call when shutting down or resetting runtime."""
        await self.client.aclose()
