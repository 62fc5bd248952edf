from __future__ import annotations

import asyncio
import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from authcore.config import Settings, get_settings, reset_settings_cache
from authcore.logging import get_logger
from authcore.service.auth import CredentialAuthenticator
from authcore.service.email import Notifier
from authcore.service.oauth import GoogleOAuthService
from authcore.service.passwords import CredentialPolicy
from authcore.service.rate_limit import RateLimiter
from authcore.service.sessions import SessionManager
from authcore.service.tokens import TokenIssuer
from authcore.service.users import UserService
from authcore.storage.errors import TRANSIENT_STORE_ERRORS
from authcore.storage.memory import MemoryStore
from authcore.storage.postgres import PostgresStore
from authcore.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password in a connection URL for logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if not parsed.password:
            return url
        netloc = parsed.hostname or ""
        if parsed.port:
            netloc = f"{netloc}:{parsed.port}"
        if parsed.username:
            netloc = f"{parsed.username}:***@{netloc}"
        else:
            netloc = f":***@{netloc}"
        return urlunparse(
            (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
        )
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        store: Union[MemoryStore, PostgresStore, None] = None,
        cache: Optional[RedisCache] = None,
    ):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        if store is not None:
            self.store = store
        else:
            try:
                self.store = (
                    MemoryStore(
                        fs_root=self.settings.shared_fs_root,
                        persist=not self.settings.test_mode,
                    )
                    if self.settings.use_memory_store
                    else PostgresStore(self.settings.database_url)
                )
                logger.info("runtime_store_initialized", store_type=store_type)
            except Exception as exc:
                logger.error(
                    "runtime_store_init_failed",
                    store_type=store_type,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                raise

        self.cache = cache
        redis_error: Exception | None = None
        if self.cache is None and self.settings.redis_url:
            try:
                candidate = RedisCache(
                    self.settings.redis_url, socket_timeout=self.settings.store_timeout_seconds
                )
                candidate.verify_connection()
                self.cache = candidate
            except TRANSIENT_STORE_ERRORS as exc:
                redis_error = exc
                self.cache = None

        if not self.cache:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for session mirrors, rate limits and OAuth state; "
                    "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error

            fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; sessions are durable-only and "
                    "rate limits and OAuth state are per-process."
                ),
                mode=fallback_mode,
            )

        self.policy = CredentialPolicy()
        self.tokens = TokenIssuer(self.settings)
        self.limiter = RateLimiter(self.cache, timeout_seconds=self.settings.store_timeout_seconds)
        self.sessions = SessionManager(self.store, self.cache, self.tokens, self.settings)
        self.users = UserService(self.store, self.sessions, self.settings)
        self.notifier = Notifier.from_settings(self.settings)
        self.auth = CredentialAuthenticator(
            self.store,
            self.policy,
            self.sessions,
            self.limiter,
            self.users,
            self.settings,
            notifier=self.notifier,
        )
        self.oauth = GoogleOAuthService(self.store, self.sessions, self.settings, cache=self.cache)

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            redis_enabled=self.cache is not None,
            email_configured=self.notifier.is_configured,
            google_oauth_configured=bool(
                self.settings.google_client_id and self.settings.google_client_secret
            ),
        )

    async def close(self) -> None:
        """Finish background work and release store connections."""
        await self.sessions.wait_for_background()
        await self.notifier.drain()
        if self.cache is not None:
            try:
                await self.cache.close()
            except TRANSIENT_STORE_ERRORS as exc:
                logger.warning("runtime_cache_close_failed", error=str(exc))
        self.store.close()
        logger.info("runtime_closed")


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests(runtime_override: Optional[Runtime] = None) -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and runtime.cache is not None:
            try:
                asyncio.get_running_loop().create_task(runtime.cache.close())
            except RuntimeError:
                asyncio.run(runtime.cache.close())

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = runtime_override or Runtime(settings)
        return runtime
