from __future__ import annotations

import asyncio
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, List, Optional, Protocol, Set

from authcore.config import Settings
from authcore.logging import get_logger
from authcore.service.errors import DependencyUnavailableError, InvalidTokenError
from authcore.service.passwords import CredentialPolicy
from authcore.service.tokens import TokenIssuer, TokenPair
from authcore.storage.common import run_store_call
from authcore.storage.errors import TRANSIENT_STORE_ERRORS
from authcore.storage.models import Session, User, new_id
from authcore.storage.redis_cache import RedisCache

logger = get_logger(__name__)

_MOBILE_MARKERS = ("mobile", "android", "iphone", "ipad", "tablet")


def extract_device_info(user_agent: Optional[str]) -> str:
    if not user_agent:
        return "Unknown Device"
    if "Mobile" in user_agent or "Android" in user_agent:
        return "Mobile Device"
    if "iPad" in user_agent or "Tablet" in user_agent:
        return "Tablet"
    return "Desktop"


def is_mobile_device(user_agent: Optional[str], device_info: Optional[str] = None) -> bool:
    if device_info in {"Mobile Device", "Tablet"}:
        return True
    ua = (user_agent or "").lower()
    return any(marker in ua for marker in _MOBILE_MARKERS)


class SessionStore(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...

    def create_session(self, session: Session) -> Session: ...

    def get_session_by_token(self, session_token: str) -> Optional[Session]: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def touch_session(self, session_token: str, at: datetime) -> bool: ...

    def update_session_expiry(
        self, session_token: str, expires_at: datetime, last_used_at: datetime
    ) -> Optional[Session]: ...

    def delete_session(self, session_token: str) -> bool: ...

    def list_user_sessions(self, user_id: str) -> List[Session]: ...

    def delete_user_sessions(self, user_id: str) -> int: ...

    def delete_expired_sessions(self, now: datetime) -> int: ...


@dataclass
class SessionOptions:
    device_info: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    remember_me: bool = False
    is_mobile: bool = False


@dataclass
class SessionData:
    """Identity resolved from a session token, as mirrored in the fast store."""

    session_id: str
    session_token: str
    user_id: str
    username: str
    email: Optional[str]
    expires_at: datetime
    created_at: datetime
    last_used_at: datetime
    device_info: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    remember_me: Optional[bool] = None

    @classmethod
    def from_session(cls, session: Session, user: User) -> "SessionData":
        return cls(
            session_id=session.id,
            session_token=session.session_token,
            user_id=user.id,
            username=user.username,
            email=user.email,
            expires_at=session.expires_at,
            created_at=session.created_at,
            last_used_at=session.last_used_at,
            device_info=session.device_info,
            ip_address=session.ip_address,
            user_agent=session.user_agent,
            remember_me=session.remember_me,
        )

    def to_cache(self) -> dict[str, Any]:
        payload = asdict(self)
        for key in ("expires_at", "created_at", "last_used_at"):
            payload[key] = payload[key].isoformat()
        return payload

    @classmethod
    def from_cache(cls, payload: dict[str, Any]) -> Optional["SessionData"]:
        try:
            values = dict(payload)
            for key in ("expires_at", "created_at", "last_used_at"):
                values[key] = datetime.fromisoformat(values[key])
            return cls(**values)
        except (KeyError, TypeError, ValueError):
            return None


@dataclass
class SessionCreated:
    session: SessionData
    tokens: TokenPair


@dataclass
class SessionRefresh:
    session: SessionData
    # None for keep-alive calls that do not extend the session
    tokens: Optional[TokenPair] = None


class SessionManager:
    """Session lifecycle over the durable store with an optional fast-store mirror.

    The durable row is the source of truth. Creation writes it before the
    mirror; validation reads the mirror first and rebuilds it from the
    durable row on a miss; invalidation always attempts both deletes.
    """

    def __init__(
        self,
        store: SessionStore,
        cache: Optional[RedisCache],
        tokens: TokenIssuer,
        settings: Settings,
        *,
        token_factory: Callable[[], str] = CredentialPolicy.generate_secure_token,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.cache = cache
        self.tokens = tokens
        self.settings = settings
        self._token_factory = token_factory
        self._clock = clock
        self._timeout = settings.store_timeout_seconds
        self._background: Set[asyncio.Task] = set()

    def _now(self) -> datetime:
        if self._clock:
            return self._clock()
        return datetime.now(timezone.utc)

    async def _store_call(self, func: Callable[..., Any], *args: Any) -> Any:
        return await run_store_call(
            func, *args, timeout=self._timeout, component="session_store"
        )

    async def _cache_call(self, coro: Awaitable[Any]) -> Any:
        try:
            return await asyncio.wait_for(coro, self._timeout)
        except TRANSIENT_STORE_ERRORS as exc:
            logger.error("session_cache_unavailable", error=str(exc) or type(exc).__name__)
            raise DependencyUnavailableError("Session cache unavailable") from exc

    def _lifetime(self, long_lived: bool) -> timedelta:
        if long_lived:
            return timedelta(days=self.settings.mobile_session_timeout_days)
        return timedelta(days=self.settings.web_session_timeout_days)

    def _is_long_lived(self, data: SessionData) -> bool:
        """Decide whether a refreshed session keeps the long horizon.

        Rows written without the remember-me flag fall back to comparing the
        original lifetime against the long-session threshold.
        """
        if is_mobile_device(data.user_agent, data.device_info):
            return True
        if data.remember_me is not None:
            return data.remember_me
        original = data.expires_at - data.created_at
        return original > timedelta(days=self.settings.long_session_threshold_days)

    async def _mirror(self, data: SessionData) -> None:
        if not self.cache:
            return
        try:
            await asyncio.wait_for(
                self.cache.set_session(data.session_token, data.to_cache(), data.expires_at),
                self._timeout,
            )
        except TRANSIENT_STORE_ERRORS as exc:
            # The durable row stays authoritative; the next validate rebuilds the mirror
            logger.warning(
                "session_cache_write_failed",
                session_id=data.session_id,
                error=str(exc) or type(exc).__name__,
            )

    async def create(
        self,
        user_id: str,
        username: str,
        email: Optional[str] = None,
        options: Optional[SessionOptions] = None,
    ) -> SessionCreated:
        options = options or SessionOptions()
        now = self._now()
        long_lived = bool(options.remember_me or options.is_mobile)
        session = Session(
            id=new_id(),
            user_id=user_id,
            session_token=self._token_factory(),
            expires_at=now + self._lifetime(long_lived),
            device_info=options.device_info or extract_device_info(options.user_agent),
            ip_address=options.ip_address,
            user_agent=options.user_agent,
            remember_me=bool(options.remember_me),
            created_at=now,
            last_used_at=now,
        )
        await self._store_call(self.store.create_session, session)
        pair = self.tokens.issue(user_id, username, email, session.id)
        data = SessionData(
            session_id=session.id,
            session_token=session.session_token,
            user_id=user_id,
            username=username,
            email=email,
            expires_at=session.expires_at,
            created_at=session.created_at,
            last_used_at=session.last_used_at,
            device_info=session.device_info,
            ip_address=session.ip_address,
            user_agent=session.user_agent,
            remember_me=session.remember_me,
        )
        await self._mirror(data)
        logger.info(
            "session_created",
            user_id=user_id,
            session_id=session.id,
            long_lived=long_lived,
            expires_at=session.expires_at.isoformat(),
        )
        return SessionCreated(session=data, tokens=pair)

    def _schedule_touch(self, session_token: str, at: datetime) -> None:
        task = asyncio.get_running_loop().create_task(self._touch(session_token, at))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _touch(self, session_token: str, at: datetime) -> None:
        try:
            await asyncio.wait_for(
                asyncio.to_thread(self.store.touch_session, session_token, at), self._timeout
            )
        except Exception as exc:
            logger.warning("session_touch_failed", error=str(exc) or type(exc).__name__)

    async def wait_for_background(self) -> None:
        """Let pending last-used updates finish; used on shutdown and in tests."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def validate(self, session_token: Optional[str]) -> Optional[SessionData]:
        if not session_token:
            return None
        now = self._now()
        if self.cache:
            cached = await self._cache_call(self.cache.get_session(session_token))
            if cached:
                data = SessionData.from_cache(cached)
                if data and data.expires_at > now:
                    self._schedule_touch(session_token, now)
                    data.last_used_at = now
                    return data
                await self._cache_call(self.cache.delete_session(session_token))

        session = await self._store_call(self.store.get_session_by_token, session_token)
        if not session or session.is_expired(now):
            return None
        user = await self._store_call(self.store.get_user, session.user_id)
        if not user:
            return None
        data = SessionData.from_session(session, user)
        data.last_used_at = now
        self._schedule_touch(session_token, now)
        if self.cache:
            await self._mirror(data)
            logger.info("session_cache_rebuilt", session_id=data.session_id)
        return data

    async def resolve_access_token(self, access_token: str) -> SessionData:
        """Resolve a signed access token to the live session it was issued for.

        The token must verify as an access token, its subject must exist and
        not be suspended, and its ``sid`` must name an unexpired session of
        that subject.

        Raises:
            InvalidTokenError: the token, its user or its session is not usable
            TokenExpiredError: the access token has expired
            WrongTokenTypeError: a refresh token was presented
        """
        claims = self.tokens.verify_access(access_token)
        user = await self._store_call(self.store.get_user, claims.get("sub"))
        if not user:
            raise InvalidTokenError("unknown_user")
        if user.is_suspended:
            raise InvalidTokenError("suspended")
        session_id = claims.get("sid")
        session = await self._store_call(self.store.get_session, session_id) if session_id else None
        if not session or session.user_id != user.id or session.is_expired(self._now()):
            raise InvalidTokenError("session")
        return SessionData.from_session(session, user)

    async def refresh(
        self, session_token: Optional[str], extend_expiration: bool = False
    ) -> Optional[SessionRefresh]:
        data = await self.validate(session_token)
        if not data:
            return None
        if not extend_expiration:
            return SessionRefresh(session=data)

        now = self._now()
        expires_at = now + self._lifetime(self._is_long_lived(data))
        updated = await self._store_call(
            self.store.update_session_expiry, data.session_token, expires_at, now
        )
        if updated is None:
            return None
        data.expires_at = expires_at
        data.last_used_at = now
        await self._mirror(data)
        pair = self.tokens.issue(data.user_id, data.username, data.email, data.session_id)
        logger.info(
            "session_refreshed", session_id=data.session_id, expires_at=expires_at.isoformat()
        )
        return SessionRefresh(session=data, tokens=pair)

    async def invalidate(self, session_token: Optional[str]) -> bool:
        """Delete a session from both stores; a second call is a no-op."""
        if not session_token:
            return False
        if self.cache:
            try:
                await asyncio.wait_for(self.cache.delete_session(session_token), self._timeout)
            except TRANSIENT_STORE_ERRORS as exc:
                logger.warning("session_cache_delete_failed", error=str(exc) or type(exc).__name__)
        try:
            return bool(await self._store_call(self.store.delete_session, session_token))
        except DependencyUnavailableError as exc:
            logger.error("session_store_delete_failed", error=str(exc.__cause__ or exc))
            return False

    async def _drop_mirrors(self, sessions: List[Session]) -> None:
        if not self.cache:
            return
        for session in sessions:
            try:
                await asyncio.wait_for(
                    self.cache.delete_session(session.session_token), self._timeout
                )
            except TRANSIENT_STORE_ERRORS as exc:
                logger.warning(
                    "session_cache_delete_failed",
                    session_id=session.id,
                    error=str(exc) or type(exc).__name__,
                )

    async def drop_cached_sessions(self, user_id: str) -> None:
        """Forget the user's mirrors so the next validate rebuilds them from current rows."""
        if not self.cache:
            return
        sessions = await self._store_call(self.store.list_user_sessions, user_id)
        await self._drop_mirrors(sessions)

    async def invalidate_all_for_user(
        self, user_id: str, *, except_session_id: Optional[str] = None
    ) -> int:
        # Enumerate before deleting; the durable rows carry the tokens the mirror is keyed by
        sessions = await self._store_call(self.store.list_user_sessions, user_id)
        targets = [s for s in sessions if s.id != except_session_id]
        await self._drop_mirrors(targets)
        if except_session_id is None:
            count = await self._store_call(self.store.delete_user_sessions, user_id)
        else:
            count = 0
            for session in targets:
                if await self._store_call(self.store.delete_session, session.session_token):
                    count += 1
        logger.info("sessions_invalidated", user_id=user_id, count=count)
        return count

    async def get_session_by_id(self, session_id: str) -> Optional[Session]:
        return await self._store_call(self.store.get_session, session_id)

    async def list_active(self, user_id: str) -> List[Session]:
        now = self._now()
        sessions = await self._store_call(self.store.list_user_sessions, user_id)
        active = [s for s in sessions if not s.is_expired(now)]
        return sorted(active, key=lambda s: s.last_used_at, reverse=True)

    async def sweep_expired(self) -> int:
        count = await self._store_call(self.store.delete_expired_sessions, self._now())
        logger.info("sessions_swept", count=count)
        return count

    async def purge_cached_sessions(self, user_id: str) -> int:
        """Scan the fast store for stray mirrors of ``user_id``."""
        if not self.cache:
            return 0
        return await self._cache_call(self.cache.purge_user_sessions(user_id))
