from __future__ import annotations

import asyncio
import secrets
import string
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional, Protocol, Tuple
from urllib.parse import urlencode

import httpx

from authcore.config import Settings
from authcore.logging import get_logger, redact_email
from authcore.service.errors import (
    AccountSuspendedError,
    OAuthConfigurationError,
    OAuthInvalidStateError,
    OAuthProfileFetchError,
    OAuthProviderLinkError,
    OAuthProviderUnavailableError,
    OAuthTokenExchangeError,
)
from authcore.service.sessions import SessionCreated, SessionManager, SessionOptions
from authcore.service.users import (
    MAX_DISPLAY_NAME_LENGTH,
    MAX_USERNAME_LENGTH,
    is_username_allowed,
)
from authcore.storage.common import run_store_call
from authcore.storage.errors import TRANSIENT_STORE_ERRORS, ConstraintViolation
from authcore.storage.models import OAuthProviderLink, User, new_id
from authcore.storage.redis_cache import RedisCache

logger = get_logger(__name__)

PROVIDER = "google"
GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"
GOOGLE_TOKENINFO_URL = "https://www.googleapis.com/oauth2/v1/tokeninfo"
GOOGLE_SCOPE = "openid email profile"

# Leaves room for a numeric suffix
_USERNAME_BASE_LENGTH = 12
_USERNAME_COUNTER_LIMIT = 99
_RANDOM_ALPHABET = string.ascii_lowercase + string.digits


class LinkStore(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_username(self, username: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def update_user(self, user_id: str, **changes: Any) -> Optional[User]: ...

    def get_provider_link(self, provider: str, provider_id: str) -> Optional[OAuthProviderLink]: ...

    def get_user_provider_link(self, user_id: str, provider: str) -> Optional[OAuthProviderLink]: ...

    def create_provider_link(self, link: OAuthProviderLink) -> OAuthProviderLink: ...

    def create_user_with_provider(
        self, user: User, link: OAuthProviderLink
    ) -> Tuple[User, OAuthProviderLink]: ...

    def update_provider_link_email(self, link_id: str, email: Optional[str]) -> None: ...


@dataclass
class GoogleProfile:
    id: str
    email: str
    verified_email: bool = False
    name: Optional[str] = None
    given_name: Optional[str] = None
    family_name: Optional[str] = None
    picture: Optional[str] = None

    @classmethod
    def from_userinfo(cls, data: Dict[str, Any]) -> "GoogleProfile":
        return cls(
            id=str(data["id"]),
            email=str(data["email"]),
            verified_email=bool(data.get("verified_email", False)),
            name=data.get("name"),
            given_name=data.get("given_name"),
            family_name=data.get("family_name"),
            picture=data.get("picture"),
        )


@dataclass
class OAuthSignIn:
    user: User
    created: SessionCreated


class GoogleOAuthService:
    """Google authorization-code flow and local account federation."""

    def __init__(
        self,
        store: LinkStore,
        sessions: SessionManager,
        settings: Settings,
        *,
        cache: Optional[RedisCache] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.sessions = sessions
        self.settings = settings
        self.cache = cache
        self._transport = transport
        self._clock = clock
        self._state_lock = threading.Lock()
        self._local_states: Dict[str, datetime] = {}

    def _now(self) -> datetime:
        if self._clock:
            return self._clock()
        return datetime.now(timezone.utc)

    async def _call(self, func, *args, **kwargs):
        return await run_store_call(
            func, *args, timeout=self.settings.store_timeout_seconds, component="oauth_store", **kwargs
        )

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.settings.oauth_http_timeout_seconds,
            follow_redirects=False,
            transport=self._transport,
        )

    def _require_config(self, *, need_secret: bool) -> Tuple[str, str, Optional[str]]:
        client_id = self.settings.google_client_id
        redirect_uri = self.settings.google_callback_url
        secret = self.settings.google_client_secret
        if not client_id or not redirect_uri or (need_secret and not secret):
            logger.error(
                "oauth_not_configured",
                provider=PROVIDER,
                has_client_id=bool(client_id),
                has_redirect=bool(redirect_uri),
                has_client_secret=bool(secret),
            )
            raise OAuthConfigurationError("Google OAuth configuration is missing")
        return client_id, redirect_uri, secret

    # state
    async def create_state(self) -> str:
        state = secrets.token_urlsafe(32)
        expires_at = self._now() + timedelta(seconds=self.settings.oauth_state_ttl_seconds)
        if self.cache:
            try:
                await asyncio.wait_for(
                    self.cache.set_oauth_state(state, PROVIDER, expires_at),
                    self.settings.store_timeout_seconds,
                )
            except TRANSIENT_STORE_ERRORS as exc:
                logger.error("oauth_state_store_failed", error=str(exc) or type(exc).__name__)
                raise OAuthProviderUnavailableError("OAuth state store unavailable") from exc
        else:
            with self._state_lock:
                now = self._now()
                for stale in [k for k, exp in self._local_states.items() if exp <= now]:
                    self._local_states.pop(stale, None)
                self._local_states[state] = expires_at
        return state

    async def consume_state(self, state: Optional[str]) -> None:
        """Atomically take a state value; missing or expired states are rejected."""
        if not state:
            raise OAuthInvalidStateError()
        if self.cache:
            try:
                popped = await asyncio.wait_for(
                    self.cache.pop_oauth_state(state), self.settings.store_timeout_seconds
                )
            except TRANSIENT_STORE_ERRORS as exc:
                logger.error("oauth_state_store_failed", error=str(exc) or type(exc).__name__)
                raise OAuthProviderUnavailableError("OAuth state store unavailable") from exc
            if not popped:
                raise OAuthInvalidStateError()
            provider, expires_at = popped
        else:
            with self._state_lock:
                expires_at = self._local_states.pop(state, None)
            provider = PROVIDER if expires_at else None
        if provider != PROVIDER or expires_at is None or expires_at <= self._now():
            raise OAuthInvalidStateError()

    def build_authorization_url(self, state: Optional[str] = None) -> str:
        client_id, redirect_uri, _ = self._require_config(need_secret=False)
        params = {
            "client_id": client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "scope": GOOGLE_SCOPE,
            "access_type": "offline",
            "prompt": "consent",
        }
        if state:
            params["state"] = state
        return f"{GOOGLE_AUTH_URL}?{urlencode(params)}"

    # provider round trips
    async def exchange_code(self, code: str) -> Dict[str, Any]:
        """Trade an authorization code for provider tokens. Codes are single-use; no retry."""
        client_id, redirect_uri, secret = self._require_config(need_secret=True)
        data = {
            "client_id": client_id,
            "client_secret": secret,
            "code": code,
            "grant_type": "authorization_code",
            "redirect_uri": redirect_uri,
        }
        try:
            async with self._client() as client:
                response = await client.post(
                    GOOGLE_TOKEN_URL, data=data, headers={"Accept": "application/json"}
                )
        except httpx.TransportError as exc:
            logger.error("oauth_token_exchange_failed", provider=PROVIDER, error=str(exc))
            raise OAuthProviderUnavailableError("Google is unreachable") from exc

        if response.is_error:
            logger.error(
                "oauth_token_exchange_failed",
                provider=PROVIDER,
                status_code=response.status_code,
                body=response.text[:200],
            )
            raise OAuthTokenExchangeError(
                f"Failed to exchange code for tokens: {response.status_code}",
                provider=PROVIDER,
                upstream_status=response.status_code,
            )
        try:
            tokens = response.json()
        except ValueError:
            tokens = None
        if not isinstance(tokens, dict) or not tokens.get("access_token"):
            logger.error("oauth_token_exchange_failed", provider=PROVIDER, reason="no_access_token")
            raise OAuthTokenExchangeError(
                "Token response did not include an access token",
                provider=PROVIDER,
                upstream_status=response.status_code,
            )
        return tokens

    async def fetch_profile(self, access_token: str) -> GoogleProfile:
        try:
            async with self._client() as client:
                response = await client.get(
                    GOOGLE_USERINFO_URL, headers={"Authorization": f"Bearer {access_token}"}
                )
        except httpx.TransportError as exc:
            logger.error("oauth_profile_fetch_failed", provider=PROVIDER, error=str(exc))
            raise OAuthProviderUnavailableError("Google is unreachable") from exc

        if response.is_error:
            logger.error(
                "oauth_profile_fetch_failed", provider=PROVIDER, status_code=response.status_code
            )
            raise OAuthProfileFetchError(
                f"Failed to fetch user profile: {response.status_code}",
                provider=PROVIDER,
                upstream_status=response.status_code,
            )
        try:
            payload = response.json()
            return GoogleProfile.from_userinfo(payload)
        except (ValueError, KeyError, TypeError) as exc:
            logger.error("oauth_profile_fetch_failed", provider=PROVIDER, error=str(exc))
            raise OAuthProfileFetchError(
                "Google profile is missing required fields",
                provider=PROVIDER,
                upstream_status=response.status_code,
            )

    async def validate_access_token(self, access_token: str) -> bool:
        """True when Google reports the token was issued to our client id."""
        try:
            async with self._client() as client:
                response = await client.get(
                    GOOGLE_TOKENINFO_URL, params={"access_token": access_token}
                )
            if response.is_error:
                return False
            info = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("oauth_token_validation_failed", provider=PROVIDER, error=str(exc))
            return False
        return isinstance(info, dict) and info.get("audience") == self.settings.google_client_id

    # federation
    async def _username_taken(self, candidate: str) -> bool:
        if not is_username_allowed(candidate):
            return True
        return await self._call(self.store.get_user_by_username, candidate) is not None

    async def generate_unique_username(self, base_name: Optional[str]) -> str:
        clean = "".join(
            ch for ch in (base_name or "").lower() if ch.isascii() and (ch.isalnum() or ch == "_")
        )[:_USERNAME_BASE_LENGTH]
        if not clean:
            clean = "user"
        elif len(clean) < 3:
            clean = f"{clean}user"

        if not await self._username_taken(clean):
            return clean
        for counter in range(1, _USERNAME_COUNTER_LIMIT + 1):
            suffix = str(counter)
            candidate = clean[: MAX_USERNAME_LENGTH - len(suffix)] + suffix
            if not await self._username_taken(candidate):
                return candidate
        for _ in range(10):
            candidate = "user" + "".join(secrets.choice(_RANDOM_ALPHABET) for _ in range(6))
            if not await self._username_taken(candidate):
                return candidate
        return "user" + "".join(secrets.choice(_RANDOM_ALPHABET) for _ in range(10))

    async def _link_existing(self, user: User, profile: GoogleProfile) -> User:
        current = await self._call(self.store.get_user_provider_link, user.id, PROVIDER)
        if current and current.provider_id != profile.id:
            raise OAuthProviderLinkError(
                "This account is already linked to a different Google account",
                detail={"provider": PROVIDER},
            )
        link = OAuthProviderLink(
            id=new_id(),
            user_id=user.id,
            provider=PROVIDER,
            provider_id=profile.id,
            email=profile.email,
        )
        try:
            await self._call(self.store.create_provider_link, link)
        except ConstraintViolation:
            existing = await self._call(self.store.get_provider_link, PROVIDER, profile.id)
            if existing and existing.user_id == user.id:
                return user
            raise OAuthProviderLinkError(
                "This Google account is already linked to another user",
                detail={"provider": PROVIDER},
            )
        logger.info("oauth_account_linked", provider=PROVIDER, user_id=user.id)
        return user

    async def find_or_create_user(self, profile: GoogleProfile) -> User:
        link = await self._call(self.store.get_provider_link, PROVIDER, profile.id)
        if link:
            if link.email != profile.email:
                await self._call(self.store.update_provider_link_email, link.id, profile.email)
            user = await self._call(self.store.get_user, link.user_id)
            if user:
                return user

        existing = await self._call(self.store.get_user_by_email, profile.email)
        if existing:
            return await self._link_existing(existing, profile)

        username = await self.generate_unique_username(profile.given_name or profile.name)
        user = User.new(
            username,
            profile.email,
            display_name=profile.name[:MAX_DISPLAY_NAME_LENGTH] if profile.name else None,
            email_verified=profile.verified_email,
        )
        link = OAuthProviderLink(
            id=new_id(),
            user_id=user.id,
            provider=PROVIDER,
            provider_id=profile.id,
            email=profile.email,
        )
        try:
            user, _ = await self._call(self.store.create_user_with_provider, user, link)
        except ConstraintViolation:
            # A concurrent callback may have created the same identity
            raced = await self._call(self.store.get_provider_link, PROVIDER, profile.id)
            if raced:
                found = await self._call(self.store.get_user, raced.user_id)
                if found:
                    return found
            raise OAuthProviderLinkError(
                "Could not create an account for this Google identity",
                detail={"provider": PROVIDER},
            )
        logger.info(
            "oauth_user_created",
            provider=PROVIDER,
            user_id=user.id,
            email=redact_email(profile.email),
        )
        return user

    async def complete_sign_in(
        self,
        code: str,
        state: Optional[str],
        options: Optional[SessionOptions] = None,
    ) -> OAuthSignIn:
        """Callback flow: state, code exchange, profile, find-or-create, session."""
        await self.consume_state(state)
        tokens = await self.exchange_code(code)
        profile = await self.fetch_profile(tokens["access_token"])
        user = await self.find_or_create_user(profile)
        if user.is_suspended:
            raise AccountSuspendedError(user.suspension_reason)
        options = options or SessionOptions()
        await self._call(
            self.store.update_user,
            user.id,
            last_login_at=self._now(),
            last_login_ip=options.ip_address,
        )
        created = await self.sessions.create(user.id, user.username, user.email, options)
        return OAuthSignIn(user=user, created=created)
