from __future__ import annotations

import asyncio
import math
import re
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable, Optional, Protocol

from authcore.config import Settings
from authcore.logging import get_logger, redact_email
from authcore.service.email import Notifier
from authcore.service.errors import (
    AccountLockedError,
    AccountSuspendedError,
    EmailAlreadyExistsError,
    InvalidCredentialsError,
    InvalidPasswordError,
    RateLimitedError,
    UsernameUnavailableError,
    ValidationError,
)
from authcore.service.passwords import CredentialPolicy, hash_token
from authcore.service.rate_limit import RateLimiter
from authcore.service.sessions import SessionData, SessionManager, SessionOptions
from authcore.service.tokens import TokenPair
from authcore.service.users import (
    MAX_DISPLAY_NAME_LENGTH,
    UserService,
    clean_text,
    validate_username,
)
from authcore.storage.common import run_store_call
from authcore.storage.errors import ConstraintViolation
from authcore.storage.models import User

logger = get_logger(__name__)

_EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class AccountStore(Protocol):
    def create_user(self, user: User) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_username(self, username: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user_by_verification_token(self, token_digest: str) -> Optional[User]: ...

    def get_user_by_reset_token(self, token_digest: str) -> Optional[User]: ...

    def update_user(self, user_id: str, **changes: Any) -> Optional[User]: ...

    def increment_failed_logins(self, user_id: str) -> int: ...


@dataclass
class DeviceContext:
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    device_info: Optional[str] = None
    remember_me: bool = False
    is_mobile: bool = False


@dataclass
class RegistrationResult:
    user: User
    # Plain token handed to the notifier; only its digest is stored
    email_verification_token: Optional[str]
    requires_email_verification: bool


@dataclass
class SignInResult:
    user: User
    session: SessionData
    tokens: TokenPair

    @property
    def session_token(self) -> str:
        return self.session.session_token

    @property
    def expires_at(self) -> datetime:
        return self.session.expires_at


class CredentialAuthenticator:
    """Sign-up, sign-in with lockout, and the email token flows.

    Account states: good standing, locked until a timestamp after repeated
    failures, and suspended by an admin. Shadow bans do not block sign-in.
    """

    def __init__(
        self,
        store: AccountStore,
        policy: CredentialPolicy,
        sessions: SessionManager,
        limiter: RateLimiter,
        users: UserService,
        settings: Settings,
        *,
        notifier: Optional[Notifier] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.policy = policy
        self.sessions = sessions
        self.limiter = limiter
        self.users = users
        self.settings = settings
        self.notifier = notifier
        self._clock = clock

    def _now(self) -> datetime:
        if self._clock:
            return self._clock()
        return datetime.now(timezone.utc)

    async def _call(self, func, *args, **kwargs):
        return await run_store_call(
            func, *args, timeout=self.settings.store_timeout_seconds, component="account_store", **kwargs
        )

    def _notify(self, send: Callable[..., bool], *args: Any, **kwargs: Any) -> None:
        if self.notifier is None:
            return
        try:
            self.notifier.dispatch(send, *args, **kwargs)
        except RuntimeError as exc:
            logger.error("notification_dispatch_failed", error=str(exc))

    @staticmethod
    def _normalize_email(email: Optional[str]) -> Optional[str]:
        if email is None:
            return None
        email = email.strip()
        if not email:
            return None
        if not _EMAIL_PATTERN.match(email):
            raise ValidationError("Invalid email address", detail={"field": "email"})
        return email

    async def register(
        self,
        username: str,
        email: Optional[str],
        password: str,
        display_name: Optional[str] = None,
        birth_date: Optional[date] = None,
    ) -> RegistrationResult:
        strength = self.policy.validate_strength(password)
        if not strength.ok:
            raise InvalidPasswordError(strength.violations)
        username = (username or "").strip()
        validate_username(username)
        email = self._normalize_email(email)
        if display_name is not None:
            display_name = clean_text(display_name, "display_name", MAX_DISPLAY_NAME_LENGTH)

        if not await self.users.is_username_available(username):
            raise UsernameUnavailableError(username, await self.users.suggest_usernames(username))
        if email and await self._call(self.store.get_user_by_email, email):
            raise EmailAlreadyExistsError()

        password_hash = await asyncio.to_thread(self.policy.hash_password, password)
        now = self._now()
        verification_token: Optional[str] = None
        fields: dict[str, Any] = {"display_name": display_name, "birth_date": birth_date}
        if email:
            verification_token = self.policy.generate_secure_token()
            fields["email_verification_token"] = hash_token(verification_token)
            fields["email_verification_expires"] = now + timedelta(
                hours=self.settings.email_verification_ttl_hours
            )
        else:
            # No channel to verify through
            fields["email_verified"] = True
        user = User.new(username, email, password_hash=password_hash, **fields)
        try:
            user = await self._call(self.store.create_user, user)
        except ConstraintViolation as exc:
            if exc.detail.get("field") == "email":
                raise EmailAlreadyExistsError()
            raise UsernameUnavailableError(username, await self.users.suggest_usernames(username))

        if verification_token and self.notifier:
            self._notify(
                self.notifier.send_email_verification, email, verification_token, username
            )
        logger.info("user_registered", user_id=user.id, has_email=bool(email))
        return RegistrationResult(
            user=user,
            email_verification_token=verification_token,
            requires_email_verification=bool(email),
        )

    async def _find_by_identifier(self, identifier: str) -> Optional[User]:
        identifier = (identifier or "").strip()
        if not identifier:
            return None
        user = await self._call(self.store.get_user_by_username, identifier)
        if user is None:
            user = await self._call(self.store.get_user_by_email, identifier)
        return user

    async def _record_ip_failure(self, ip: str) -> None:
        result = await self.limiter.check(
            f"failed-login:{ip}",
            self.settings.failed_login_ip_window_seconds,
            self.settings.failed_login_ip_limit,
        )
        if result.limit_exceeded:
            raise RateLimitedError(result.retry_after(), limit=result.limit)

    async def _register_failure(self, user: User, ip: str, now: datetime) -> None:
        if user.locked_until is not None:
            # Previous lock has lapsed; start a fresh count
            await self._call(
                self.store.update_user, user.id, failed_login_attempts=1, locked_until=None
            )
            attempts = 1
        else:
            attempts = await self._call(self.store.increment_failed_logins, user.id)
        logger.info("login_failed", user_id=user.id, attempts=attempts, ip=ip)
        if attempts >= self.settings.max_failed_login_attempts:
            locked_until = now + timedelta(minutes=self.settings.lockout_duration_minutes)
            await self._call(self.store.update_user, user.id, locked_until=locked_until)
            logger.warning(
                "account_locked",
                user_id=user.id,
                attempts=attempts,
                locked_until=locked_until.isoformat(),
            )
            await self.users.record_suspicious_activity(
                user.id,
                "repeated_failed_logins",
                {"attempts": attempts, "ip": ip},
            )

    def _login_alert_reason(self, user: User, ip: str) -> Optional[str]:
        if user.last_login_ip and ip != "unknown" and user.last_login_ip != ip:
            return "new_ip"
        if user.failed_login_attempts >= self.settings.login_alert_failure_threshold:
            return "recent_failed_attempts"
        return None

    async def sign_in(
        self, identifier: str, password: str, context: Optional[DeviceContext] = None
    ) -> SignInResult:
        context = context or DeviceContext()
        ip = context.ip_address or "unknown"
        blocked = await self.limiter.peek(
            f"failed-login:{ip}", self.settings.failed_login_ip_limit
        )
        if blocked.limit_exceeded:
            raise RateLimitedError(blocked.retry_after(), limit=blocked.limit)

        user = await self._find_by_identifier(identifier)
        if user is None:
            logger.info("login_failed", reason="unknown_identifier", ip=ip)
            await self._record_ip_failure(ip)
            raise InvalidCredentialsError()

        now = self._now()
        # State checks run before the slow hash comparison
        if user.is_suspended:
            raise AccountSuspendedError(user.suspension_reason)
        if user.is_locked(now):
            remaining = (user.locked_until - now).total_seconds() / 60
            raise AccountLockedError(user.locked_until.isoformat(), max(1, math.ceil(remaining)))

        matched = await asyncio.to_thread(self.policy.verify_password, password, user.password_hash)
        if not matched:
            await self._register_failure(user, ip, now)
            await self._record_ip_failure(ip)
            raise InvalidCredentialsError()

        changes: dict[str, Any] = {
            "failed_login_attempts": 0,
            "locked_until": None,
            "last_login_at": now,
            "last_login_ip": ip,
        }
        if self.policy.needs_rehash(user.password_hash):
            changes["password_hash"] = await asyncio.to_thread(self.policy.hash_password, password)
        updated = await self._call(self.store.update_user, user.id, **changes)

        alert_reason = self._login_alert_reason(user, ip)
        if alert_reason and user.email and self.notifier is not None:
            logger.info("login_alert", user_id=user.id, reason=alert_reason)
            self._notify(
                self.notifier.send_login_alert,
                user.email,
                user.username,
                ip_address=ip,
                device_info=context.device_info,
                reason=alert_reason,
                occurred_at=now.isoformat(),
            )

        created = await self.sessions.create(
            user.id,
            user.username,
            user.email,
            SessionOptions(
                device_info=context.device_info,
                ip_address=ip,
                user_agent=context.user_agent,
                remember_me=context.remember_me,
                is_mobile=context.is_mobile,
            ),
        )
        logger.info("login_succeeded", user_id=user.id, session_id=created.session.session_id)
        return SignInResult(user=updated or user, session=created.session, tokens=created.tokens)

    async def sign_out(self, session_token: str) -> bool:
        return await self.sessions.invalidate(session_token)

    async def sign_out_all(self, user_id: str) -> int:
        return await self.sessions.invalidate_all_for_user(user_id)

    async def request_password_reset(self, email: str) -> Optional[str]:
        """Issue a reset token if the account exists. Callers always report success."""
        user = await self._call(self.store.get_user_by_email, (email or "").strip())
        if user is None or user.is_suspended or not user.email:
            logger.info("password_reset_ignored", email=redact_email(email))
            return None
        token = self.policy.generate_secure_token()
        await self._call(
            self.store.update_user,
            user.id,
            password_reset_token=hash_token(token),
            password_reset_expires=self._now()
            + timedelta(minutes=self.settings.password_reset_ttl_minutes),
        )
        if self.notifier:
            self._notify(self.notifier.send_password_reset, user.email, token)
        logger.info("password_reset_requested", user_id=user.id)
        return token

    async def reset_password(self, token: str, new_password: str) -> User:
        user = await self._call(self.store.get_user_by_reset_token, hash_token(token or ""))
        now = self._now()
        if (
            user is None
            or user.password_reset_expires is None
            or user.password_reset_expires <= now
        ):
            raise InvalidCredentialsError("Invalid or expired reset token")
        strength = self.policy.validate_strength(new_password)
        if not strength.ok:
            raise InvalidPasswordError(strength.violations)
        password_hash = await asyncio.to_thread(self.policy.hash_password, new_password)
        updated = await self._call(
            self.store.update_user,
            user.id,
            password_hash=password_hash,
            password_reset_token=None,
            password_reset_expires=None,
            failed_login_attempts=0,
            locked_until=None,
        )
        await self.sessions.invalidate_all_for_user(user.id)
        logger.info("password_reset_completed", user_id=user.id)
        return updated

    async def verify_email(self, token: str) -> User:
        user = await self._call(
            self.store.get_user_by_verification_token, hash_token(token or "")
        )
        if (
            user is None
            or user.email_verification_expires is None
            or user.email_verification_expires <= self._now()
        ):
            raise ValidationError(
                "Invalid or expired verification token", detail={"field": "token"}
            )
        updated = await self._call(
            self.store.update_user,
            user.id,
            email_verified=True,
            email_verification_token=None,
            email_verification_expires=None,
        )
        logger.info("email_verified", user_id=user.id)
        return updated

    async def resend_verification(self, email: str) -> Optional[str]:
        """Reissue a verification token when one is pending. Callers always report success."""
        user = await self._call(self.store.get_user_by_email, (email or "").strip())
        if user is None or user.email_verified or not user.email:
            return None
        token = self.policy.generate_secure_token()
        await self._call(
            self.store.update_user,
            user.id,
            email_verification_token=hash_token(token),
            email_verification_expires=self._now()
            + timedelta(hours=self.settings.email_verification_ttl_hours),
        )
        if self.notifier:
            self._notify(self.notifier.send_email_verification, user.email, token, user.username)
        logger.info("email_verification_resent", user_id=user.id)
        return token
