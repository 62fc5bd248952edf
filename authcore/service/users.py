from __future__ import annotations

import re
import secrets
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional, Protocol, Union
from urllib.parse import urlparse

from authcore.config import Settings
from authcore.logging import get_logger
from authcore.service.errors import (
    NotFoundError,
    UsernameUnavailableError,
    ValidationError,
)
from authcore.service.sessions import SessionManager
from authcore.storage.common import run_store_call
from authcore.storage.errors import ConstraintViolation
from authcore.storage.models import User

logger = get_logger(__name__)

MIN_USERNAME_LENGTH = 3
MAX_USERNAME_LENGTH = 15
USERNAME_PATTERN = re.compile(r"^[a-zA-Z0-9_]{3,15}$")
BLOCKED_USERNAMES = frozenset(
    {
        "admin",
        "administrator",
        "root",
        "system",
        "api",
        "www",
        "mail",
        "ftp",
        "support",
        "help",
        "info",
        "contact",
        "about",
        "privacy",
        "terms",
        "twitter",
        "twitterx",
        "x",
        "null",
        "undefined",
        "test",
    }
)

MAX_DISPLAY_NAME_LENGTH = 50
MAX_BIO_LENGTH = 160
MAX_LOCATION_LENGTH = 30

MODERATION_ACTIONS = (
    "suspend",
    "unsuspend",
    "verify",
    "unverify",
    "shadow_ban",
    "unshadow_ban",
)

DEACTIVATION_REASON = "Account deactivated by user"


def validate_username(username: str) -> str:
    if not isinstance(username, str) or not USERNAME_PATTERN.match(username):
        raise ValidationError(
            "Username must be 3-15 characters of letters, numbers or underscores",
            detail={"field": "username"},
        )
    if username.lower() in BLOCKED_USERNAMES:
        raise ValidationError("This username is reserved", detail={"field": "username"})
    return username


def is_username_allowed(username: str) -> bool:
    return bool(USERNAME_PATTERN.match(username)) and username.lower() not in BLOCKED_USERNAMES


def clean_text(value: Optional[str], field: str, max_length: int) -> Optional[str]:
    """Strip ``value`` and enforce a length ceiling; blank becomes None."""
    if value is None:
        return None
    value = value.strip()
    if len(value) > max_length:
        raise ValidationError(
            f"{field.replace('_', ' ').capitalize()} must be at most {max_length} characters",
            detail={"field": field, "max_length": max_length},
        )
    return value or None


class UserStore(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_username(self, username: str) -> Optional[User]: ...

    def update_user(self, user_id: str, **changes: Any) -> Optional[User]: ...

    def increment_suspicious_activity(self, user_id: str, at: datetime) -> int: ...


def public_profile(user: User, *, include_private: bool = False) -> Dict[str, Any]:
    profile: Dict[str, Any] = {
        "id": user.id,
        "username": user.username,
        "display_name": user.display_name,
        "bio": user.bio,
        "location": user.location,
        "website_url": user.website_url,
        "is_verified": user.is_verified,
        "is_private": user.is_private,
        "created_at": user.created_at.isoformat(),
    }
    if include_private:
        profile["email"] = user.email
        profile["email_verified"] = user.email_verified
        profile["birth_date"] = user.birth_date.isoformat() if user.birth_date else None
        profile["last_login_at"] = user.last_login_at.isoformat() if user.last_login_at else None
    return profile


class UserService:
    """Username policy, profile edits, moderation transitions and session views."""

    def __init__(self, store: UserStore, sessions: SessionManager, settings: Settings) -> None:
        self.store = store
        self.sessions = sessions
        self.settings = settings

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def _call(self, func, *args, **kwargs):
        return await run_store_call(
            func, *args, timeout=self.settings.store_timeout_seconds, component="user_store", **kwargs
        )

    async def get_user(self, user_id: str) -> User:
        user = await self._call(self.store.get_user, user_id)
        if not user:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        return user

    async def is_username_available(
        self, username: str, exclude_user_id: Optional[str] = None
    ) -> bool:
        existing = await self._call(self.store.get_user_by_username, username)
        return existing is None or existing.id == exclude_user_id

    async def suggest_usernames(self, base: str, limit: int = 3) -> List[str]:
        """Offer up to ``limit`` free usernames derived from ``base``.

        Order: ``base1``..``base6``, then ``base_1``..``base_3``, then random
        numeric suffixes. The base is truncated so no candidate exceeds the
        username length ceiling.
        """
        stem = re.sub(r"[^a-zA-Z0-9_]", "", base or "") or "user"

        def fit(suffix: str) -> str:
            return stem[: MAX_USERNAME_LENGTH - len(suffix)] + suffix

        candidates = [fit(str(i)) for i in range(1, 7)]
        candidates += [fit(f"_{i}") for i in range(1, 4)]

        suggestions: List[str] = []

        async def consider(candidate: str) -> None:
            if candidate in suggestions or not is_username_allowed(candidate):
                return
            if await self.is_username_available(candidate):
                suggestions.append(candidate)

        for candidate in candidates:
            if len(suggestions) >= limit:
                break
            await consider(candidate)
        tries = 0
        while len(suggestions) < limit and tries < 10:
            tries += 1
            await consider(fit(str(secrets.randbelow(9000) + 1000)))
        return suggestions

    async def get_profile(self, user_id: str, *, include_private: bool = False) -> Dict[str, Any]:
        return public_profile(await self.get_user(user_id), include_private=include_private)

    @staticmethod
    def _clean_website(value: Optional[str]) -> Optional[str]:
        if value is None or not value.strip():
            return None
        parsed = urlparse(value.strip())
        if parsed.scheme not in {"http", "https"} or not parsed.netloc:
            raise ValidationError(
                "Website must be a valid http(s) URL", detail={"field": "website_url"}
            )
        return value.strip()

    @staticmethod
    def _clean_birth_date(value: Union[date, str, None]) -> Optional[date]:
        if value is None or isinstance(value, date):
            return value
        try:
            return date.fromisoformat(value)
        except ValueError:
            raise ValidationError("Birth date must be YYYY-MM-DD", detail={"field": "birth_date"})

    async def update_profile(self, user_id: str, **fields: Any) -> Dict[str, Any]:
        """Apply only the profile fields present in ``fields``."""
        changes: Dict[str, Any] = {}
        if "display_name" in fields:
            changes["display_name"] = clean_text(
                fields["display_name"], "display_name", MAX_DISPLAY_NAME_LENGTH
            )
        if "bio" in fields:
            changes["bio"] = clean_text(fields["bio"], "bio", MAX_BIO_LENGTH)
        if "location" in fields:
            changes["location"] = clean_text(
                fields["location"], "location", MAX_LOCATION_LENGTH
            )
        if "website_url" in fields:
            changes["website_url"] = self._clean_website(fields["website_url"])
        if "birth_date" in fields:
            changes["birth_date"] = self._clean_birth_date(fields["birth_date"])
        if "is_private" in fields and fields["is_private"] is not None:
            changes["is_private"] = bool(fields["is_private"])
        if not changes:
            return await self.get_profile(user_id, include_private=True)
        user = await self._call(self.store.update_user, user_id, **changes)
        if not user:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        logger.info("profile_updated", user_id=user_id, fields=sorted(changes))
        return public_profile(user, include_private=True)

    async def change_username(self, user_id: str, new_username: str) -> Dict[str, Any]:
        validate_username(new_username)
        user = await self.get_user(user_id)
        if not await self.is_username_available(new_username, exclude_user_id=user.id):
            raise UsernameUnavailableError(
                new_username, await self.suggest_usernames(new_username)
            )
        try:
            updated = await self._call(
                self.store.update_user,
                user_id,
                username=new_username,
                username_lower=new_username.lower(),
            )
        except ConstraintViolation:
            raise UsernameUnavailableError(
                new_username, await self.suggest_usernames(new_username)
            )
        # Mirrors carry the username that refresh signs into new access tokens
        await self.sessions.drop_cached_sessions(user_id)
        logger.info("username_changed", user_id=user_id)
        return public_profile(updated, include_private=True)

    async def deactivate(self, user_id: str) -> None:
        await self.get_user(user_id)
        await self._call(
            self.store.update_user,
            user_id,
            is_suspended=True,
            suspension_reason=DEACTIVATION_REASON,
        )
        await self.sessions.invalidate_all_for_user(user_id)
        logger.info("account_deactivated", user_id=user_id)

    async def moderate(
        self,
        user_id: str,
        action: str,
        reason: Optional[str] = None,
        moderator_id: Optional[str] = None,
    ) -> User:
        if action not in MODERATION_ACTIONS:
            raise ValidationError(
                f"unknown moderation action '{action}'",
                detail={"allowed": list(MODERATION_ACTIONS)},
            )
        await self.get_user(user_id)
        changes: Dict[str, Any]
        if action == "suspend":
            changes = {"is_suspended": True, "suspension_reason": reason}
        elif action == "unsuspend":
            changes = {"is_suspended": False, "suspension_reason": None}
        elif action == "verify":
            changes = {"is_verified": True}
        elif action == "unverify":
            changes = {"is_verified": False}
        elif action == "shadow_ban":
            changes = {"is_shadow_banned": True, "shadow_ban_reason": reason}
        else:
            changes = {"is_shadow_banned": False, "shadow_ban_reason": None}
        user = await self._call(self.store.update_user, user_id, **changes)
        if action == "suspend":
            await self.sessions.invalidate_all_for_user(user_id)
        logger.info(
            "user_moderated",
            user_id=user_id,
            action=action,
            moderator_id=moderator_id,
            reason=reason,
        )
        return user

    async def moderation_status(self, user_id: str) -> Dict[str, Any]:
        user = await self.get_user(user_id)
        return {
            "user_id": user.id,
            "username": user.username,
            "is_suspended": user.is_suspended,
            "suspension_reason": user.suspension_reason,
            "is_verified": user.is_verified,
            "is_shadow_banned": user.is_shadow_banned,
            "shadow_ban_reason": user.shadow_ban_reason,
            "suspicious_activity_count": user.suspicious_activity_count,
            "last_suspicious_activity": (
                user.last_suspicious_activity.isoformat() if user.last_suspicious_activity else None
            ),
            "failed_login_attempts": user.failed_login_attempts,
            "locked_until": user.locked_until.isoformat() if user.locked_until else None,
            "is_locked": user.is_locked(self._now()),
        }

    async def record_suspicious_activity(
        self,
        user_id: str,
        activity_type: str,
        details: Optional[Dict[str, Any]] = None,
        auto_restrict: bool = False,
    ) -> int:
        count = await self._call(self.store.increment_suspicious_activity, user_id, self._now())
        if auto_restrict:
            await self._call(
                self.store.update_user,
                user_id,
                is_shadow_banned=True,
                shadow_ban_reason=f"Automatic restriction: {activity_type}",
            )
        logger.warning(
            "suspicious_activity_recorded",
            user_id=user_id,
            activity_type=activity_type,
            count=count,
            auto_restrict=auto_restrict,
            details=details or {},
        )
        return count

    async def list_sessions(
        self, user_id: str, current_session_id: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        sessions = await self.sessions.list_active(user_id)
        return [
            {
                "id": s.id,
                "device_info": s.device_info,
                "ip_address": s.ip_address,
                "user_agent": s.user_agent,
                "created_at": s.created_at.isoformat(),
                "last_used_at": s.last_used_at.isoformat(),
                "expires_at": s.expires_at.isoformat(),
                "is_current": s.id == current_session_id,
            }
            for s in sessions
        ]

    async def revoke_session(self, user_id: str, session_id: str) -> bool:
        """Revoke one of the caller's sessions; other users' ids are ignored silently."""
        session = await self.sessions.get_session_by_id(session_id)
        if not session or session.user_id != user_id:
            return False
        return await self.sessions.invalidate(session.session_token)

    async def revoke_other_sessions(self, user_id: str, current_session_id: str) -> int:
        return await self.sessions.invalidate_all_for_user(
            user_id, except_session_id=current_session_id
        )
