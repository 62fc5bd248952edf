from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


@dataclass
class User:
    id: str
    username: str
    username_lower: str
    email: Optional[str] = None
    email_lower: Optional[str] = None
    # OAuth-only accounts have no password
    password_hash: Optional[str] = None
    display_name: Optional[str] = None
    bio: Optional[str] = None
    location: Optional[str] = None
    website_url: Optional[str] = None
    birth_date: Optional[date] = None
    email_verified: bool = False
    email_verification_token: Optional[str] = None
    email_verification_expires: Optional[datetime] = None
    password_reset_token: Optional[str] = None
    password_reset_expires: Optional[datetime] = None
    is_verified: bool = False
    is_private: bool = False
    is_suspended: bool = False
    suspension_reason: Optional[str] = None
    is_shadow_banned: bool = False
    shadow_ban_reason: Optional[str] = None
    failed_login_attempts: int = 0
    locked_until: Optional[datetime] = None
    last_login_at: Optional[datetime] = None
    last_login_ip: Optional[str] = None
    suspicious_activity_count: int = 0
    last_suspicious_activity: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        username: str,
        email: Optional[str] = None,
        *,
        password_hash: Optional[str] = None,
        **fields,
    ) -> "User":
        return cls(
            id=new_id(),
            username=username,
            username_lower=username.lower(),
            email=email,
            email_lower=email.lower() if email else None,
            password_hash=password_hash,
            **fields,
        )

    def is_locked(self, now: datetime) -> bool:
        return self.locked_until is not None and self.locked_until > now


@dataclass
class Session:
    id: str
    user_id: str
    session_token: str
    expires_at: datetime
    device_info: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    # None for rows written before the flag was persisted
    remember_me: Optional[bool] = None
    created_at: datetime = field(default_factory=utcnow)
    last_used_at: datetime = field(default_factory=utcnow)

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now


@dataclass
class OAuthProviderLink:
    id: str
    user_id: str
    provider: str
    provider_id: str
    email: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


# Columns a caller may set through ``update_user``; identity columns are excluded.
USER_MUTABLE_FIELDS = frozenset(
    {
        "username",
        "username_lower",
        "email",
        "email_lower",
        "password_hash",
        "display_name",
        "bio",
        "location",
        "website_url",
        "birth_date",
        "email_verified",
        "email_verification_token",
        "email_verification_expires",
        "password_reset_token",
        "password_reset_expires",
        "is_verified",
        "is_private",
        "is_suspended",
        "suspension_reason",
        "is_shadow_banned",
        "shadow_ban_reason",
        "failed_login_attempts",
        "locked_until",
        "last_login_at",
        "last_login_ip",
        "suspicious_activity_count",
        "last_suspicious_activity",
    }
)
