from __future__ import annotations

import unicodedata
from datetime import date, datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Upper bound on password input; argon2 cost is linear in length
MAX_PASSWORD_LENGTH = 256
MAX_TOKEN_LENGTH = 512


def _normalize_unicode(value: str) -> str:
    """Drop zero-width and bidi override characters, then NFKC-normalize."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    cleaned = "".join(c for c in value if c not in zero_width)
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in cleaned if c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
    "service_unavailable",
    "invalid_password",
    "username_unavailable",
    "email_already_exists",
    "invalid_credentials",
    "invalid_token",
    "token_expired",
    "invalid_token_type",
    "account_locked",
    "account_suspended",
    "oauth_provider_link_error",
    "oauth_provider_unavailable",
    "oauth_configuration_error",
    "oauth_token_exchange_error",
    "oauth_profile_fetch_error",
    "oauth_invalid_state",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class SignupRequest(BaseModel):
    username: str = Field(..., max_length=64)
    email: Optional[str] = Field(default=None, max_length=254)
    password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)
    display_name: Optional[str] = Field(default=None, max_length=200)
    birth_date: Optional[date] = None

    @field_validator("username", "display_name")
    @classmethod
    def _normalize(cls, value: Optional[str]) -> Optional[str]:
        return _normalize_unicode(value) if value is not None else None

    @field_validator("email")
    @classmethod
    def _normalize_email(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return _normalize_unicode(value.strip()) or None


class SignupResponse(BaseModel):
    user_id: str
    username: str
    email: Optional[str] = None
    requires_email_verification: bool


class SigninRequest(BaseModel):
    identifier: str = Field(..., min_length=1, max_length=254)
    password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)
    remember_me: bool = False
    is_mobile: bool = False

    @field_validator("identifier")
    @classmethod
    def _normalize_identifier(cls, value: str) -> str:
        return _normalize_unicode(value.strip())


class AuthResponse(BaseModel):
    user: dict
    session_id: str
    session_token: str
    session_expires_at: datetime
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int
    refresh_expires_in: int


class TokenRefreshRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1, max_length=4096)


class TokenRefreshResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_in: int


class SessionRefreshResponse(BaseModel):
    session_id: str
    session_expires_at: datetime
    extended: bool
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None


class PasswordResetRequest(BaseModel):
    email: str = Field(..., max_length=254)


class PasswordResetConfirm(BaseModel):
    token: str = Field(..., min_length=1, max_length=MAX_TOKEN_LENGTH)
    new_password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)


class EmailVerificationRequest(BaseModel):
    token: str = Field(..., min_length=1, max_length=MAX_TOKEN_LENGTH)


class EmailResendRequest(BaseModel):
    email: str = Field(..., max_length=254)


class ProfileUpdateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    display_name: Optional[str] = Field(default=None, max_length=200)
    bio: Optional[str] = Field(default=None, max_length=1000)
    location: Optional[str] = Field(default=None, max_length=200)
    website_url: Optional[str] = Field(default=None, max_length=2048)
    birth_date: Optional[date] = None
    is_private: Optional[bool] = None


class UsernameChangeRequest(BaseModel):
    username: str = Field(..., max_length=64)


class UsernameAvailabilityResponse(BaseModel):
    username: str
    available: bool
    suggestions: List[str] = Field(default_factory=list)


class SessionView(BaseModel):
    id: str
    device_info: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime
    last_used_at: datetime
    expires_at: datetime
    is_current: bool = False
