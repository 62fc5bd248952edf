from __future__ import annotations

import os
import re
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from authcore.logging import get_logger

logger = get_logger(__name__)

_DURATION_PATTERN = re.compile(r"^\s*(\d+)\s*([smhd]?)\s*$")
_DURATION_UNITS = {"": 1, "s": 1, "m": 60, "h": 3600, "d": 86400}


def parse_duration(value: str | int) -> int:
    """Convert ``"15m"`` / ``"7d"`` / ``"3600"`` style durations to seconds."""

    if isinstance(value, bool):
        raise ValueError("duration must be a number of seconds or <n>[smhd]")
    if isinstance(value, int):
        if value <= 0:
            raise ValueError("duration must be positive")
        return value
    match = _DURATION_PATTERN.match(str(value).lower())
    if not match:
        raise ValueError(f"invalid duration '{value}'; expected <n>[smhd]")
    seconds = int(match.group(1)) * _DURATION_UNITS[match.group(2)]
    if seconds <= 0:
        raise ValueError("duration must be positive")
    return seconds


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the auth service, resolved from env and .env."""

    database_url: str = env_field(
        "postgresql://localhost:5432/authcore", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/authcore", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allows runtime resets and running without Redis.",
    )
    store_timeout_seconds: float = env_field(
        3.0,
        "STORE_TIMEOUT_SECONDS",
        description="Upper bound for a single durable/fast store round trip",
    )

    # Token issuer
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("authcore", "JWT_ISSUER")
    jwt_audience: str = env_field("authcore-clients", "JWT_AUDIENCE")
    jwt_access_token_expires_in: str = env_field("15m", "JWT_ACCESS_TOKEN_EXPIRES_IN")
    jwt_refresh_token_expires_in: str = env_field("7d", "JWT_REFRESH_TOKEN_EXPIRES_IN")

    # Session lifetimes
    web_session_timeout_days: int = env_field(30, "WEB_SESSION_TIMEOUT_DAYS")
    mobile_session_timeout_days: int = env_field(90, "MOBILE_SESSION_TIMEOUT_DAYS")
    long_session_threshold_days: int = env_field(
        45,
        "LONG_SESSION_THRESHOLD_DAYS",
        description="Sessions whose total lifetime exceeds this are treated as remember-me",
    )

    # Brute-force defense
    max_failed_login_attempts: int = env_field(5, "MAX_FAILED_LOGIN_ATTEMPTS")
    lockout_duration_minutes: int = env_field(30, "LOCKOUT_DURATION_MINUTES")
    failed_login_ip_limit: int = env_field(20, "FAILED_LOGIN_IP_LIMIT")
    failed_login_ip_window_seconds: int = env_field(
        3600, "FAILED_LOGIN_IP_WINDOW_SECONDS"
    )
    login_alert_failure_threshold: int = env_field(3, "LOGIN_ALERT_FAILURE_THRESHOLD")
    session_sweep_interval_seconds: int = env_field(
        3600,
        "SESSION_SWEEP_INTERVAL_SECONDS",
        description="How often expired session rows are deleted; 0 disables the sweep",
    )

    # Single-use tokens
    password_reset_ttl_minutes: int = env_field(60, "PASSWORD_RESET_TTL_MINUTES")
    email_verification_ttl_hours: int = env_field(24, "EMAIL_VERIFICATION_TTL_HOURS")

    # Endpoint throttles (requests per window)
    signup_rate_limit: int = env_field(10, "SIGNUP_RATE_LIMIT")
    signup_rate_window_seconds: int = env_field(3600, "SIGNUP_RATE_WINDOW_SECONDS")
    login_rate_limit: int = env_field(20, "LOGIN_RATE_LIMIT")
    login_rate_window_seconds: int = env_field(3600, "LOGIN_RATE_WINDOW_SECONDS")
    oauth_rate_limit: int = env_field(10, "OAUTH_RATE_LIMIT")
    oauth_callback_rate_limit: int = env_field(20, "OAUTH_CALLBACK_RATE_LIMIT")
    oauth_rate_window_seconds: int = env_field(3600, "OAUTH_RATE_WINDOW_SECONDS")
    reset_rate_limit: int = env_field(5, "RESET_RATE_LIMIT")
    reset_rate_window_seconds: int = env_field(3600, "RESET_RATE_WINDOW_SECONDS")

    # Google OAuth
    google_client_id: str | None = env_field(None, "GOOGLE_CLIENT_ID")
    google_client_secret: str | None = env_field(None, "GOOGLE_CLIENT_SECRET")
    google_callback_url: str | None = env_field(None, "GOOGLE_CALLBACK_URL")
    oauth_state_ttl_seconds: int = env_field(600, "OAUTH_STATE_TTL_SECONDS")
    oauth_http_timeout_seconds: float = env_field(10.0, "OAUTH_HTTP_TIMEOUT_SECONDS")

    # Notifier
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Authcore", "EMAIL_FROM_NAME")
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")

    allow_signup: bool = env_field(True, "ALLOW_SIGNUP")
    session_cookie_secure: bool = env_field(True, "SESSION_COOKIE_SECURE")
    build_sha: str | None = env_field(None, "BUILD_SHA")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @property
    def access_token_ttl_seconds(self) -> int:
        return parse_duration(self.jwt_access_token_expires_in)

    @property
    def refresh_token_ttl_seconds(self) -> int:
        return parse_duration(self.jwt_refresh_token_expires_in)

    @field_validator("redis_url")
    @classmethod
    def _blank_redis_url(cls, value: str | None) -> str | None:
        if value is None or not str(value).strip():
            return None
        return value

    @field_validator("jwt_access_token_expires_in", "jwt_refresh_token_expires_in")
    @classmethod
    def _validate_duration(cls, value: str) -> str:
        parse_duration(value)
        return str(value)

    @field_validator(
        "web_session_timeout_days",
        "mobile_session_timeout_days",
        "long_session_threshold_days",
        "max_failed_login_attempts",
        "lockout_duration_minutes",
    )
    @classmethod
    def _validate_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be positive")
        return value

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated secret so tokens remain valid across restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/authcore"))
        secret_path = fs_root / ".jwt_secret"

        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            # Directory may already exist with different ownership (e.g., in container)
            pass
        except OSError as exc:
            logger.warning(
                "jwt_secret_dir_setup",
                error=str(exc),
                path=str(fs_root),
            )

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
                if persisted and len(persisted) >= 32:
                    return persisted
            except OSError as exc:
                logger.error(
                    "jwt_secret_read_failed", error=str(exc), path=str(secret_path)
                )

        generated = secrets.token_urlsafe(64)
        tmp_path = None
        try:
            fd, tmp_path = tempfile.mkstemp(
                dir=str(fs_root), prefix=".jwt_secret_", suffix=".tmp"
            )
            try:
                os.write(fd, generated.encode())
                os.fchmod(fd, 0o600)
            finally:
                os.close(fd)
            os.rename(tmp_path, str(secret_path))
        except OSError as exc:
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            logger.error(
                "jwt_secret_persist_failed", error=str(exc), path=str(secret_path)
            )
            raise RuntimeError(
                "Unable to persist JWT secret; set JWT_SECRET env var or make SHARED_FS_ROOT writable"
            ) from exc
        return generated


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
