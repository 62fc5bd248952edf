from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each class carries an HTTP ``status_code``, a stable ``error_code`` used in
    the response envelope, and a ``kind`` grouping errors by how a caller
    recovers from them:
    - validation: fix the input
    - conflict: choose different input or sign in instead
    - unauthorized: correct credentials, wait, or ask an admin
    - unavailable: retry later
    - configuration: operator must fix settings
    """

    status_code: int = 400
    error_code: str = "validation_error"
    kind: Optional[str] = None

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"
    kind = "validation"


class InvalidPasswordError(ValidationError):
    """Password fails the strength policy; ``detail['errors']`` lists every rule."""
    error_code = "invalid_password"

    def __init__(self, errors: list[str]) -> None:
        super().__init__("Password does not meet requirements", detail={"errors": errors})
        self.errors = errors


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"
    kind = "conflict"


class UsernameUnavailableError(ConflictError):
    error_code = "username_unavailable"

    def __init__(self, username: str, suggestions: list[str]) -> None:
        super().__init__(
            "Username is already taken",
            detail={"username": username, "suggestions": suggestions},
        )
        self.suggestions = suggestions


class EmailAlreadyExistsError(ConflictError):
    error_code = "email_already_exists"

    def __init__(self) -> None:
        super().__init__(
            "An account with this email already exists",
            detail={"suggestion": "Try signing in instead"},
        )


class OAuthProviderLinkError(ConflictError):
    """External identity is already bound to a different account (409)."""
    error_code = "oauth_provider_link_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"
    kind = "unauthorized"


class InvalidCredentialsError(AuthenticationError):
    error_code = "invalid_credentials"

    def __init__(self, message: str = "Invalid credentials") -> None:
        super().__init__(message)


class InvalidTokenError(AuthenticationError):
    error_code = "invalid_token"

    def __init__(self, reason: str = "invalid") -> None:
        super().__init__("Invalid token", detail={"reason": reason})
        self.reason = reason


class TokenExpiredError(AuthenticationError):
    error_code = "token_expired"

    def __init__(self) -> None:
        super().__init__("Token has expired")


class WrongTokenTypeError(AuthenticationError):
    """A token of the wrong type was presented, e.g. a refresh token used for access."""
    error_code = "invalid_token_type"

    def __init__(self, expected: str, actual: Optional[str]) -> None:
        super().__init__(
            f"Expected a {expected} token",
            detail={"expected": expected, "actual": actual or "access"},
        )


class AccountLockedError(AuthenticationError):
    status_code = 403
    error_code = "account_locked"

    def __init__(self, locked_until: str, lockout_duration_minutes: int) -> None:
        super().__init__(
            "Account is temporarily locked due to repeated failed sign-in attempts",
            detail={
                "locked_until": locked_until,
                "lockout_duration_minutes": lockout_duration_minutes,
            },
        )


class AccountSuspendedError(AuthenticationError):
    status_code = 403
    error_code = "account_suspended"

    def __init__(self, reason: Optional[str]) -> None:
        super().__init__("Account is suspended", detail={"reason": reason})


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"
    kind = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"
    kind = "not_found"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"

    def __init__(self, retry_after: int, *, limit: Optional[int] = None) -> None:
        detail = {"retry_after": retry_after}
        if limit is not None:
            detail["limit"] = limit
        super().__init__("Too many requests, please try again later", detail=detail)
        self.retry_after = retry_after


class DependencyUnavailableError(ServiceError):
    """A store or upstream dependency failed or timed out (503)."""
    status_code = 503
    error_code = "service_unavailable"
    kind = "unavailable"


class OAuthProviderUnavailableError(DependencyUnavailableError):
    error_code = "oauth_provider_unavailable"


class OAuthConfigurationError(ServiceError):
    """OAuth client settings are missing; operator fault (500)."""
    status_code = 500
    error_code = "oauth_configuration_error"
    kind = "configuration"


class OAuthTokenExchangeError(ServiceError):
    error_code = "oauth_token_exchange_error"

    def __init__(
        self,
        message: str,
        *,
        provider: str = "google",
        upstream_status: Optional[int] = None,
    ) -> None:
        super().__init__(
            message, detail={"provider": provider, "upstream_status": upstream_status}
        )
        self.provider = provider
        self.upstream_status = upstream_status


class OAuthProfileFetchError(ServiceError):
    error_code = "oauth_profile_fetch_error"

    def __init__(
        self,
        message: str,
        *,
        provider: str = "google",
        upstream_status: Optional[int] = None,
    ) -> None:
        super().__init__(
            message, detail={"provider": provider, "upstream_status": upstream_status}
        )
        self.provider = provider
        self.upstream_status = upstream_status


class OAuthInvalidStateError(ServiceError):
    error_code = "oauth_invalid_state"

    def __init__(self, message: str = "Invalid or expired OAuth state") -> None:
        super().__init__(message)


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "InvalidPasswordError",
    "ConflictError",
    "UsernameUnavailableError",
    "EmailAlreadyExistsError",
    "OAuthProviderLinkError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "InvalidTokenError",
    "TokenExpiredError",
    "WrongTokenTypeError",
    "AccountLockedError",
    "AccountSuspendedError",
    "ForbiddenError",
    "NotFoundError",
    "RateLimitedError",
    "DependencyUnavailableError",
    "OAuthProviderUnavailableError",
    "OAuthConfigurationError",
    "OAuthTokenExchangeError",
    "OAuthProfileFetchError",
    "OAuthInvalidStateError",
    "ServerError",
]
