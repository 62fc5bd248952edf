from __future__ import annotations

from datetime import timezone
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Path, Query, Request, Response
from fastapi.responses import RedirectResponse

from authcore.api.schemas import (
    AuthResponse,
    EmailResendRequest,
    EmailVerificationRequest,
    Envelope,
    PasswordResetConfirm,
    PasswordResetRequest,
    ProfileUpdateRequest,
    SessionRefreshResponse,
    SessionView,
    SigninRequest,
    SignupRequest,
    SignupResponse,
    TokenRefreshRequest,
    TokenRefreshResponse,
    UsernameAvailabilityResponse,
    UsernameChangeRequest,
)
from authcore.logging import get_logger
from authcore.service.auth import DeviceContext
from authcore.service.errors import ForbiddenError, OAuthTokenExchangeError
from authcore.service.rate_limit import client_ip
from authcore.service.runtime import Runtime, get_runtime
from authcore.service.sessions import (
    SessionData,
    SessionOptions,
    extract_device_info,
    is_mobile_device,
)
from authcore.service.tokens import TokenPair
from authcore.service.users import is_username_allowed, public_profile
from authcore.storage.models import User

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

SESSION_COOKIE = "session-token"
SESSION_HEADER = "x-session-token"


def _http_error(
    code: str,
    message: str,
    status_code: int,
    details: Optional[dict | str] = None,
    headers: Optional[dict] = None,
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload, headers=headers)


class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining", "reset_epoch")

    def __init__(self, limit: int, remaining: int, reset_epoch: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_epoch = reset_epoch

    @property
    def headers(self) -> dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(max(0, self.remaining)),
            "X-RateLimit-Reset": str(self.reset_epoch),
        }

    def apply_headers(self, response: Response) -> None:
        for name, value in self.headers.items():
            response.headers[name] = value


async def _enforce_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    response: Optional[Response] = None,
) -> RateLimitInfo:
    """Count one request against ``key`` and raise 429 once the window is spent."""
    result = await runtime.limiter.check(key, window_seconds, limit)
    info = RateLimitInfo(result.limit, result.remaining, result.reset_epoch)
    if result.limit_exceeded:
        raise _http_error(
            "rate_limited",
            "Too many requests. Please try again later.",
            status_code=429,
            details={"retry_after": result.retry_after()},
            headers={**info.headers, "Retry-After": str(result.retry_after())},
        )
    if response is not None:
        info.apply_headers(response)
    return info


def _client_ip(request: Request) -> str:
    return client_ip(request.headers, request.client.host if request.client else None)


def _device_context(
    request: Request, *, remember_me: bool = False, is_mobile: bool = False
) -> DeviceContext:
    user_agent = request.headers.get("user-agent")
    device_info = extract_device_info(user_agent)
    return DeviceContext(
        ip_address=_client_ip(request),
        user_agent=user_agent,
        device_info=device_info,
        remember_me=remember_me,
        is_mobile=is_mobile or is_mobile_device(user_agent, device_info),
    )


def _session_token_from_request(
    request: Request, authorization: Optional[str]
) -> Optional[str]:
    if authorization and authorization.lower().startswith("bearer "):
        token = authorization[7:].strip()
        if token:
            return token
    return request.cookies.get(SESSION_COOKIE) or request.headers.get(SESSION_HEADER) or None


async def get_session(
    request: Request, authorization: Optional[str] = Header(None)
) -> SessionData:
    """Resolve the caller's session from a session token or a signed access token.

    Store outages surface as 503 via the error handlers.
    """
    token = _session_token_from_request(request, authorization)
    if not token:
        raise _http_error("unauthorized", "authentication required", status_code=401)
    sessions = get_runtime().sessions
    # Session tokens are hex and never contain dots
    if token.count(".") == 2:
        return await sessions.resolve_access_token(token)
    session = await sessions.validate(token)
    if session is None:
        raise _http_error("unauthorized", "invalid or expired session", status_code=401)
    return session


def _apply_session_cookie(runtime: Runtime, response: Response, session: SessionData) -> None:
    expires_at = session.expires_at
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    else:
        expires_at = expires_at.astimezone(timezone.utc)
    response.set_cookie(
        SESSION_COOKIE,
        session.session_token,
        httponly=True,
        secure=runtime.settings.session_cookie_secure,
        samesite="lax",
        expires=expires_at,
        path="/",
    )


def _clear_session_cookie(runtime: Runtime, response: Response) -> None:
    response.delete_cookie(
        SESSION_COOKIE, path="/", secure=runtime.settings.session_cookie_secure, samesite="lax"
    )


def _auth_response(user: User, session: SessionData, tokens: TokenPair) -> AuthResponse:
    return AuthResponse(
        user=public_profile(user, include_private=True),
        session_id=session.session_id,
        session_token=session.session_token,
        session_expires_at=session.expires_at,
        access_token=tokens.access_token,
        refresh_token=tokens.refresh_token,
        expires_in=tokens.access_ttl,
        refresh_expires_in=tokens.refresh_ttl,
    )


@router.post("/auth/signup", response_model=Envelope, status_code=201, tags=["auth"])
async def signup(body: SignupRequest, request: Request, response: Response):
    """Create an account; the password policy runs before anything is stored."""
    runtime = get_runtime()
    if not runtime.settings.allow_signup:
        raise ForbiddenError("signup disabled")
    await _enforce_rate_limit(
        runtime,
        f"signup:{_client_ip(request)}",
        runtime.settings.signup_rate_limit,
        runtime.settings.signup_rate_window_seconds,
        response=response,
    )
    result = await runtime.auth.register(
        body.username,
        body.email,
        body.password,
        display_name=body.display_name,
        birth_date=body.birth_date,
    )
    return Envelope(
        status="ok",
        data=SignupResponse(
            user_id=result.user.id,
            username=result.user.username,
            email=result.user.email,
            requires_email_verification=result.requires_email_verification,
        ),
    )


@router.post("/auth/signin", response_model=Envelope, tags=["auth"])
async def signin(body: SigninRequest, request: Request, response: Response):
    """Authenticate with username or email plus password.

    Raises:
        401: invalid credentials
        403: account locked or suspended
        429: request or failed-attempt throttle exceeded
    """
    runtime = get_runtime()
    ip = _client_ip(request)
    await _enforce_rate_limit(
        runtime,
        f"login:{ip}",
        runtime.settings.login_rate_limit,
        runtime.settings.login_rate_window_seconds,
        response=response,
    )
    result = await runtime.auth.sign_in(
        body.identifier,
        body.password,
        _device_context(request, remember_me=body.remember_me, is_mobile=body.is_mobile),
    )
    _apply_session_cookie(runtime, response, result.session)
    return Envelope(status="ok", data=_auth_response(result.user, result.session, result.tokens))


@router.post("/auth/signout", response_model=Envelope, tags=["auth"])
async def signout(response: Response, session: SessionData = Depends(get_session)):
    runtime = get_runtime()
    await runtime.auth.sign_out(session.session_token)
    _clear_session_cookie(runtime, response)
    return Envelope(status="ok", data={"message": "signed out"})


@router.post("/auth/signout-all", response_model=Envelope, tags=["auth"])
async def signout_all(response: Response, session: SessionData = Depends(get_session)):
    runtime = get_runtime()
    count = await runtime.auth.sign_out_all(session.user_id)
    _clear_session_cookie(runtime, response)
    return Envelope(status="ok", data={"sessions_revoked": count})


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(body: TokenRefreshRequest):
    """Mint a new access token from a refresh token. The refresh token is not rotated."""
    runtime = get_runtime()
    access_token, ttl = runtime.tokens.refresh(body.refresh_token)
    return Envelope(
        status="ok", data=TokenRefreshResponse(access_token=access_token, expires_in=ttl)
    )


@router.post("/auth/session/refresh", response_model=Envelope, tags=["auth"])
async def refresh_session(
    response: Response,
    extend: bool = Query(False),
    session: SessionData = Depends(get_session),
):
    runtime = get_runtime()
    refreshed = await runtime.sessions.refresh(session.session_token, extend_expiration=extend)
    if refreshed is None:
        raise _http_error("unauthorized", "invalid or expired session", status_code=401)
    if refreshed.tokens is not None:
        _apply_session_cookie(runtime, response, refreshed.session)
    return Envelope(
        status="ok",
        data=SessionRefreshResponse(
            session_id=refreshed.session.session_id,
            session_expires_at=refreshed.session.expires_at,
            extended=refreshed.tokens is not None,
            access_token=refreshed.tokens.access_token if refreshed.tokens else None,
            refresh_token=refreshed.tokens.refresh_token if refreshed.tokens else None,
        ),
    )


@router.post("/auth/password/reset-request", response_model=Envelope, tags=["auth"])
async def request_password_reset(body: PasswordResetRequest, request: Request, response: Response):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"password-reset:{_client_ip(request)}",
        runtime.settings.reset_rate_limit,
        runtime.settings.reset_rate_window_seconds,
        response=response,
    )
    await runtime.auth.request_password_reset(body.email)
    # Same answer whether or not the account exists
    return Envelope(
        status="ok",
        data={"message": "If that email is registered, a reset link has been sent"},
    )


@router.post("/auth/password/reset", response_model=Envelope, tags=["auth"])
async def reset_password(body: PasswordResetConfirm):
    runtime = get_runtime()
    await runtime.auth.reset_password(body.token, body.new_password)
    return Envelope(status="ok", data={"message": "password reset"})


@router.post("/auth/email/verify", response_model=Envelope, tags=["auth"])
async def verify_email(body: EmailVerificationRequest):
    runtime = get_runtime()
    user = await runtime.auth.verify_email(body.token)
    return Envelope(status="ok", data={"user_id": user.id, "email_verified": True})


@router.post("/auth/email/resend", response_model=Envelope, tags=["auth"])
async def resend_verification(body: EmailResendRequest, request: Request, response: Response):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"resend-verification:{_client_ip(request)}",
        runtime.settings.reset_rate_limit,
        runtime.settings.reset_rate_window_seconds,
        response=response,
    )
    await runtime.auth.resend_verification(body.email)
    return Envelope(
        status="ok",
        data={"message": "If that email awaits verification, a new link has been sent"},
    )


@router.get("/auth/google", tags=["auth"])
async def google_start(request: Request):
    """Redirect to Google's consent screen with a server-issued state."""
    runtime = get_runtime()
    info = await _enforce_rate_limit(
        runtime,
        f"oauth-google:{_client_ip(request)}",
        runtime.settings.oauth_rate_limit,
        runtime.settings.oauth_rate_window_seconds,
    )
    state = await runtime.oauth.create_state()
    redirect = RedirectResponse(runtime.oauth.build_authorization_url(state), status_code=302)
    info.apply_headers(redirect)
    return redirect


@router.get("/auth/google/callback", response_model=Envelope, tags=["auth"])
async def google_callback(
    request: Request,
    response: Response,
    code: Optional[str] = Query(None, max_length=2048),
    state: Optional[str] = Query(None, max_length=256),
    error: Optional[str] = Query(None, max_length=256),
):
    runtime = get_runtime()
    ip = _client_ip(request)
    await _enforce_rate_limit(
        runtime,
        f"oauth-callback-google:{ip}",
        runtime.settings.oauth_callback_rate_limit,
        runtime.settings.oauth_rate_window_seconds,
        response=response,
    )
    if error or not code:
        logger.warning("oauth_callback_rejected", provider="google", error=error, has_code=bool(code))
        raise OAuthTokenExchangeError(
            f"Google authorization failed: {error}" if error else "Missing authorization code",
            provider="google",
        )
    context = _device_context(request)
    result = await runtime.oauth.complete_sign_in(
        code,
        state,
        SessionOptions(
            device_info=context.device_info,
            ip_address=context.ip_address,
            user_agent=context.user_agent,
            is_mobile=context.is_mobile,
        ),
    )
    _apply_session_cookie(runtime, response, result.created.session)
    return Envelope(
        status="ok",
        data=_auth_response(result.user, result.created.session, result.created.tokens),
    )


@router.get("/users/me", response_model=Envelope, tags=["users"])
async def get_me(session: SessionData = Depends(get_session)):
    runtime = get_runtime()
    profile = await runtime.users.get_profile(session.user_id, include_private=True)
    return Envelope(status="ok", data=profile)


@router.patch("/users/me", response_model=Envelope, tags=["users"])
async def update_me(body: ProfileUpdateRequest, session: SessionData = Depends(get_session)):
    runtime = get_runtime()
    profile = await runtime.users.update_profile(
        session.user_id, **body.model_dump(exclude_unset=True)
    )
    return Envelope(status="ok", data=profile)


@router.delete("/users/me", response_model=Envelope, tags=["users"])
async def deactivate_me(response: Response, session: SessionData = Depends(get_session)):
    runtime = get_runtime()
    await runtime.users.deactivate(session.user_id)
    _clear_session_cookie(runtime, response)
    return Envelope(status="ok", data={"message": "account deactivated"})


@router.put("/users/me/username", response_model=Envelope, tags=["users"])
async def change_username(body: UsernameChangeRequest, session: SessionData = Depends(get_session)):
    runtime = get_runtime()
    profile = await runtime.users.change_username(session.user_id, body.username)
    return Envelope(status="ok", data=profile)


@router.get("/users/username-available/{username}", response_model=Envelope, tags=["users"])
async def username_available(username: str = Path(..., max_length=64)):
    runtime = get_runtime()
    available = is_username_allowed(username) and await runtime.users.is_username_available(
        username
    )
    suggestions = [] if available else await runtime.users.suggest_usernames(username)
    return Envelope(
        status="ok",
        data=UsernameAvailabilityResponse(
            username=username, available=available, suggestions=suggestions
        ),
    )


@router.get("/users/me/sessions", response_model=Envelope, tags=["users"])
async def list_my_sessions(session: SessionData = Depends(get_session)):
    runtime = get_runtime()
    sessions = await runtime.users.list_sessions(session.user_id, session.session_id)
    return Envelope(status="ok", data=[SessionView(**item) for item in sessions])


@router.delete("/users/me/sessions/{session_id}", response_model=Envelope, tags=["users"])
async def revoke_my_session(
    session_id: str = Path(..., max_length=64), session: SessionData = Depends(get_session)
):
    runtime = get_runtime()
    revoked = await runtime.users.revoke_session(session.user_id, session_id)
    return Envelope(status="ok", data={"revoked": revoked})


@router.delete("/users/me/sessions", response_model=Envelope, tags=["users"])
async def revoke_other_sessions(session: SessionData = Depends(get_session)):
    runtime = get_runtime()
    count = await runtime.users.revoke_other_sessions(session.user_id, session.session_id)
    return Envelope(status="ok", data={"sessions_revoked": count})
