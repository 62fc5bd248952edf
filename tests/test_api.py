"""End-to-end tests for the HTTP surface using FastAPI's TestClient."""

import time
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

import authcore.app as app_module
from authcore.api.routes import SESSION_COOKIE
from authcore.service.passwords import hash_token
from authcore.service.runtime import get_runtime
from authcore.service.tokens import TokenIssuer

STRONG_PASSWORD = "Correct-Horse-9"


@pytest.fixture
def client():
    return TestClient(app_module.app)


def _signup(client, username="alice", email="alice@example.com"):
    return client.post(
        "/v1/auth/signup",
        json={"username": username, "email": email, "password": STRONG_PASSWORD},
    )


def _signin(client, identifier="alice", password=STRONG_PASSWORD, **extra):
    return client.post(
        "/v1/auth/signin", json={"identifier": identifier, "password": password, **extra}
    )


def _bearer(token):
    return {"Authorization": f"Bearer {token}"}


class TestSignup:
    """Tests for POST /v1/auth/signup."""

    def test_signup_created(self, client):
        """A valid signup returns 201 with the new account in the envelope."""
        resp = _signup(client)

        assert resp.status_code == 201
        body = resp.json()
        assert body["status"] == "ok"
        assert body["data"]["username"] == "alice"
        assert body["data"]["requires_email_verification"] is True
        assert body["request_id"]
        assert resp.headers["X-RateLimit-Limit"] == "10"

    def test_weak_password_lists_errors(self, client):
        """Policy failures come back as 400 with every violation."""
        resp = client.post(
            "/v1/auth/signup", json={"username": "alice", "password": "weak"}
        )

        assert resp.status_code == 400
        error = resp.json()["error"]
        assert error["code"] == "invalid_password"
        assert len(error["details"]["errors"]) >= 3

    def test_duplicate_username_conflict(self, client):
        """Taken usernames are a 409 with suggestions."""
        _signup(client)
        resp = _signup(client, email="second@example.com")

        assert resp.status_code == 409
        error = resp.json()["error"]
        assert error["code"] == "username_unavailable"
        assert error["details"]["suggestions"]

    def test_malformed_body(self, client):
        """Schema failures use the validation error envelope."""
        resp = client.post("/v1/auth/signup", json={"username": "alice"})

        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "validation_error"


class TestSignin:
    """Tests for sign-in, session resolution and sign-out."""

    def test_signin_sets_cookie_and_tokens(self, client):
        """Sign-in returns tokens and sets the session cookie."""
        _signup(client)
        resp = _signin(client)

        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["token_type"] == "bearer"
        assert data["expires_in"] == 900
        assert data["user"]["email"] == "alice@example.com"
        assert resp.cookies.get(SESSION_COOKIE) == data["session_token"]
        set_cookie = resp.headers["set-cookie"].lower()
        assert "httponly" in set_cookie
        assert "samesite=lax" in set_cookie

    def test_bad_credentials(self, client):
        """Wrong passwords are 401 invalid_credentials."""
        _signup(client)
        resp = _signin(client, password="Wrong-Password-1")

        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "invalid_credentials"

    def test_me_with_bearer_cookie_and_header(self, client):
        """The session token is accepted as bearer, cookie or header."""
        _signup(client)
        token = _signin(client).json()["data"]["session_token"]

        assert client.get("/v1/users/me").json()["data"]["username"] == "alice"
        client.cookies.clear()
        assert client.get("/v1/users/me", headers=_bearer(token)).status_code == 200
        assert client.get("/v1/users/me", headers={"X-Session-Token": token}).status_code == 200

    def test_me_requires_session(self, client):
        """Missing or unknown tokens are 401 in the error envelope."""
        resp = client.get("/v1/users/me")
        assert resp.status_code == 401
        assert resp.json()["status"] == "error"
        assert resp.json()["error"]["code"] == "unauthorized"

        assert client.get("/v1/users/me", headers=_bearer("bogus")).status_code == 401

    def test_signout_ends_session(self, client):
        """After sign-out the token no longer resolves."""
        _signup(client)
        token = _signin(client).json()["data"]["session_token"]

        resp = client.post("/v1/auth/signout", headers=_bearer(token))
        assert resp.status_code == 200
        client.cookies.clear()
        assert client.get("/v1/users/me", headers=_bearer(token)).status_code == 401

    def test_signout_all(self, client):
        """Every session of the caller is revoked."""
        _signup(client)
        first = _signin(client).json()["data"]["session_token"]
        _signin(client)

        resp = client.post("/v1/auth/signout-all", headers=_bearer(first))
        assert resp.json()["data"]["sessions_revoked"] == 2


class TestTokensAndSessions:
    """Tests for token refresh and session management endpoints."""

    def test_refresh_token_mints_access_token(self, client):
        """A refresh token yields a new access token; an access token does not."""
        _signup(client)
        data = _signin(client).json()["data"]

        resp = client.post("/v1/auth/refresh", json={"refresh_token": data["refresh_token"]})
        assert resp.status_code == 200
        assert resp.json()["data"]["expires_in"] == 900

        bad = client.post("/v1/auth/refresh", json={"refresh_token": data["access_token"]})
        assert bad.status_code == 401
        assert bad.json()["error"]["code"] == "invalid_token_type"

    def test_access_token_authenticates_user_routes(self, client):
        """A signed access token works as a bearer credential without the cookie."""
        _signup(client)
        data = _signin(client).json()["data"]
        client.cookies.clear()

        resp = client.get("/v1/users/me", headers=_bearer(data["access_token"]))
        assert resp.status_code == 200
        assert resp.json()["data"]["username"] == "alice"

        sessions = client.get("/v1/users/me/sessions", headers=_bearer(data["access_token"]))
        assert [s["is_current"] for s in sessions.json()["data"]] == [True]

    def test_refresh_token_rejected_as_bearer(self, client):
        """Refresh tokens cannot stand in for access tokens."""
        _signup(client)
        data = _signin(client).json()["data"]
        client.cookies.clear()

        resp = client.get("/v1/users/me", headers=_bearer(data["refresh_token"]))
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "invalid_token_type"

    def test_expired_access_token_rejected(self, client):
        """An expired access token is refused with token_expired."""
        _signup(client)
        data = _signin(client).json()["data"]
        client.cookies.clear()
        runtime = get_runtime()
        stale = TokenIssuer(runtime.settings, clock=lambda: time.time() - 3600).issue(
            data["user"]["id"], "alice", session_id=data["session_id"]
        )

        resp = client.get("/v1/users/me", headers=_bearer(stale.access_token))
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "token_expired"

    def test_access_token_dies_with_its_session(self, client):
        """Signing out revokes the access tokens minted for that session."""
        _signup(client)
        data = _signin(client).json()["data"]
        client.post("/v1/auth/signout", headers=_bearer(data["session_token"]))
        client.cookies.clear()

        resp = client.get("/v1/users/me", headers=_bearer(data["access_token"]))
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "invalid_token"

    def test_session_refresh_extend(self, client):
        """Extending a session returns new tokens; a keep-alive call does not."""
        _signup(client)
        token = _signin(client).json()["data"]["session_token"]

        keep_alive = client.post("/v1/auth/session/refresh", headers=_bearer(token))
        assert keep_alive.json()["data"]["extended"] is False

        extended = client.post("/v1/auth/session/refresh?extend=true", headers=_bearer(token))
        assert extended.json()["data"]["extended"] is True
        assert extended.json()["data"]["access_token"]

    def test_list_and_revoke_sessions(self, client):
        """Callers see their sessions and can revoke one by id."""
        _signup(client)
        current = _signin(client).json()["data"]
        other = _signin(client).json()["data"]

        listed = client.get("/v1/users/me/sessions", headers=_bearer(current["session_token"]))
        sessions = listed.json()["data"]
        assert len(sessions) == 2
        assert [s["is_current"] for s in sessions if s["id"] == current["session_id"]] == [True]

        resp = client.delete(
            f"/v1/users/me/sessions/{other['session_id']}",
            headers=_bearer(current["session_token"]),
        )
        assert resp.json()["data"]["revoked"] is True
        client.cookies.clear()
        assert client.get("/v1/users/me", headers=_bearer(other["session_token"])).status_code == 401


class TestUsers:
    """Tests for profile and username endpoints."""

    def test_update_profile(self, client):
        """PATCH applies the given fields and rejects unknown ones."""
        _signup(client)
        token = _signin(client).json()["data"]["session_token"]

        resp = client.patch("/v1/users/me", json={"bio": "hi there"}, headers=_bearer(token))
        assert resp.json()["data"]["bio"] == "hi there"

        bad = client.patch("/v1/users/me", json={"is_admin": True}, headers=_bearer(token))
        assert bad.status_code == 400

    def test_username_availability(self, client):
        """Taken names report suggestions; reserved names are unavailable."""
        _signup(client)

        taken = client.get("/v1/users/username-available/alice").json()["data"]
        assert taken["available"] is False
        assert taken["suggestions"][0] == "alice1"
        assert client.get("/v1/users/username-available/carol").json()["data"]["available"] is True
        assert client.get("/v1/users/username-available/admin").json()["data"]["available"] is False

    def test_change_username(self, client):
        """A free name can be claimed."""
        _signup(client)
        token = _signin(client).json()["data"]["session_token"]

        resp = client.put("/v1/users/me/username", json={"username": "alice_2"}, headers=_bearer(token))
        assert resp.json()["data"]["username"] == "alice_2"

    def test_deactivate_blocks_sign_in(self, client):
        """A deactivated account is signed out and cannot sign back in."""
        _signup(client)
        token = _signin(client).json()["data"]["session_token"]

        assert client.delete("/v1/users/me", headers=_bearer(token)).status_code == 200
        resp = _signin(client)
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "account_suspended"


class TestEmailFlows:
    """Tests for reset and verification endpoints."""

    def test_reset_request_is_uniform(self, client):
        """Known and unknown emails get the same answer."""
        _signup(client)

        known = client.post("/v1/auth/password/reset-request", json={"email": "alice@example.com"})
        unknown = client.post("/v1/auth/password/reset-request", json={"email": "ghost@example.com"})
        assert known.status_code == unknown.status_code == 200
        assert known.json()["data"] == unknown.json()["data"]

    def test_reset_request_throttled(self, client):
        """Past the limit the endpoint answers 429 with Retry-After."""
        for _ in range(5):
            client.post("/v1/auth/password/reset-request", json={"email": "a@example.com"})
        resp = client.post("/v1/auth/password/reset-request", json={"email": "a@example.com"})

        assert resp.status_code == 429
        assert resp.json()["error"]["code"] == "rate_limited"
        assert int(resp.headers["Retry-After"]) >= 1
        assert resp.headers["X-RateLimit-Remaining"] == "0"

    def test_password_reset_round_trip(self, client):
        """A valid reset token replaces the password."""
        _signup(client)
        store = get_runtime().store
        user = store.get_user_by_username("alice")
        store.update_user(
            user.id,
            password_reset_token=hash_token("reset-token"),
            password_reset_expires=datetime.now(timezone.utc) + timedelta(minutes=5),
        )

        resp = client.post(
            "/v1/auth/password/reset",
            json={"token": "reset-token", "new_password": "Brand-New-Pass-2"},
        )
        assert resp.status_code == 200
        assert _signin(client).status_code == 401
        assert _signin(client, password="Brand-New-Pass-2").status_code == 200

        replay = client.post(
            "/v1/auth/password/reset",
            json={"token": "reset-token", "new_password": "Another-Pass-3"},
        )
        assert replay.status_code == 401

    def test_verify_with_bad_token(self, client):
        """Unknown verification tokens are a validation error."""
        resp = client.post("/v1/auth/email/verify", json={"token": "nope"})

        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "validation_error"


class TestGoogleEndpoints:
    """Tests for the provider redirect and callback guards."""

    def test_callback_with_provider_error(self, client):
        """An error returned by Google is a 400 exchange error."""
        resp = client.get("/v1/auth/google/callback?error=access_denied")

        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "oauth_token_exchange_error"

    def test_start_without_configuration(self, client):
        """Without client credentials the redirect endpoint reports a configuration error."""
        resp = client.get("/v1/auth/google", follow_redirects=False)

        assert resp.status_code == 500
        assert resp.json()["error"]["code"] == "oauth_configuration_error"


class TestPlatform:
    """Tests for health and middleware."""

    def test_healthz(self, client):
        """The health check reports the memory store and no fast store."""
        body = client.get("/healthz").json()

        assert body["status"] == "healthy"
        assert body["checks"]["database"] == {"status": "healthy", "type": "memory"}
        assert body["checks"]["redis"] == {"status": "not_configured"}
        assert body["version"] == app_module.__version__

    def test_request_id_and_security_headers(self, client):
        """Request ids are echoed and hardening headers set."""
        resp = client.get("/healthz", headers={"X-Request-ID": "req-123"})

        assert resp.headers["X-Request-ID"] == "req-123"
        assert resp.headers["X-Frame-Options"] == "DENY"
        assert resp.headers["X-Content-Type-Options"] == "nosniff"
