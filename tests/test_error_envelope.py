"""Tests for the error envelope format and the exception handlers.

Error responses take the shape:
{
    "status": "error",
    "error": {
        "code": "<stable_code>",
        "message": "<human_readable>",
        "details": <object|array|null>
    },
    "request_id": "<uuid>"
}
"""

import json

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from pydantic import ValidationError

from authcore.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    _error_response,
    register_exception_handlers,
)
from authcore.api.schemas import Envelope, ErrorBody
from authcore.service.errors import (
    AccountLockedError,
    DependencyUnavailableError,
    RateLimitedError,
    ServiceError,
)
from authcore.storage.errors import ConstraintViolation


class TestErrorBody:
    """Tests for the ErrorBody model."""

    def test_required_fields(self):
        """ErrorBody requires code and message."""
        error = ErrorBody(code="unauthorized", message="Invalid credentials")

        assert error.details is None

    def test_details_accept_dict_and_list(self):
        """Details may be an object or an array."""
        assert ErrorBody(code="validation_error", message="x", details={"field": "email"}).details
        assert len(ErrorBody(code="validation_error", message="x", details=[{}, {}]).details) == 2

    def test_unknown_code_rejected(self):
        """Only stable codes are allowed."""
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot", message="no")

    def test_every_service_error_code_is_valid(self):
        """Each service exception maps to an allowed envelope code."""
        def walk(cls):
            for sub in cls.__subclasses__():
                yield sub
                yield from walk(sub)

        for cls in walk(ServiceError):
            ErrorBody(code=cls.error_code, message="x")


class TestEnvelope:
    """Tests for the Envelope model."""

    def test_request_id_generated(self):
        """Each envelope gets its own request id."""
        assert Envelope(status="ok").request_id != Envelope(status="ok").request_id

    def test_status_restricted(self):
        """Status is ok or error."""
        with pytest.raises(ValidationError):
            Envelope(status="maybe")


class TestErrorResponse:
    """Tests for the response helper."""

    def test_status_code_mapping(self):
        """Unmapped statuses fall back to server_error."""
        assert _error_code_for_status(401) == "unauthorized"
        assert _error_code_for_status(503) == "service_unavailable"
        assert _error_code_for_status(418) == "server_error"
        assert _STATUS_TO_CODE[429] == "rate_limited"

    def test_response_body_shape(self):
        """The JSON body matches the envelope."""
        resp = _error_response(404, "missing", {"id": "x"})
        body = json.loads(resp.body)

        assert resp.status_code == 404
        assert body["status"] == "error"
        assert body["error"] == {"code": "not_found", "message": "missing", "details": {"id": "x"}}
        assert body["request_id"]


def _app_raising(exc):
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/boom")
    async def boom():
        raise exc

    return TestClient(app, raise_server_exceptions=False)


class TestHandlers:
    """Tests for exception-to-response mapping."""

    def test_service_error(self):
        """Service errors keep their status, code and detail."""
        resp = _app_raising(AccountLockedError("2030-01-01T00:00:00+00:00", 30)).get("/boom")

        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "account_locked"
        assert resp.json()["error"]["details"]["lockout_duration_minutes"] == 30

    def test_rate_limited_sets_retry_after(self):
        """Rate-limit errors carry a Retry-After header."""
        resp = _app_raising(RateLimitedError(42, limit=5)).get("/boom")

        assert resp.status_code == 429
        assert resp.headers["Retry-After"] == "42"

    def test_dependency_unavailable(self):
        """Store outages are 503 service_unavailable."""
        resp = _app_raising(DependencyUnavailableError("Session store unavailable")).get("/boom")

        assert resp.status_code == 503
        assert resp.json()["error"]["code"] == "service_unavailable"

    def test_constraint_violation(self):
        """Storage constraint violations become 409 conflicts."""
        resp = _app_raising(ConstraintViolation("email already exists", {"field": "email"})).get("/boom")

        assert resp.status_code == 409
        assert resp.json()["error"]["details"] == {"field": "email"}

    def test_unhandled_exception(self):
        """Anything else is a generic 500 without internals."""
        resp = _app_raising(KeyError("secret-internal")).get("/boom")

        assert resp.status_code == 500
        assert resp.json()["error"]["code"] == "server_error"
        assert "secret-internal" not in resp.text
