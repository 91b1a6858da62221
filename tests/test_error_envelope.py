"""Error envelope format and the exception-to-response mapping.

Every error response has the shape:
{
    "status": "error",
    "error": {"code": "<stable_code>", "message": "<human readable>", "details": ...},
    "request_id": "<uuid>"
}
"""

import json
from datetime import timedelta

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from pydantic import ValidationError

from framegate.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    _error_response,
    register_exception_handlers,
)
from framegate.api.schemas import Envelope, ErrorBody
from framegate.service.errors import (
    AccountLockedError,
    PasswordPolicyError,
    RateLimitedError,
    ServerError,
    SessionNotFoundError,
)
from framegate.storage.errors import ConstraintViolation
from framegate.storage.models import utcnow


class TestErrorBody:
    def test_required_fields(self):
        error = ErrorBody(code="unauthorized", message="authentication required")
        assert error.details is None

    def test_details_may_be_a_list(self):
        error = ErrorBody(code="validation_error", message="bad", details=[{"loc": ["email"]}])
        assert error.details[0]["loc"] == ["email"]

    @pytest.mark.parametrize(
        "code",
        ["account_locked", "invalid_credentials", "token_expired", "session_not_found"],
    )
    def test_auth_codes_are_valid(self, code):
        assert ErrorBody(code=code, message="x").code == code

    def test_unknown_code_rejected(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot", message="x")


class TestEnvelope:
    def test_request_id_is_generated(self):
        first = Envelope(status="ok", data={})
        second = Envelope(status="ok", data={})
        assert first.request_id != second.request_id

    def test_status_is_constrained(self):
        with pytest.raises(ValidationError):
            Envelope(status="maybe")


class TestStatusMapping:
    @pytest.mark.parametrize(
        "status,code",
        [(400, "validation_error"), (401, "unauthorized"), (422, "validation_error"), (429, "rate_limited")],
    )
    def test_known_statuses(self, status, code):
        assert _STATUS_TO_CODE[status] == code
        assert _error_code_for_status(status) == code

    def test_unknown_status_is_server_error(self):
        assert _error_code_for_status(418) == "server_error"

    def test_error_response_body(self):
        response = _error_response(404, "session not found", {"session_id": "s1"})
        body = json.loads(response.body)
        assert response.status_code == 404
        assert body["status"] == "error"
        assert body["error"] == {
            "code": "not_found",
            "message": "session not found",
            "details": {"session_id": "s1"},
        }
        assert body["request_id"]


def _app_raising(exc: Exception) -> TestClient:
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/boom")
    async def boom():
        raise exc

    return TestClient(app, raise_server_exceptions=False)


class TestHandlers:
    def test_locked_account(self):
        lock_until = utcnow() + timedelta(minutes=90)
        response = _app_raising(AccountLockedError(lock_until)).get("/boom")
        assert response.status_code == 423
        error = response.json()["error"]
        assert error["code"] == "account_locked"
        assert error["details"]["lock_until"] == lock_until.isoformat()

    def test_rate_limited_sets_headers(self):
        response = _app_raising(RateLimitedError(retry_after=30, limit=20)).get("/boom")
        assert response.status_code == 429
        assert response.headers["Retry-After"] == "30"
        assert response.headers["X-RateLimit-Limit"] == "20"
        assert response.headers["X-RateLimit-Remaining"] == "0"

    def test_password_policy_details(self):
        response = _app_raising(PasswordPolicyError(["too short", "needs a digit"], score=1)).get(
            "/boom"
        )
        assert response.status_code == 400
        assert response.json()["error"]["details"] == {
            "errors": ["too short", "needs a digit"],
            "score": 1,
        }

    def test_session_not_found_is_401(self):
        response = _app_raising(SessionNotFoundError("gone")).get("/boom")
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "session_not_found"

    def test_constraint_violation_is_conflict(self):
        response = _app_raising(ConstraintViolation("email exists", {"field": "email"})).get("/boom")
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "conflict"

    def test_server_error_hides_nothing_extra(self):
        response = _app_raising(ServerError("storage temporarily unavailable")).get("/boom")
        assert response.status_code == 500
        assert response.json()["error"]["details"] is None

    def test_uncaught_exception(self):
        response = _app_raising(KeyError("secret-internal-name")).get("/boom")
        assert response.status_code == 500
        body = response.json()
        assert body["error"]["code"] == "server_error"
        assert "secret-internal-name" not in response.text

    def test_unknown_route_uses_envelope(self):
        response = _app_raising(ServerError("x")).get("/missing")
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "not_found"
