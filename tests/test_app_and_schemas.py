import pytest
from pydantic import ValidationError

from framegate import app as app_module
from framegate.api.schemas import (
    ChangePasswordRequest,
    LoginRequest,
    RegisterRequest,
    SessionInfo,
    UserResponse,
    _normalize_unicode,
)
from framegate.storage.memory import MemoryStore
from framegate.storage.models import utcnow


def test_create_app_returns_module_app():
    assert app_module.create_app() is app_module.app


def test_routes_are_mounted_under_v1():
    paths = {route.path for route in app_module.app.routes}
    for path in (
        "/v1/auth/register",
        "/v1/auth/login",
        "/v1/auth/refresh",
        "/v1/auth/logout",
        "/v1/auth/logout-all",
        "/v1/auth/forgot-password",
        "/v1/auth/reset-password",
        "/v1/auth/verify-email",
        "/v1/auth/change-password",
        "/v1/auth/me",
        "/v1/auth/sessions/{session_id}",
        "/healthz",
    ):
        assert path in paths


class TestRegisterRequest:
    def test_email_is_normalised(self):
        body = RegisterRequest(email="  Alice@Example.COM ", password="Str0ng!Pass")
        assert body.email == "alice@example.com"

    @pytest.mark.parametrize(
        "email",
        ["plainaddress", "@example.com", "alice@", "alice@localhost", "al ice@example.com"],
    )
    def test_bad_emails(self, email):
        with pytest.raises(ValidationError):
            RegisterRequest(email=email, password="Str0ng!Pass")

    def test_password_length_is_bounded(self):
        with pytest.raises(ValidationError):
            RegisterRequest(email="a@example.com", password="A1!" + "x" * 200)

    def test_names_drop_hidden_characters(self):
        body = RegisterRequest(
            email="a@example.com",
            password="Str0ng!Pass",
            first_name=" Ali\u200bce ",
            business_name="Frames\u202e Co",
        )
        assert body.first_name == "Alice"
        assert body.business_name == "Frames Co"

    def test_weak_password_passes_schema(self):
        # strength is the service's job so every failed rule can be reported
        assert RegisterRequest(email="a@example.com", password="weak").password == "weak"


def test_normalize_unicode_folds_compatibility_forms():
    assert _normalize_unicode("ｆｕｌｌ") == "full"


def test_login_and_change_password_bounds():
    with pytest.raises(ValidationError):
        LoginRequest(email="a@example.com", password="x" * 129)
    with pytest.raises(ValidationError):
        ChangePasswordRequest(current_password="old", new_password="y" * 129)


def test_user_response_hides_secrets():
    store = MemoryStore()
    user = store.create_user("a@example.com", "argon2-hash", first_name="Ann")
    payload = UserResponse.from_user(user).model_dump()
    assert payload["email"] == "a@example.com"
    assert payload["role"] == "owner"
    assert payload["firstName"] == "Ann"
    assert "passwordHash" not in payload
    assert "loginAttempts" not in payload


def test_request_models_accept_camel_case():
    body = RegisterRequest.model_validate(
        {"email": "a@example.com", "password": "Str0ng!Pass", "firstName": "Ann", "businessName": "Frames"}
    )
    assert body.first_name == "Ann"
    assert body.business_name == "Frames"
    change = ChangePasswordRequest.model_validate({"currentPassword": "old", "newPassword": "new"})
    assert change.current_password == "old"


def test_session_info_marks_current():
    store = MemoryStore()
    user = store.create_user("a@example.com", "hash")
    record = store.save_refresh_token(user.id, "rt", utcnow(), session_id="s1")
    assert SessionInfo.from_record(record, "s1").current is True
    assert SessionInfo.from_record(record, "s2").current is False
