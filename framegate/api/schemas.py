from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from framegate.storage.models import RefreshTokenRecord, User

MAX_PASSWORD_LENGTH = 128
MAX_TOKEN_LENGTH = 2048

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
    "invalid_credentials",
    "account_locked",
    "account_deactivated",
    "email_not_verified",
    "token_expired",
    "token_invalid",
    "session_not_found",
})


class ErrorBody(BaseModel):
    """Error part of the response envelope; ``code`` is stable for clients."""

    code: str = Field(..., description="Stable machine-readable error code")
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


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize and drop zero-width and bidi override characters."""
    hidden = {"\u200b", "\u200c", "\u200d", "\ufeff"}
    hidden.update(chr(c) for c in range(0x202A, 0x202F))
    hidden.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in value if c not in hidden)
    return unicodedata.normalize("NFKC", cleaned)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    labels = domain.split(".")
    if len(labels) < 2:
        raise ValueError("invalid email address format")
    for label in labels:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _bounded_password(value: str) -> str:
    # strength rules are enforced by the service so errors can list every rule
    if len(value) > MAX_PASSWORD_LENGTH:
        raise ValueError(f"password must be at most {MAX_PASSWORD_LENGTH} characters")
    return value


class WireModel(BaseModel):
    """Request and response bodies use camelCase keys on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, serialize_by_alias=True)


class RegisterRequest(WireModel):
    email: str
    password: str
    first_name: str = Field(default="", max_length=100)
    last_name: str = Field(default="", max_length=100)
    business_name: Optional[str] = Field(default=None, max_length=200)

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _bounded_password(value)

    @field_validator("first_name", "last_name", "business_name")
    @classmethod
    def _clean_names(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return _normalize_unicode(value).strip()


class LoginRequest(WireModel):
    email: str
    password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class RefreshRequest(WireModel):
    """Body is optional; the ``refreshToken`` cookie is used when absent."""

    refresh_token: Optional[str] = Field(default=None, max_length=MAX_TOKEN_LENGTH)


class LogoutRequest(WireModel):
    refresh_token: Optional[str] = Field(default=None, max_length=MAX_TOKEN_LENGTH)


class ForgotPasswordRequest(WireModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_forgot_email(cls, value: str) -> str:
        return _validate_email(value)


class ResetPasswordRequest(WireModel):
    token: str = Field(..., min_length=1, max_length=MAX_TOKEN_LENGTH)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _bounded_password(value)


class VerifyEmailRequest(WireModel):
    token: str = Field(..., min_length=1, max_length=MAX_TOKEN_LENGTH)


class ChangePasswordRequest(WireModel):
    current_password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _bounded_password(value)


class UserResponse(WireModel):
    id: str
    email: str
    first_name: str
    last_name: str
    business_name: Optional[str] = None
    role: str
    is_active: bool
    is_email_verified: bool
    last_login: Optional[datetime] = None
    created_at: datetime

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            email=user.email,
            first_name=user.first_name,
            last_name=user.last_name,
            business_name=user.business_name,
            role=user.role.value,
            is_active=user.is_active,
            is_email_verified=user.is_email_verified,
            last_login=user.last_login,
            created_at=user.created_at,
        )


class AuthResponse(WireModel):
    user: UserResponse
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int
    session_id: str
    refresh_expires_at: datetime


class TokenPairResponse(WireModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int
    session_id: str
    refresh_expires_at: datetime


class MessageResponse(WireModel):
    message: str


class LogoutAllResponse(WireModel):
    revoked: int


class SessionStateResponse(WireModel):
    state: str


class SessionInfo(WireModel):
    session_id: str
    created_at: datetime
    expires_at: datetime
    user_agent: Optional[str] = None
    ip_addr: Optional[str] = None
    current: bool = False

    @classmethod
    def from_record(cls, record: RefreshTokenRecord, current_session: Optional[str]) -> "SessionInfo":
        return cls(
            session_id=record.id,
            created_at=record.created_at,
            expires_at=record.expires_at,
            user_agent=record.user_agent,
            ip_addr=record.ip_addr,
            current=record.id == current_session,
        )


class SessionListResponse(WireModel):
    items: List[SessionInfo]
