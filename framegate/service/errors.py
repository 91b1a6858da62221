from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass pins an HTTP ``status_code`` and a stable ``error_code`` that
    clients branch on; the message is for humans and may change.
    """

    status_code: int = 400
    error_code: str = "validation_error"

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


class PasswordPolicyError(ValidationError):
    """Password rejected by the strength policy; ``detail['errors']`` lists each rule."""

    def __init__(self, errors: list[str], *, score: int | None = None) -> None:
        detail: dict = {"errors": list(errors)}
        if score is not None:
            detail["score"] = score
        super().__init__("password does not meet requirements", detail=detail)
        self.errors = list(errors)


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidCredentialsError(AuthenticationError):
    """Unknown email or wrong password; the two are never distinguished."""
    error_code = "invalid_credentials"

    def __init__(self, message: str = "invalid email or password", **kwargs) -> None:
        super().__init__(message, **kwargs)


class TokenInvalidError(AuthenticationError):
    """Token malformed, badly signed, or issued for another audience."""
    error_code = "token_invalid"


class TokenWrongTypeError(TokenInvalidError):
    """A well-formed token of the other class (access vs refresh)."""


class TokenExpiredError(AuthenticationError):
    error_code = "token_expired"


class SessionNotFoundError(AuthenticationError):
    """Refresh token has no live record: rotated, revoked or expired."""
    error_code = "session_not_found"


class AccountLockedError(ServiceError):
    """Too many failed logins; carries when the lock lifts (423)."""
    status_code = 423
    error_code = "account_locked"

    def __init__(self, lock_until: datetime, *, now: Optional[datetime] = None) -> None:
        current = now or datetime.now(timezone.utc)
        retry_after = max(0, int((lock_until - current).total_seconds()))
        super().__init__(
            "account temporarily locked due to failed login attempts",
            detail={"lock_until": lock_until.isoformat(), "retry_after": retry_after},
        )
        self.lock_until = lock_until
        self.retry_after = retry_after


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class AccountDeactivatedError(ForbiddenError):
    error_code = "account_deactivated"

    def __init__(self, message: str = "account is deactivated", **kwargs) -> None:
        super().__init__(message, **kwargs)


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"

    def __init__(self, message: str = "too many requests", *, retry_after: int, limit: int) -> None:
        super().__init__(message, detail={"retry_after": retry_after, "limit": limit})
        self.retry_after = retry_after
        self.limit = limit


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "PasswordPolicyError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "TokenInvalidError",
    "TokenWrongTypeError",
    "TokenExpiredError",
    "SessionNotFoundError",
    "AccountLockedError",
    "ForbiddenError",
    "AccountDeactivatedError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
]
