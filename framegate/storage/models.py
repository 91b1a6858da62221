from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    """Back-office roles; also select the request-quota multiplier."""

    ADMIN = "admin"
    OWNER = "owner"
    EMPLOYEE = "employee"
    VIEWER = "viewer"


class TokenPurpose(str, Enum):
    EMAIL_VERIFICATION = "email_verification"
    PASSWORD_RESET = "password_reset"


@dataclass
class User:
    id: str
    email: str
    password_hash: str = field(repr=False)
    first_name: str = ""
    last_name: str = ""
    business_name: Optional[str] = None
    role: Role = Role.OWNER
    is_active: bool = True
    is_email_verified: bool = False
    login_attempts: int = 0
    lock_until: Optional[datetime] = None
    last_login: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def __post_init__(self) -> None:
        self.role = Role(self.role)

    def is_locked(self, now: Optional[datetime] = None) -> bool:
        return self.lock_until is not None and self.lock_until > (now or utcnow())


@dataclass
class RefreshTokenRecord:
    """One issued refresh token, i.e. one signed-in device."""

    id: str
    user_id: str
    token_hash: str = field(repr=False)
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)
    user_agent: Optional[str] = None
    ip_addr: Optional[str] = None

    @classmethod
    def new(
        cls,
        user_id: str,
        token_hash: str,
        expires_at: datetime,
        *,
        session_id: str | None = None,
        user_agent: str | None = None,
        ip_addr: str | None = None,
    ) -> "RefreshTokenRecord":
        return cls(
            id=session_id or str(uuid.uuid4()),
            user_id=user_id,
            token_hash=token_hash,
            expires_at=expires_at,
            user_agent=user_agent,
            ip_addr=ip_addr,
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at <= (now or utcnow())


@dataclass
class OneTimeToken:
    token_hash: str = field(repr=False)
    user_id: str
    purpose: TokenPurpose
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(cls, user_id: str, token_hash: str, purpose: TokenPurpose, ttl_seconds: int) -> "OneTimeToken":
        now = utcnow()
        return cls(
            token_hash=token_hash,
            user_id=user_id,
            purpose=TokenPurpose(purpose),
            expires_at=now + timedelta(seconds=ttl_seconds),
            created_at=now,
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at <= (now or utcnow())
