"""Storage helpers shared between the memory, postgres and redis backends.

Keeping these in one place means every backend normalises emails, hashes
tokens and advances lockout counters the same way.
"""

from __future__ import annotations

import hashlib
import secrets
import uuid
from datetime import datetime, timedelta
from ipaddress import ip_address
from typing import Any, Optional

from framegate.storage.errors import ConstraintViolation
from framegate.storage.models import Role, utcnow

# Columns callers may change through update_user. Failed-login counting goes
# through increment_login_attempts; login_attempts and lock_until are listed so
# a password reset can clear them in the same write as the new hash.
USER_MUTABLE_FIELDS = frozenset(
    {
        "email",
        "password_hash",
        "first_name",
        "last_name",
        "business_name",
        "role",
        "is_active",
        "is_email_verified",
        "login_attempts",
        "lock_until",
        "last_login",
    }
)


def normalize_email(email: str) -> str:
    """Trim and case-fold an address; uniqueness is checked on this form."""
    return (email or "").strip().lower()


def hash_token(token: str) -> str:
    """SHA-256 hex digest of an opaque token. Raw tokens are never persisted."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def new_opaque_token() -> str:
    return secrets.token_urlsafe(32)


def generate_uuid() -> str:
    return str(uuid.uuid4())


def validate_user_updates(fields: dict[str, Any]) -> dict[str, Any]:
    """Reject unknown columns and normalise the ones that need it.

    Raises:
        ConstraintViolation: If a field is not updatable
    """
    unknown = set(fields) - USER_MUTABLE_FIELDS
    if unknown:
        raise ConstraintViolation("unknown user fields", {"fields": sorted(unknown)})
    cleaned = dict(fields)
    if "email" in cleaned:
        cleaned["email"] = normalize_email(cleaned["email"])
    if "role" in cleaned:
        cleaned["role"] = Role(cleaned["role"])
    return cleaned


def next_lockout_state(
    attempts: int,
    lock_until: Optional[datetime],
    *,
    max_attempts: int,
    lockout: timedelta,
    now: Optional[datetime] = None,
) -> tuple[int, Optional[datetime]]:
    """Counter and lock after one more failed login.

    An expired lock restarts the count at one. A running lock is kept as is so
    concurrent failures never push the unlock time further out.
    """
    current = now or utcnow()
    if lock_until is not None and lock_until <= current:
        return 1, None
    attempts += 1
    if lock_until is None and attempts >= max_attempts:
        lock_until = current + lockout
    return attempts, lock_until


def parse_ip_address(raw_ip: Any) -> Optional[str]:
    """Normalise an IP address to its canonical string form, or None."""
    if raw_ip is None:
        return None
    text = str(raw_ip).strip()
    if not text:
        return None
    try:
        return str(ip_address(text))
    except ValueError:
        return None


def safe_row_value(row: Any, key: str, default: Optional[Any] = None) -> Optional[Any]:
    """Read a column from a dict row or an attribute row."""
    if hasattr(row, "get"):
        return row.get(key, default)
    try:
        return row[key]
    except (KeyError, TypeError, AttributeError):
        return default
