from __future__ import annotations

import hashlib
import math
import re
import secrets
import string
from dataclasses import dataclass, field
from typing import Optional

import httpx
from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from framegate.config import Settings
from framegate.logging import get_logger

logger = get_logger(__name__)

SPECIAL_CHARACTERS = '!@#$%^&*(),.?":{}|<>'

_COMMON_PREFIXES = re.compile(
    r"^(123456|password|qwerty|abc123|letmein|admin|welcome|monkey|dragon)"
)
_REPEATED_RUN = re.compile(r"(.)\1{3,}")
_STRENGTH_LABELS = ("very weak", "very weak", "weak", "fair", "strong", "very strong")


@dataclass
class StrengthResult:
    """Outcome of a strength check. ``score`` (0-5) is informational only."""

    valid: bool
    errors: list[str] = field(default_factory=list)
    score: int = 0
    entropy: float = 0.0

    @property
    def label(self) -> str:
        return strength_label(self.score)


def strength_label(score: int) -> str:
    return _STRENGTH_LABELS[max(0, min(score, len(_STRENGTH_LABELS) - 1))]


def entropy_bits(password: str) -> float:
    """Rough brute-force entropy from the character classes present."""
    pool = 0
    if re.search(r"[a-z]", password):
        pool += 26
    if re.search(r"[A-Z]", password):
        pool += 26
    if re.search(r"\d", password):
        pool += 10
    if re.search(r"[^a-zA-Z0-9]", password):
        pool += 32
    if not pool:
        return 0.0
    return round(len(password) * math.log2(pool), 2)


class PasswordPolicy:
    """Hashing, verification and strength rules for account passwords.

    Hashes are argon2id. ``rounds`` is the argon2 time cost; raise it together
    with ``memory_kib`` as hardware gets faster. Existing hashes keep verifying
    and are flagged by ``needs_rehash`` so login can upgrade them.
    """

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self.min_length = settings.password_min_length
        self.require_uppercase = settings.password_require_uppercase
        self.require_numbers = settings.password_require_numbers
        self.require_special = settings.password_require_special
        self._hasher = PasswordHasher(
            time_cost=settings.password_hash_rounds,
            memory_cost=settings.password_hash_memory_kib,
            type=Type.ID,
        )
        # verified against for unknown emails so both login paths cost the same
        self._dummy_hash = self._hasher.hash(secrets.token_urlsafe(16))

    def hash(self, password: str) -> str:
        return self._hasher.hash(password)

    def verify(self, password: str, password_hash: Optional[str]) -> bool:
        if not password_hash:
            return False
        try:
            return self._hasher.verify(password_hash, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError) as exc:
            logger.warning("password_hash_unverifiable", error=type(exc).__name__)
            return False

    def verify_dummy(self, password: str) -> None:
        self.verify(password, self._dummy_hash)

    def needs_rehash(self, password_hash: str) -> bool:
        try:
            return self._hasher.check_needs_rehash(password_hash)
        except InvalidHash:
            return True

    def validate_strength(self, password: str) -> StrengthResult:
        """Check ``password`` against every rule and collect one error per failure."""

        password = password or ""
        errors: list[str] = []
        score = 0

        if len(password) < self.min_length:
            errors.append(f"Password must be at least {self.min_length} characters long")
        else:
            score += 1
        has_upper = bool(re.search(r"[A-Z]", password))
        has_lower = bool(re.search(r"[a-z]", password))
        has_number = bool(re.search(r"\d", password))
        has_special = any(ch in SPECIAL_CHARACTERS for ch in password)

        if has_upper:
            score += 1
        elif self.require_uppercase:
            errors.append("Password must contain at least one uppercase letter")
        if has_number:
            score += 1
        elif self.require_numbers:
            errors.append("Password must contain at least one number")
        if has_special:
            score += 1
        elif self.require_special:
            errors.append("Password must contain at least one special character")

        if len(password) >= 12:
            score += 1
        if len(password) >= 16:
            score += 1
        if has_lower and has_upper:
            score += 1

        if _COMMON_PREFIXES.search(password.lower()):
            errors.append("Password must not start with a common pattern")
            score -= 2
        if _REPEATED_RUN.search(password):
            errors.append("Password must not repeat the same character 4 or more times")
            score -= 1

        return StrengthResult(
            valid=not errors,
            errors=errors,
            score=max(0, min(score, 5)),
            entropy=entropy_bits(password),
        )

    async def is_compromised(
        self, password: str, *, client: Optional[httpx.AsyncClient] = None
    ) -> bool:
        """Ask the breach corpus whether ``password`` has leaked.

        Only the first five hex characters of the SHA-1 digest leave the
        process. Any network or protocol failure counts as "not compromised".
        """

        digest = hashlib.sha1(password.encode("utf-8")).hexdigest().upper()
        prefix, suffix = digest[:5], digest[5:]
        url = f"{self.settings.breach_api_url.rstrip('/')}/range/{prefix}"
        try:
            if client is None:
                async with httpx.AsyncClient(
                    timeout=self.settings.breach_check_timeout_seconds
                ) as owned:
                    response = await owned.get(url, headers={"Add-Padding": "true"})
            else:
                response = await client.get(url, headers={"Add-Padding": "true"})
            response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning("breach_check_unavailable", error=str(exc))
            return False
        for line in response.text.splitlines():
            candidate, _, count = line.strip().partition(":")
            if candidate.upper() == suffix and count.strip() not in {"", "0"}:
                return True
        return False


def generate_secure_password(length: int = 16) -> str:
    """Random password that satisfies every default rule."""

    if length < 4:
        raise ValueError("length must be at least 4")
    alphabet = string.ascii_letters + string.digits + SPECIAL_CHARACTERS
    required = [
        secrets.choice(string.ascii_uppercase),
        secrets.choice(string.ascii_lowercase),
        secrets.choice(string.digits),
        secrets.choice(SPECIAL_CHARACTERS),
    ]
    while True:
        chars = required + [secrets.choice(alphabet) for _ in range(length - len(required))]
        secrets.SystemRandom().shuffle(chars)
        candidate = "".join(chars)
        if not _REPEATED_RUN.search(candidate) and not _COMMON_PREFIXES.search(candidate.lower()):
            return candidate
