from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from framegate.config import Settings
from framegate.logging import get_logger
from framegate.service.errors import (
    TokenExpiredError,
    TokenInvalidError,
    TokenWrongTypeError,
)

logger = get_logger(__name__)


class TokenType(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"


@dataclass(frozen=True)
class TokenPayload:
    user_id: str
    email: str
    role: str
    token_type: TokenType
    issued_at: int
    expires_at: int
    jti: str
    session_id: Optional[str] = None


def extract_bearer(header: Optional[str]) -> Optional[str]:
    """Return the credential of an ``Authorization: Bearer`` header, if any."""
    if not header:
        return None
    scheme, _, credential = header.strip().partition(" ")
    if scheme.lower() != "bearer" or not credential.strip():
        return None
    return credential.strip()


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


class TokenService:
    """HS256 JWTs for the two token classes.

    Access and refresh tokens are signed with different secrets, so a leaked
    access secret cannot mint refresh tokens. No clock-skew leeway is applied:
    a token is expired the second ``exp`` is reached.
    """

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self.access_ttl_seconds = settings.access_token_ttl_minutes * 60
        self.refresh_ttl_seconds = settings.refresh_token_ttl_days * 24 * 3600
        self._secrets = {
            TokenType.ACCESS: settings.jwt_access_secret.encode(),
            TokenType.REFRESH: settings.jwt_refresh_secret.encode(),
        }

    def issue_access(
        self, user_id: str, email: str, role: str, session_id: Optional[str] = None
    ) -> str:
        return self._issue(TokenType.ACCESS, user_id, email, role, session_id)

    def issue_refresh(
        self, user_id: str, email: str, role: str, session_id: Optional[str] = None
    ) -> str:
        return self._issue(TokenType.REFRESH, user_id, email, role, session_id)

    def _issue(
        self,
        token_type: TokenType,
        user_id: str,
        email: str,
        role: str,
        session_id: Optional[str],
    ) -> str:
        now = int(time.time())
        ttl = self.access_ttl_seconds if token_type is TokenType.ACCESS else self.refresh_ttl_seconds
        payload: dict[str, Any] = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": user_id,
            "email": email,
            "role": getattr(role, "value", role),
            "type": token_type.value,
            "iat": now,
            "exp": now + ttl,
            # unique per token even when two are minted in the same second
            "jti": str(uuid.uuid4()),
        }
        if session_id:
            payload["sid"] = session_id
        return self._encode_jwt(payload, self._secrets[token_type])

    def verify(self, token: str, *, expect_refresh: bool = False) -> TokenPayload:
        """Check signature, issuer, audience, expiry and class of ``token``.

        Raises:
            TokenExpiredError: signature valid but ``exp`` has passed
            TokenWrongTypeError: valid token of the other class
            TokenInvalidError: anything else
        """

        expected = TokenType.REFRESH if expect_refresh else TokenType.ACCESS
        other = TokenType.ACCESS if expect_refresh else TokenType.REFRESH
        claims = self._decode_jwt(token, self._secrets[expected])
        if claims is None:
            if self._decode_jwt(token, self._secrets[other]) is not None:
                raise TokenWrongTypeError(f"expected {expected.value} token")
            raise TokenInvalidError("invalid token")
        if claims.get("type") != expected.value:
            raise TokenWrongTypeError(f"expected {expected.value} token")

        exp = claims.get("exp")
        if not isinstance(exp, (int, float)):
            raise TokenInvalidError("invalid token")
        if exp <= time.time():
            raise TokenExpiredError("token expired")
        try:
            return TokenPayload(
                user_id=str(claims["sub"]),
                email=str(claims.get("email", "")),
                role=str(claims.get("role", "")),
                token_type=expected,
                issued_at=int(claims.get("iat", 0)),
                expires_at=int(exp),
                jti=str(claims["jti"]),
                session_id=claims.get("sid"),
            )
        except KeyError as exc:
            raise TokenInvalidError("invalid token") from exc

    def is_expiring_soon(self, token: str, within_minutes: Optional[int] = None) -> bool:
        """True when ``exp`` is within the grace window. Does not check the signature."""

        window = (
            self.settings.token_expiry_grace_minutes if within_minutes is None else within_minutes
        )
        claims = self._peek_claims(token)
        exp = claims.get("exp") if claims else None
        if not isinstance(exp, (int, float)):
            return True
        return exp - time.time() <= window * 60

    def peek_session_id(self, token: str) -> Optional[str]:
        claims = self._peek_claims(token)
        return claims.get("sid") if claims else None

    @staticmethod
    def _peek_claims(token: str) -> Optional[dict[str, Any]]:
        try:
            _, payload_b64, _ = token.split(".")
            claims = json.loads(_decode_segment(payload_b64))
        except (ValueError, TypeError):
            return None
        return claims if isinstance(claims, dict) else None

    @staticmethod
    def _encode_jwt(payload: dict[str, Any], secret: bytes) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        signature = hmac.new(secret, signing_input.encode(), hashlib.sha256).digest()
        return f"{signing_input}.{_encode_segment(signature)}"

    def _decode_jwt(self, token: str, secret: bytes) -> Optional[dict[str, Any]]:
        """Claims of a correctly signed token for this issuer/audience, else None.

        Expiry is left to the caller so it can be reported separately.
        """

        if not token or not isinstance(token, str):
            return None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        try:
            header = json.loads(_decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return None
        # reject alg confusion before touching the signature
        if not isinstance(header, dict):
            return None
        if header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm", alg=header.get("alg"))
            return None

        signing_input = f"{header_b64}.{payload_b64}"
        expected_sig = _encode_segment(
            hmac.new(secret, signing_input.encode(), hashlib.sha256).digest()
        )
        if not hmac.compare_digest(expected_sig, sig_b64):
            return None
        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud:
            return None
        return payload
