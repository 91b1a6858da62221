from __future__ import annotations

import asyncio
import contextlib
import itertools
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Iterator, List, Optional, Protocol

from framegate.config import Settings
from framegate.logging import email_fingerprint, get_logger
from framegate.service.email import EmailService
from framegate.service.errors import (
    AccountDeactivatedError,
    AccountLockedError,
    AuthenticationError,
    ConflictError,
    ForbiddenError,
    InvalidCredentialsError,
    NotFoundError,
    PasswordPolicyError,
    ServerError,
    ServiceError,
    SessionNotFoundError,
    TokenExpiredError,
    TokenInvalidError,
    ValidationError,
)
from framegate.service.passwords import PasswordPolicy
from framegate.service.rate_limit import RateLimiter
from framegate.service.tokens import TokenPayload, TokenService
from framegate.storage.common import generate_uuid, normalize_email
from framegate.storage.errors import ConstraintViolation
from framegate.storage.models import (
    RefreshTokenRecord,
    Role,
    TokenPurpose,
    User,
    utcnow,
)

logger = get_logger(__name__)


class AccountStore(Protocol):
    def create_user(
        self,
        email: str,
        password_hash: str,
        *,
        first_name: str = "",
        last_name: str = "",
        business_name: Optional[str] = None,
        role: Role | str = Role.OWNER,
        is_active: bool = True,
        is_email_verified: bool = False,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def update_user(self, user_id: str, **fields: Any) -> Optional[User]: ...

    def increment_login_attempts(
        self, user_id: str, *, max_attempts: int, lockout_seconds: int
    ) -> Optional[User]: ...

    def reset_login_attempts(self, user_id: str) -> Optional[User]: ...

    def delete_user(self, user_id: str) -> bool: ...

    def create_one_time_token(
        self, user_id: str, purpose: TokenPurpose, ttl_seconds: int
    ) -> str: ...

    def apply_one_time_token(
        self, purpose: TokenPurpose, token: str, updates: dict[str, Any]
    ) -> Optional[User]: ...

    def purge_expired_one_time_tokens(self) -> int: ...


class SessionStore(Protocol):
    def save_refresh_token(
        self,
        user_id: str,
        token: str,
        expires_at: datetime,
        *,
        session_id: str | None = None,
        user_agent: str | None = None,
        ip_addr: str | None = None,
    ) -> RefreshTokenRecord: ...

    def get_refresh_token(self, token: str) -> Optional[RefreshTokenRecord]: ...

    def delete_refresh_token(self, token: str) -> bool: ...

    def delete_refresh_token_by_id(self, user_id: str, session_id: str) -> bool: ...

    def delete_user_refresh_tokens(self, user_id: str) -> int: ...

    def list_user_refresh_tokens(self, user_id: str) -> List[RefreshTokenRecord]: ...

    def purge_expired_refresh_tokens(self) -> int: ...


class SessionState(str, Enum):
    ANONYMOUS = "anonymous"
    ACTIVE = "active"  # access token valid
    REFRESHABLE = "refreshable"  # access expired or absent, refresh record live


class SessionEvent(str, Enum):
    LOGIN = "login"
    ACCESS_EXPIRED = "access_expired"
    REFRESH = "refresh"
    REFRESH_REUSED = "refresh_reused"
    REFRESH_EXPIRED = "refresh_expired"
    LOGOUT = "logout"
    PASSWORD_CHANGED = "password_changed"


class InvalidTransition(Exception):
    def __init__(self, state: SessionState, event: SessionEvent) -> None:
        super().__init__(f"{event.value} is not valid in state {state.value}")
        self.state = state
        self.event = event


_S = SessionState
_E = SessionEvent

_TRANSITIONS: dict[tuple[SessionState, SessionEvent], SessionState] = {
    (_S.ANONYMOUS, _E.LOGIN): _S.ACTIVE,
    (_S.ANONYMOUS, _E.REFRESH_REUSED): _S.ANONYMOUS,
    (_S.ANONYMOUS, _E.REFRESH_EXPIRED): _S.ANONYMOUS,
    (_S.ANONYMOUS, _E.LOGOUT): _S.ANONYMOUS,
    (_S.ANONYMOUS, _E.PASSWORD_CHANGED): _S.ANONYMOUS,
    (_S.ACTIVE, _E.LOGIN): _S.ACTIVE,
    (_S.ACTIVE, _E.ACCESS_EXPIRED): _S.REFRESHABLE,
    (_S.ACTIVE, _E.REFRESH): _S.ACTIVE,
    (_S.ACTIVE, _E.REFRESH_REUSED): _S.ANONYMOUS,
    (_S.ACTIVE, _E.REFRESH_EXPIRED): _S.ANONYMOUS,
    (_S.ACTIVE, _E.LOGOUT): _S.ANONYMOUS,
    (_S.ACTIVE, _E.PASSWORD_CHANGED): _S.ANONYMOUS,
    (_S.REFRESHABLE, _E.LOGIN): _S.ACTIVE,
    (_S.REFRESHABLE, _E.REFRESH): _S.ACTIVE,
    (_S.REFRESHABLE, _E.REFRESH_REUSED): _S.ANONYMOUS,
    (_S.REFRESHABLE, _E.REFRESH_EXPIRED): _S.ANONYMOUS,
    (_S.REFRESHABLE, _E.LOGOUT): _S.ANONYMOUS,
    (_S.REFRESHABLE, _E.PASSWORD_CHANGED): _S.ANONYMOUS,
}

# pairs that cannot happen; listed so every pair is accounted for
_REJECTED: frozenset[tuple[SessionState, SessionEvent]] = frozenset(
    {
        (_S.ANONYMOUS, _E.ACCESS_EXPIRED),
        (_S.ANONYMOUS, _E.REFRESH),
        (_S.REFRESHABLE, _E.ACCESS_EXPIRED),
    }
)

_unhandled = set(itertools.product(SessionState, SessionEvent)) - set(_TRANSITIONS) - _REJECTED
if _unhandled:
    raise RuntimeError(f"session transitions missing for {sorted(_unhandled)}")


def transition(state: SessionState, event: SessionEvent) -> SessionState:
    """Next session state, or ``InvalidTransition`` for impossible pairs."""
    try:
        return _TRANSITIONS[(state, event)]
    except KeyError:
        raise InvalidTransition(state, event) from None


@dataclass
class AuthResult:
    user: User
    access_token: str
    refresh_token: str
    session_id: str
    expires_in: int
    refresh_expires_at: datetime
    state: SessionState = SessionState.ACTIVE


@dataclass
class AuthContext:
    user: User
    session_id: Optional[str]
    token_expires_at: int

    @property
    def user_id(self) -> str:
        return self.user.id

    @property
    def role(self) -> Role:
        return self.user.role


class AuthService:
    """Account and session use cases.

    Holds no per-request state; everything mutable lives in the two stores,
    whose backends make lockout counting and refresh rotation atomic.
    """

    def __init__(
        self,
        accounts: AccountStore,
        sessions: SessionStore,
        settings: Settings,
        *,
        passwords: Optional[PasswordPolicy] = None,
        tokens: Optional[TokenService] = None,
        limiter: Optional[RateLimiter] = None,
        email: Optional[EmailService] = None,
    ) -> None:
        self.accounts = accounts
        self.sessions = sessions
        self.settings = settings
        self.passwords = passwords or PasswordPolicy(settings)
        self.tokens = tokens or TokenService(settings)
        self.limiter = limiter
        self.email = email or EmailService.from_settings(settings)
        self.logger = logger
        self._pending_notifications: set[asyncio.Task] = set()

    @contextlib.contextmanager
    def _storage(self, op: str, **context: Any) -> Iterator[None]:
        """Surface backend failures as a generic 500 with the cause logged."""
        try:
            yield
        except (ConstraintViolation, ServiceError):
            raise
        except Exception as exc:
            self.logger.exception(
                "storage_operation_failed", op=op, error_type=type(exc).__name__, **context
            )
            raise ServerError("storage temporarily unavailable") from exc

    def _log_transition(
        self, state: SessionState, event: SessionEvent, **context: Any
    ) -> SessionState:
        next_state = transition(state, event)
        self.logger.info(
            "session_transition",
            from_state=state.value,
            session_event=event.value,
            to_state=next_state.value,
            **context,
        )
        return next_state

    # notifications
    def _notify(self, send: Callable[..., bool], *args: Any) -> None:
        """Send mail in a worker thread without holding up the response."""

        async def _run() -> None:
            try:
                delivered = await asyncio.to_thread(send, *args)
            except Exception as exc:
                self.logger.error(
                    "notification_failed", kind=send.__name__, error=str(exc)
                )
                return
            if not delivered:
                self.logger.warning("notification_not_delivered", kind=send.__name__)

        try:
            task = asyncio.get_running_loop().create_task(_run())
        except RuntimeError:
            self.logger.warning("notification_skipped_no_loop", kind=send.__name__)
            return
        self._pending_notifications.add(task)
        task.add_done_callback(self._pending_notifications.discard)

    async def drain_notifications(self) -> None:
        if self._pending_notifications:
            await asyncio.gather(*list(self._pending_notifications), return_exceptions=True)

    # password checks
    async def _check_new_password(self, password: str) -> None:
        strength = self.passwords.validate_strength(password)
        if not strength.valid:
            raise PasswordPolicyError(strength.errors, score=strength.score)
        if self.settings.breach_check_enabled and await self.passwords.is_compromised(password):
            raise PasswordPolicyError(
                ["Password has appeared in a known data breach; choose another"],
                score=strength.score,
            )

    def _issue_session(
        self,
        user: User,
        *,
        session_id: Optional[str] = None,
        user_agent: Optional[str] = None,
        ip_addr: Optional[str] = None,
    ) -> AuthResult:
        session_id = session_id or generate_uuid()
        role = user.role.value
        access_token = self.tokens.issue_access(user.id, user.email, role, session_id)
        refresh_token = self.tokens.issue_refresh(user.id, user.email, role, session_id)
        expires_at = utcnow() + timedelta(seconds=self.tokens.refresh_ttl_seconds)
        with self._storage("save_refresh_token", user_id=user.id):
            self.sessions.save_refresh_token(
                user.id,
                refresh_token,
                expires_at,
                session_id=session_id,
                user_agent=user_agent,
                ip_addr=ip_addr,
            )
        return AuthResult(
            user=user,
            access_token=access_token,
            refresh_token=refresh_token,
            session_id=session_id,
            expires_in=self.tokens.access_ttl_seconds,
            refresh_expires_at=expires_at,
        )

    # registration
    async def create_account(
        self,
        email: str,
        password: str,
        *,
        first_name: str = "",
        last_name: str = "",
        business_name: Optional[str] = None,
        role: Role | str = Role.OWNER,
        is_email_verified: bool = False,
    ) -> User:
        normalized = normalize_email(email)
        if "@" not in normalized:
            raise ValidationError("invalid email address", detail={"field": "email"})
        await self._check_new_password(password)
        password_hash = self.passwords.hash(password)
        try:
            with self._storage("create_user", email=email_fingerprint(normalized)):
                user = self.accounts.create_user(
                    normalized,
                    password_hash,
                    first_name=first_name,
                    last_name=last_name,
                    business_name=business_name,
                    role=Role(role),
                    is_email_verified=is_email_verified,
                )
        except ConstraintViolation as exc:
            raise ConflictError("an account with this email already exists", detail=exc.detail)
        self.logger.info("user_created", user_id=user.id, role=user.role.value)
        return user

    async def register(
        self,
        email: str,
        password: str,
        *,
        first_name: str = "",
        last_name: str = "",
        business_name: Optional[str] = None,
        user_agent: Optional[str] = None,
        ip_addr: Optional[str] = None,
    ) -> AuthResult:
        user = await self.create_account(
            email,
            password,
            first_name=first_name,
            last_name=last_name,
            business_name=business_name,
        )
        result = self._issue_session(user, user_agent=user_agent, ip_addr=ip_addr)
        self._log_transition(
            SessionState.ANONYMOUS, SessionEvent.LOGIN, user_id=user.id, session_id=result.session_id
        )
        self._send_verification(user)
        return result

    def _send_verification(self, user: User) -> str:
        with self._storage("create_one_time_token", user_id=user.id):
            token = self.accounts.create_one_time_token(
                user.id,
                TokenPurpose.EMAIL_VERIFICATION,
                self.settings.email_verification_ttl_hours * 3600,
            )
        self._notify(self.email.send_email_verification, user.email, token)
        return token

    # login
    async def _record_credential_failure(self, email: str, ip: Optional[str]) -> None:
        if self.limiter:
            await self.limiter.record_credential_failure(email, ip or "unknown")

    async def login(
        self,
        email: str,
        password: str,
        *,
        user_agent: Optional[str] = None,
        ip_addr: Optional[str] = None,
    ) -> AuthResult:
        normalized = normalize_email(email)
        fingerprint = email_fingerprint(normalized)
        if self.limiter:
            decision = await self.limiter.check_credentials(normalized, ip_addr or "unknown")
            decision.raise_if_blocked("too many failed login attempts; try again later")

        with self._storage("get_user_by_email", email=fingerprint):
            user = self.accounts.get_user_by_email(normalized)
        if user is None:
            self.passwords.verify_dummy(password)
            await self._record_credential_failure(normalized, ip_addr)
            self.logger.warning("login_failed", reason="unknown_email", email=fingerprint, ip=ip_addr)
            raise InvalidCredentialsError()

        now = utcnow()
        if user.is_locked(now):
            self.logger.warning("login_rejected_locked", user_id=user.id, ip=ip_addr)
            raise AccountLockedError(user.lock_until, now=now)

        if not self.passwords.verify(password, user.password_hash):
            with self._storage("increment_login_attempts", user_id=user.id):
                updated = self.accounts.increment_login_attempts(
                    user.id,
                    max_attempts=self.settings.max_login_attempts,
                    lockout_seconds=self.settings.lockout_minutes * 60,
                )
            await self._record_credential_failure(normalized, ip_addr)
            attempts = updated.login_attempts if updated else None
            self.logger.warning(
                "login_failed", reason="bad_password", user_id=user.id, attempts=attempts, ip=ip_addr
            )
            if updated is not None and updated.is_locked():
                self.logger.warning(
                    "account_locked", user_id=user.id, lock_until=updated.lock_until.isoformat()
                )
            raise InvalidCredentialsError()

        if not user.is_active:
            self.logger.warning("login_rejected_inactive", user_id=user.id)
            raise AccountDeactivatedError()
        if self.settings.require_verified_email and not user.is_email_verified:
            raise ForbiddenError("email address not verified", error_code="email_not_verified")

        with self._storage("reset_login_attempts", user_id=user.id):
            user = self.accounts.reset_login_attempts(user.id) or user
            if self.passwords.needs_rehash(user.password_hash):
                user = (
                    self.accounts.update_user(user.id, password_hash=self.passwords.hash(password))
                    or user
                )
                self.logger.info("password_rehashed", user_id=user.id)
        if self.limiter:
            await self.limiter.reset_credentials(normalized, ip_addr or "unknown")

        result = self._issue_session(user, user_agent=user_agent, ip_addr=ip_addr)
        self._log_transition(
            SessionState.ANONYMOUS, SessionEvent.LOGIN, user_id=user.id, session_id=result.session_id
        )
        return result

    # refresh / logout
    async def refresh(
        self,
        refresh_token: str,
        *,
        user_agent: Optional[str] = None,
        ip_addr: Optional[str] = None,
    ) -> AuthResult:
        try:
            payload = self.tokens.verify(refresh_token, expect_refresh=True)
        except TokenExpiredError:
            self._log_transition(SessionState.REFRESHABLE, SessionEvent.REFRESH_EXPIRED)
            raise

        with self._storage("get_refresh_token", user_id=payload.user_id):
            record = self.sessions.get_refresh_token(refresh_token)
        if record is None or record.user_id != payload.user_id:
            # a validly signed token with no record was already rotated: end the
            # session its successor belongs to
            revoked = False
            if payload.session_id:
                with self._storage("delete_refresh_token_by_id", user_id=payload.user_id):
                    revoked = self.sessions.delete_refresh_token_by_id(
                        payload.user_id, payload.session_id
                    )
            self._log_transition(
                SessionState.REFRESHABLE,
                SessionEvent.REFRESH_REUSED,
                user_id=payload.user_id,
                session_id=payload.session_id,
                family_revoked=revoked,
            )
            raise SessionNotFoundError("session not found or already rotated")

        with self._storage("delete_refresh_token", user_id=record.user_id):
            won = self.sessions.delete_refresh_token(refresh_token)
        if not won:
            # another request rotated this token between our read and delete
            self._log_transition(
                SessionState.REFRESHABLE,
                SessionEvent.REFRESH_REUSED,
                user_id=record.user_id,
                session_id=record.id,
            )
            raise SessionNotFoundError("session not found or already rotated")

        with self._storage("get_user", user_id=record.user_id):
            user = self.accounts.get_user(record.user_id)
        if user is None:
            raise SessionNotFoundError("session not found or already rotated")
        if not user.is_active:
            raise AccountDeactivatedError()

        result = self._issue_session(
            user, session_id=record.id, user_agent=user_agent or record.user_agent, ip_addr=ip_addr
        )
        self._log_transition(
            SessionState.REFRESHABLE, SessionEvent.REFRESH, user_id=user.id, session_id=record.id
        )
        return result

    async def logout(self, refresh_token: Optional[str] = None) -> bool:
        """Forget one refresh token. Unknown or missing tokens are a no-op."""

        if not refresh_token:
            return False
        with self._storage("delete_refresh_token"):
            removed = self.sessions.delete_refresh_token(refresh_token)
        if removed:
            self._log_transition(
                SessionState.ACTIVE,
                SessionEvent.LOGOUT,
                session_id=self.tokens.peek_session_id(refresh_token),
            )
        return removed

    async def logout_all(self, user_id: str) -> int:
        with self._storage("delete_user_refresh_tokens", user_id=user_id):
            revoked = self.sessions.delete_user_refresh_tokens(user_id)
        self.logger.info("sessions_revoked_all", user_id=user_id, count=revoked)
        return revoked

    # password recovery
    async def forgot_password(self, email: str) -> Optional[str]:
        """Issue and mail a reset token if the account exists.

        Callers must answer identically either way; the raw token is returned
        only for in-process callers such as admin tooling.
        """

        normalized = normalize_email(email)
        with self._storage("get_user_by_email", email=email_fingerprint(normalized)):
            user = self.accounts.get_user_by_email(normalized)
        if user is None or not user.is_active:
            self.logger.info("password_reset_unknown_account", email=email_fingerprint(normalized))
            return None
        with self._storage("create_one_time_token", user_id=user.id):
            token = self.accounts.create_one_time_token(
                user.id,
                TokenPurpose.PASSWORD_RESET,
                self.settings.password_reset_ttl_minutes * 60,
            )
        self._notify(self.email.send_password_reset, user.email, token)
        self.logger.info("password_reset_requested", user_id=user.id)
        return token

    async def reset_password(self, token: str, new_password: str) -> User:
        await self._check_new_password(new_password)
        password_hash = self.passwords.hash(new_password)
        with self._storage("apply_one_time_token", purpose=TokenPurpose.PASSWORD_RESET.value):
            user = self.accounts.apply_one_time_token(
                TokenPurpose.PASSWORD_RESET,
                token,
                {"password_hash": password_hash, "login_attempts": 0, "lock_until": None},
            )
        if user is None:
            self.logger.warning("password_reset_invalid_token")
            raise TokenInvalidError("invalid or expired reset token")
        revoked = await self.logout_all(user.id)
        self._log_transition(
            SessionState.ACTIVE, SessionEvent.PASSWORD_CHANGED, user_id=user.id, revoked=revoked
        )
        self._notify(self.email.send_password_changed, user.email)
        self.logger.info("password_reset_completed", user_id=user.id)
        return user

    async def change_password(self, user_id: str, current_password: str, new_password: str) -> int:
        with self._storage("get_user", user_id=user_id):
            user = self.accounts.get_user(user_id)
        if user is None:
            raise NotFoundError("user not found")
        if not self.passwords.verify(current_password, user.password_hash):
            self.logger.warning("password_change_rejected", user_id=user_id)
            raise InvalidCredentialsError("current password is incorrect")
        if current_password == new_password:
            raise PasswordPolicyError(["New password must differ from the current password"])
        await self._check_new_password(new_password)
        with self._storage("update_user", user_id=user_id):
            self.accounts.update_user(user_id, password_hash=self.passwords.hash(new_password))
        revoked = await self.logout_all(user_id)
        self._log_transition(
            SessionState.ACTIVE, SessionEvent.PASSWORD_CHANGED, user_id=user_id, revoked=revoked
        )
        self._notify(self.email.send_password_changed, user.email)
        return revoked

    # email verification
    async def verify_email(self, token: str) -> User:
        with self._storage("apply_one_time_token", purpose=TokenPurpose.EMAIL_VERIFICATION.value):
            user = self.accounts.apply_one_time_token(
                TokenPurpose.EMAIL_VERIFICATION, token, {"is_email_verified": True}
            )
        if user is None:
            self.logger.warning("email_verification_invalid_token")
            raise TokenInvalidError("invalid or expired verification token")
        self.logger.info("email_verified", user_id=user.id)
        return user

    async def resend_verification(self, user_id: str) -> str:
        with self._storage("get_user", user_id=user_id):
            user = self.accounts.get_user(user_id)
        if user is None:
            raise NotFoundError("user not found")
        if user.is_email_verified:
            raise ConflictError("email address already verified")
        return self._send_verification(user)

    # access checks
    async def authenticate(self, access_token: Optional[str]) -> AuthContext:
        if not access_token:
            raise AuthenticationError("authentication required")
        payload: TokenPayload = self.tokens.verify(access_token)
        with self._storage("get_user", user_id=payload.user_id):
            user = self.accounts.get_user(payload.user_id)
        if user is None:
            raise TokenInvalidError("account no longer exists")
        if not user.is_active:
            raise AccountDeactivatedError()
        return AuthContext(user=user, session_id=payload.session_id, token_expires_at=payload.expires_at)

    async def session_state(
        self, access_token: Optional[str], refresh_token: Optional[str]
    ) -> SessionState:
        """Classify a client's token pair."""

        if access_token:
            try:
                self.tokens.verify(access_token)
                return SessionState.ACTIVE
            except (TokenExpiredError, TokenInvalidError):
                pass
        if refresh_token:
            try:
                self.tokens.verify(refresh_token, expect_refresh=True)
            except (TokenExpiredError, TokenInvalidError):
                return SessionState.ANONYMOUS
            with self._storage("get_refresh_token"):
                record = self.sessions.get_refresh_token(refresh_token)
            if record is not None:
                return SessionState.REFRESHABLE
        return SessionState.ANONYMOUS

    # devices
    async def list_sessions(self, user_id: str) -> List[RefreshTokenRecord]:
        with self._storage("list_user_refresh_tokens", user_id=user_id):
            return self.sessions.list_user_refresh_tokens(user_id)

    async def revoke_session(self, user_id: str, session_id: str) -> None:
        with self._storage("delete_refresh_token_by_id", user_id=user_id):
            removed = self.sessions.delete_refresh_token_by_id(user_id, session_id)
        if not removed:
            raise NotFoundError("session not found", detail={"session_id": session_id})
        self._log_transition(
            SessionState.ACTIVE, SessionEvent.LOGOUT, user_id=user_id, session_id=session_id
        )

    # administration
    async def delete_user(self, user_id: str) -> bool:
        await self.logout_all(user_id)
        with self._storage("delete_user", user_id=user_id):
            deleted = self.accounts.delete_user(user_id)
        if deleted:
            self.logger.info("user_deleted", user_id=user_id)
        return deleted

    def cleanup_expired(self) -> dict[str, int]:
        """Purge expired refresh and one-time tokens. Blocking; run in a thread."""
        with self._storage("purge_expired"):
            refresh = self.sessions.purge_expired_refresh_tokens()
            one_time = self.accounts.purge_expired_one_time_tokens()
        if refresh or one_time:
            self.logger.info("expired_tokens_purged", refresh_tokens=refresh, one_time_tokens=one_time)
        return {"refresh_tokens": refresh, "one_time_tokens": one_time}
