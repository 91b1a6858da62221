from __future__ import annotations

import json
import threading
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional

from framegate.logging import get_logger
from framegate.storage.common import (
    generate_uuid,
    hash_token,
    new_opaque_token,
    next_lockout_state,
    normalize_email,
    parse_ip_address,
    validate_user_updates,
)
from framegate.storage.errors import ConstraintViolation
from framegate.storage.models import (
    OneTimeToken,
    RefreshTokenRecord,
    Role,
    TokenPurpose,
    User,
    utcnow,
)


class MemoryStore:
    """In-process account and session store.

    Implements both the account and refresh-token interfaces. Every operation
    runs under one re-entrant lock, which makes counter increments and token
    deletion atomic for all threads of the process. When ``state_dir`` is set
    the whole state is written to ``memory_store.json`` after each mutation so
    a dev server survives restarts.
    """

    def __init__(
        self,
        state_dir: str | None = None,
        *,
        max_refresh_tokens_per_user: int = 5,
    ) -> None:
        self.logger = get_logger(__name__)
        self.max_refresh_tokens_per_user = max_refresh_tokens_per_user
        self.users: Dict[str, User] = {}
        self.refresh_tokens: Dict[str, RefreshTokenRecord] = {}  # keyed by token hash
        self.one_time_tokens: Dict[str, OneTimeToken] = {}  # keyed by token hash
        # RLock so helpers can call public methods while holding it
        self._data_lock = threading.RLock()
        self.state_dir = Path(state_dir) if state_dir else None
        if self.state_dir is not None:
            self.state_dir.mkdir(parents=True, exist_ok=True)
            self._load_state()

    # accounts
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
    ) -> User:
        normalized = normalize_email(email)
        with self._data_lock:
            if any(existing.email == normalized for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=generate_uuid(),
                email=normalized,
                password_hash=password_hash,
                first_name=first_name,
                last_name=last_name,
                business_name=business_name,
                role=Role(role),
                is_active=is_active,
                is_email_verified=is_email_verified,
            )
            self.users[user.id] = user
            self._persist_state()
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = normalize_email(email)
        with self._data_lock:
            return next((u for u in self.users.values() if u.email == normalized), None)

    def update_user(self, user_id: str, **fields: Any) -> Optional[User]:
        updates = validate_user_updates(fields)
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            new_email = updates.get("email")
            if new_email and any(
                u.email == new_email and u.id != user_id for u in self.users.values()
            ):
                raise ConstraintViolation("email already exists", {"field": "email"})
            self._apply_updates(user, updates)
            self._persist_state()
            return user

    def increment_login_attempts(
        self, user_id: str, *, max_attempts: int, lockout_seconds: int
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            attempts, lock_until = next_lockout_state(
                user.login_attempts,
                user.lock_until,
                max_attempts=max_attempts,
                lockout=timedelta(seconds=lockout_seconds),
            )
            self._apply_updates(user, {"login_attempts": attempts, "lock_until": lock_until})
            self._persist_state()
            return user

    def reset_login_attempts(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            self._apply_updates(
                user, {"login_attempts": 0, "lock_until": None, "last_login": utcnow()}
            )
            self._persist_state()
            return user

    def delete_user(self, user_id: str) -> bool:
        with self._data_lock:
            if self.users.pop(user_id, None) is None:
                return False
            for key, record in list(self.refresh_tokens.items()):
                if record.user_id == user_id:
                    self.refresh_tokens.pop(key, None)
            for key, token in list(self.one_time_tokens.items()):
                if token.user_id == user_id:
                    self.one_time_tokens.pop(key, None)
            self._persist_state()
            return True

    def create_one_time_token(
        self, user_id: str, purpose: TokenPurpose, ttl_seconds: int
    ) -> str:
        raw = new_opaque_token()
        purpose = TokenPurpose(purpose)
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            for key, token in list(self.one_time_tokens.items()):
                if token.user_id == user_id and token.purpose == purpose:
                    self.one_time_tokens.pop(key, None)
            record = OneTimeToken.new(user_id, hash_token(raw), purpose, ttl_seconds)
            self.one_time_tokens[record.token_hash] = record
            self._persist_state()
        return raw

    def apply_one_time_token(
        self, purpose: TokenPurpose, token: str, updates: Dict[str, Any]
    ) -> Optional[User]:
        cleaned = validate_user_updates(updates)
        token_hash = hash_token(token)
        with self._data_lock:
            record = self.one_time_tokens.get(token_hash)
            if not record or record.purpose != TokenPurpose(purpose):
                return None
            self.one_time_tokens.pop(token_hash, None)
            user = self.users.get(record.user_id)
            if record.is_expired() or user is None:
                self._persist_state()
                return None
            self._apply_updates(user, cleaned)
            self._persist_state()
            return user

    def purge_expired_one_time_tokens(self) -> int:
        now = utcnow()
        with self._data_lock:
            stale = [k for k, t in self.one_time_tokens.items() if t.is_expired(now)]
            for key in stale:
                self.one_time_tokens.pop(key, None)
            if stale:
                self._persist_state()
            return len(stale)

    # refresh tokens
    def save_refresh_token(
        self,
        user_id: str,
        token: str,
        expires_at: datetime,
        *,
        session_id: str | None = None,
        user_agent: str | None = None,
        ip_addr: str | None = None,
    ) -> RefreshTokenRecord:
        record = RefreshTokenRecord.new(
            user_id,
            hash_token(token),
            expires_at,
            session_id=session_id,
            user_agent=user_agent,
            ip_addr=parse_ip_address(ip_addr),
        )
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            self.refresh_tokens[record.token_hash] = record
            self._prune_user_tokens(user_id)
            self._persist_state()
        return record

    def get_refresh_token(self, token: str) -> Optional[RefreshTokenRecord]:
        with self._data_lock:
            record = self.refresh_tokens.get(hash_token(token))
        if record is None or record.is_expired():
            return None
        return record

    def delete_refresh_token(self, token: str) -> bool:
        with self._data_lock:
            removed = self.refresh_tokens.pop(hash_token(token), None)
            if removed is not None:
                self._persist_state()
            return removed is not None

    def delete_refresh_token_by_id(self, user_id: str, session_id: str) -> bool:
        with self._data_lock:
            for key, record in list(self.refresh_tokens.items()):
                if record.id == session_id and record.user_id == user_id:
                    self.refresh_tokens.pop(key, None)
                    self._persist_state()
                    return True
            return False

    def delete_user_refresh_tokens(self, user_id: str) -> int:
        with self._data_lock:
            stale = [k for k, r in self.refresh_tokens.items() if r.user_id == user_id]
            for key in stale:
                self.refresh_tokens.pop(key, None)
            if stale:
                self._persist_state()
            return len(stale)

    def list_user_refresh_tokens(self, user_id: str) -> List[RefreshTokenRecord]:
        now = utcnow()
        with self._data_lock:
            live = [
                r
                for r in self.refresh_tokens.values()
                if r.user_id == user_id and not r.is_expired(now)
            ]
        return sorted(live, key=lambda r: r.created_at, reverse=True)

    def purge_expired_refresh_tokens(self) -> int:
        now = utcnow()
        with self._data_lock:
            stale = [k for k, r in self.refresh_tokens.items() if r.is_expired(now)]
            for key in stale:
                self.refresh_tokens.pop(key, None)
            if stale:
                self._persist_state()
            return len(stale)

    def _prune_user_tokens(self, user_id: str) -> None:
        now = utcnow()
        # insertion order breaks created_at ties
        owned = [
            (seq, k, r)
            for seq, (k, r) in enumerate(self.refresh_tokens.items())
            if r.user_id == user_id
        ]
        live = []
        for seq, key, record in owned:
            if record.is_expired(now):
                self.refresh_tokens.pop(key, None)
            else:
                live.append((record.created_at, seq, key))
        live.sort(reverse=True)
        for _, _, key in live[self.max_refresh_tokens_per_user:]:
            self.refresh_tokens.pop(key, None)

    @staticmethod
    def _apply_updates(user: User, updates: Dict[str, Any]) -> None:
        for key, value in updates.items():
            setattr(user, key, value)
        user.updated_at = utcnow()

    # persistence
    def _state_path(self) -> Optional[Path]:
        if self.state_dir is None:
            return None
        return self.state_dir / "memory_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    def _persist_state(self) -> None:
        path = self._state_path()
        if path is None:
            return
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "refresh_tokens": [
                self._serialize_refresh_token(r) for r in self.refresh_tokens.values()
            ],
            "one_time_tokens": [
                self._serialize_one_time_token(t) for t in self.one_time_tokens.values()
            ],
        }
        tmp_path = path.with_suffix(".tmp")
        try:
            tmp_path.write_text(json.dumps(state, indent=2))
            tmp_path.replace(path)
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        if path is None:
            return False
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.refresh_tokens = {}
        for raw in data.get("refresh_tokens", []):
            record = self._deserialize_refresh_token(raw)
            self.refresh_tokens[record.token_hash] = record
        self.one_time_tokens = {}
        for raw in data.get("one_time_tokens", []):
            token = self._deserialize_one_time_token(raw)
            self.one_time_tokens[token.token_hash] = token
        self.logger.info(
            "memory_store_loaded",
            users=len(self.users),
            refresh_records=len(self.refresh_tokens),
        )
        return True

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "password_hash": user.password_hash,
            "first_name": user.first_name,
            "last_name": user.last_name,
            "business_name": user.business_name,
            "role": user.role.value,
            "is_active": user.is_active,
            "is_email_verified": user.is_email_verified,
            "login_attempts": user.login_attempts,
            "lock_until": self._serialize_datetime(user.lock_until),
            "last_login": self._serialize_datetime(user.last_login),
            "created_at": self._serialize_datetime(user.created_at),
            "updated_at": self._serialize_datetime(user.updated_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=str(data["id"]),
            email=data["email"],
            password_hash=data["password_hash"],
            first_name=data.get("first_name", ""),
            last_name=data.get("last_name", ""),
            business_name=data.get("business_name"),
            role=Role(data.get("role", Role.OWNER.value)),
            is_active=data.get("is_active", True),
            is_email_verified=data.get("is_email_verified", False),
            login_attempts=int(data.get("login_attempts", 0)),
            lock_until=self._deserialize_datetime(data.get("lock_until")),
            last_login=self._deserialize_datetime(data.get("last_login")),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(data.get("updated_at") or data["created_at"]),
        )

    def _serialize_refresh_token(self, record: RefreshTokenRecord) -> dict:
        return {
            "id": record.id,
            "user_id": record.user_id,
            "token_hash": record.token_hash,
            "created_at": self._serialize_datetime(record.created_at),
            "expires_at": self._serialize_datetime(record.expires_at),
            "user_agent": record.user_agent,
            "ip_addr": record.ip_addr,
        }

    def _deserialize_refresh_token(self, data: dict) -> RefreshTokenRecord:
        return RefreshTokenRecord(
            id=data["id"],
            user_id=data["user_id"],
            token_hash=data["token_hash"],
            created_at=self._deserialize_datetime(data["created_at"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            user_agent=data.get("user_agent"),
            ip_addr=parse_ip_address(data.get("ip_addr")),
        )

    def _serialize_one_time_token(self, token: OneTimeToken) -> dict:
        return {
            "token_hash": token.token_hash,
            "user_id": token.user_id,
            "purpose": token.purpose.value,
            "created_at": self._serialize_datetime(token.created_at),
            "expires_at": self._serialize_datetime(token.expires_at),
        }

    def _deserialize_one_time_token(self, data: dict) -> OneTimeToken:
        return OneTimeToken(
            token_hash=data["token_hash"],
            user_id=data["user_id"],
            purpose=TokenPurpose(data["purpose"]),
            created_at=self._deserialize_datetime(data["created_at"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
        )
