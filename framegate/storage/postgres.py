from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from framegate.logging import get_logger
from framegate.storage.common import (
    generate_uuid,
    hash_token,
    new_opaque_token,
    normalize_email,
    parse_ip_address,
    safe_row_value,
    validate_user_updates,
)
from framegate.storage.errors import ConstraintViolation
from framegate.storage.models import (
    RefreshTokenRecord,
    Role,
    TokenPurpose,
    User,
    utcnow,
)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id UUID PRIMARY KEY,
        email TEXT NOT NULL,
        password_hash TEXT NOT NULL,
        first_name TEXT NOT NULL DEFAULT '',
        last_name TEXT NOT NULL DEFAULT '',
        business_name TEXT,
        role TEXT NOT NULL DEFAULT 'owner',
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        is_email_verified BOOLEAN NOT NULL DEFAULT FALSE,
        login_attempts INTEGER NOT NULL DEFAULT 0,
        lock_until TIMESTAMPTZ,
        last_login TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE UNIQUE INDEX IF NOT EXISTS app_user_email_key ON app_user (lower(email))",
    """
    CREATE TABLE IF NOT EXISTS refresh_token (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        token_hash TEXT NOT NULL UNIQUE,
        user_agent TEXT,
        ip_addr INET,
        created_at TIMESTAMPTZ NOT NULL DEFAULT clock_timestamp(),
        expires_at TIMESTAMPTZ NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS refresh_token_user_idx ON refresh_token (user_id, created_at DESC)",
    "CREATE INDEX IF NOT EXISTS refresh_token_expiry_idx ON refresh_token (expires_at)",
    """
    CREATE TABLE IF NOT EXISTS one_time_token (
        token_hash TEXT PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        purpose TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        expires_at TIMESTAMPTZ NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS one_time_token_user_idx ON one_time_token (user_id, purpose)",
)


class PostgresStore:
    """Postgres-backed account and refresh-token store.

    Lockout counters, refresh rotation and one-time-token consumption are each
    a single statement or a single transaction, so concurrent API workers
    cannot double count or double spend.
    """

    def __init__(
        self,
        dsn: str,
        *,
        max_refresh_tokens_per_user: int = 5,
        pool: ConnectionPool | None = None,
    ) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.max_refresh_tokens_per_user = max_refresh_tokens_per_user
        self.pool = pool or ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        """Create auth tables and indexes if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    def ping(self) -> bool:
        with self._connect() as conn:
            row = conn.execute("SELECT 1 AS ok").fetchone()
        return bool(row and row.get("ok") == 1)

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _row_to_user(row: Dict[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            password_hash=row["password_hash"],
            first_name=row.get("first_name") or "",
            last_name=row.get("last_name") or "",
            business_name=row.get("business_name"),
            role=Role(row.get("role") or Role.OWNER.value),
            is_active=row.get("is_active", True),
            is_email_verified=row.get("is_email_verified", False),
            login_attempts=row.get("login_attempts") or 0,
            lock_until=row.get("lock_until"),
            last_login=row.get("last_login"),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
        )

    @staticmethod
    def _row_to_refresh_token(row: Dict[str, Any]) -> RefreshTokenRecord:
        return RefreshTokenRecord(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            token_hash=row["token_hash"],
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            user_agent=row.get("user_agent"),
            ip_addr=parse_ip_address(safe_row_value(row, "ip_addr")),
        )

    # users
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
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, email, password_hash, first_name, last_name,
                                          business_name, role, is_active, is_email_verified)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        generate_uuid(),
                        normalize_email(email),
                        password_hash,
                        first_name,
                        last_name,
                        business_name,
                        Role(role).value,
                        is_active,
                        is_email_verified,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._row_to_user(row)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM app_user WHERE id = %s", (user_id,)).fetchone()
        return self._row_to_user(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE lower(email) = %s", (normalize_email(email),)
            ).fetchone()
        return self._row_to_user(row) if row else None

    @staticmethod
    def _update_clause(updates: Dict[str, Any]) -> tuple[str, list[Any]]:
        # column names come from USER_MUTABLE_FIELDS via validate_user_updates
        assignments = []
        params: list[Any] = []
        for column, value in updates.items():
            assignments.append(f"{column} = %s")
            params.append(value.value if isinstance(value, Role) else value)
        assignments.append("updated_at = now()")
        return ", ".join(assignments), params

    def update_user(self, user_id: str, **fields: Any) -> Optional[User]:
        updates = validate_user_updates(fields)
        clause, params = self._update_clause(updates)
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"UPDATE app_user SET {clause} WHERE id = %s RETURNING *",
                    (*params, user_id),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._row_to_user(row) if row else None

    def increment_login_attempts(
        self, user_id: str, *, max_attempts: int, lockout_seconds: int
    ) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user SET
                    login_attempts = CASE
                        WHEN lock_until IS NOT NULL AND lock_until <= now() THEN 1
                        ELSE login_attempts + 1
                    END,
                    lock_until = CASE
                        WHEN lock_until IS NOT NULL AND lock_until <= now() THEN NULL
                        WHEN lock_until IS NULL AND login_attempts + 1 >= %(max_attempts)s
                            THEN now() + make_interval(secs => %(lockout)s)
                        ELSE lock_until
                    END,
                    updated_at = now()
                WHERE id = %(user_id)s
                RETURNING *
                """,
                {"max_attempts": max_attempts, "lockout": lockout_seconds, "user_id": user_id},
            ).fetchone()
        return self._row_to_user(row) if row else None

    def reset_login_attempts(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user
                SET login_attempts = 0, lock_until = NULL, last_login = now(), updated_at = now()
                WHERE id = %s
                RETURNING *
                """,
                (user_id,),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def delete_user(self, user_id: str) -> bool:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM app_user WHERE id = %s", (user_id,))
            return result.rowcount > 0

    # one-time tokens
    def create_one_time_token(
        self, user_id: str, purpose: TokenPurpose, ttl_seconds: int
    ) -> str:
        raw = new_opaque_token()
        purpose = TokenPurpose(purpose)
        try:
            with self._connect() as conn, conn.transaction():
                conn.execute(
                    "DELETE FROM one_time_token WHERE user_id = %s AND purpose = %s",
                    (user_id, purpose.value),
                )
                conn.execute(
                    """
                    INSERT INTO one_time_token (token_hash, user_id, purpose, expires_at)
                    VALUES (%s, %s, %s, now() + make_interval(secs => %s))
                    """,
                    (hash_token(raw), user_id, purpose.value, ttl_seconds),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": user_id})
        return raw

    def apply_one_time_token(
        self, purpose: TokenPurpose, token: str, updates: Dict[str, Any]
    ) -> Optional[User]:
        cleaned = validate_user_updates(updates)
        clause, params = self._update_clause(cleaned)
        with self._connect() as conn, conn.transaction():
            consumed = conn.execute(
                """
                DELETE FROM one_time_token
                WHERE token_hash = %s AND purpose = %s
                RETURNING user_id, expires_at > now() AS live
                """,
                (hash_token(token), TokenPurpose(purpose).value),
            ).fetchone()
            if not consumed or not consumed["live"]:
                return None
            row = conn.execute(
                f"UPDATE app_user SET {clause} WHERE id = %s RETURNING *",
                (*params, consumed["user_id"]),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def purge_expired_one_time_tokens(self) -> int:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM one_time_token WHERE expires_at <= now()")
            return result.rowcount

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
        try:
            with self._connect() as conn, conn.transaction():
                # serialise concurrent logins of one user so pruning sees every insert
                conn.execute("SELECT id FROM app_user WHERE id = %s FOR UPDATE", (user_id,))
                row = conn.execute(
                    """
                    INSERT INTO refresh_token (id, user_id, token_hash, user_agent, ip_addr, expires_at)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        session_id or generate_uuid(),
                        user_id,
                        hash_token(token),
                        user_agent,
                        parse_ip_address(ip_addr),
                        expires_at,
                    ),
                ).fetchone()
                conn.execute(
                    """
                    DELETE FROM refresh_token
                    WHERE user_id = %(user_id)s
                      AND (
                        expires_at <= now()
                        OR id NOT IN (
                            SELECT id FROM refresh_token
                            WHERE user_id = %(user_id)s AND expires_at > now()
                            ORDER BY created_at DESC
                            LIMIT %(keep)s
                        )
                      )
                    """,
                    {"user_id": user_id, "keep": self.max_refresh_tokens_per_user},
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": user_id})
        return self._row_to_refresh_token(row)

    def get_refresh_token(self, token: str) -> Optional[RefreshTokenRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_token WHERE token_hash = %s AND expires_at > now()",
                (hash_token(token),),
            ).fetchone()
        return self._row_to_refresh_token(row) if row else None

    def delete_refresh_token(self, token: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "DELETE FROM refresh_token WHERE token_hash = %s RETURNING id",
                (hash_token(token),),
            ).fetchone()
        return row is not None

    def delete_refresh_token_by_id(self, user_id: str, session_id: str) -> bool:
        try:
            with self._connect() as conn:
                result = conn.execute(
                    "DELETE FROM refresh_token WHERE id = %s AND user_id = %s",
                    (session_id, user_id),
                )
                return result.rowcount > 0
        except errors.InvalidTextRepresentation:
            # session ids come from URLs; anything that is not a uuid matches nothing
            return False

    def delete_user_refresh_tokens(self, user_id: str) -> int:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM refresh_token WHERE user_id = %s", (user_id,))
            return result.rowcount

    def list_user_refresh_tokens(self, user_id: str) -> List[RefreshTokenRecord]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM refresh_token
                WHERE user_id = %s AND expires_at > now()
                ORDER BY created_at DESC
                """,
                (user_id,),
            ).fetchall()
        return [self._row_to_refresh_token(row) for row in rows]

    def purge_expired_refresh_tokens(self) -> int:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM refresh_token WHERE expires_at <= now()")
            return result.rowcount
