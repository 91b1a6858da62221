from __future__ import annotations

import os
import secrets
import tempfile
from enum import Enum
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from framegate.logging import get_logger

logger = get_logger(__name__)

MIN_SECRET_LENGTH = 32


class SessionBackend(str, Enum):
    """Where refresh-token records live."""

    STORE = "store"
    REDIS = "redis"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _persisted_secret(filename: str) -> str:
    """Load a generated signing secret from SHARED_FS_ROOT, creating it once."""

    fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/framegate"))
    secret_path = fs_root / filename

    try:
        fs_root.mkdir(parents=True, exist_ok=True)
        os.chmod(fs_root, 0o700)
    except PermissionError:
        # container volumes may be owned by someone else
        pass
    except OSError as exc:
        logger.warning("secret_dir_setup", error=str(exc), path=str(fs_root))

    if secret_path.exists() and not secret_path.is_symlink():
        try:
            persisted = secret_path.read_text().strip()
            if len(persisted) >= MIN_SECRET_LENGTH:
                return persisted
        except OSError as exc:
            logger.error("secret_read_failed", error=str(exc), path=str(secret_path))

    generated = secrets.token_urlsafe(64)
    tmp_path: str | None = None
    try:
        fd, tmp_path = tempfile.mkstemp(dir=str(fs_root), prefix=f"{filename}_", suffix=".tmp")
        try:
            os.write(fd, generated.encode())
            os.fchmod(fd, 0o600)
        finally:
            os.close(fd)
        os.rename(tmp_path, str(secret_path))
    except OSError as exc:
        if tmp_path and os.path.exists(tmp_path):
            os.unlink(tmp_path)
        logger.error("secret_persist_failed", error=str(exc), path=str(secret_path))
        raise RuntimeError(
            f"Unable to persist {filename}; set the secret env var or make SHARED_FS_ROOT writable"
        ) from exc
    logger.warning("secret_generated", path=str(secret_path))
    return generated


class Settings(BaseModel):
    """Runtime settings for the auth service.

    Every field maps to an environment variable (see ``env_field``); values in
    a local ``.env`` file are used when the variable is not exported.
    """

    environment: str = env_field("development", "ENVIRONMENT")
    database_url: str = env_field("postgresql://localhost:5432/framegate", "DATABASE_URL")
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/framegate", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    state_dir: str | None = env_field(
        None, "STATE_DIR", description="memory store snapshot dir; SHARED_FS_ROOT/state when unset"
    )
    session_backend: SessionBackend = env_field(
        SessionBackend.STORE,
        "SESSION_BACKEND",
        description="store keeps refresh tokens next to users; redis keeps them in Redis",
    )
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(False, "TEST_MODE")
    log_level: str = env_field("INFO", "LOG_LEVEL")
    log_json: bool = env_field(True, "LOG_JSON")

    # Tokens
    jwt_access_secret: str = env_field(None, "JWT_ACCESS_SECRET", validate_default=True)
    jwt_refresh_secret: str = env_field(None, "JWT_REFRESH_SECRET", validate_default=True)
    jwt_issuer: str = env_field("framegate", "JWT_ISSUER")
    jwt_audience: str = env_field("framegate-api", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES", ge=1)
    refresh_token_ttl_days: int = env_field(7, "REFRESH_TOKEN_TTL_DAYS", ge=1)
    token_expiry_grace_minutes: int = env_field(5, "TOKEN_EXPIRY_GRACE_MINUTES", ge=0)

    # Passwords
    password_hash_rounds: int = env_field(
        10,
        "PASSWORD_HASH_ROUNDS",
        ge=1,
        description="argon2 time cost; production deployments keep this at 10 or more",
    )
    password_hash_memory_kib: int = env_field(19456, "PASSWORD_HASH_MEMORY_KIB", ge=8)
    password_min_length: int = env_field(8, "PASSWORD_MIN_LENGTH", ge=1)
    password_require_uppercase: bool = env_field(True, "PASSWORD_REQUIRE_UPPERCASE")
    password_require_numbers: bool = env_field(True, "PASSWORD_REQUIRE_NUMBERS")
    password_require_special: bool = env_field(True, "PASSWORD_REQUIRE_SPECIAL")
    breach_check_enabled: bool = env_field(False, "BREACH_CHECK_ENABLED")
    breach_api_url: str = env_field("https://api.pwnedpasswords.com", "BREACH_API_URL")
    breach_check_timeout_seconds: float = env_field(3.0, "BREACH_CHECK_TIMEOUT_SECONDS", gt=0)

    # Accounts
    max_login_attempts: int = env_field(5, "MAX_LOGIN_ATTEMPTS", ge=1)
    lockout_minutes: int = env_field(120, "LOCKOUT_MINUTES", ge=1)
    max_refresh_tokens_per_user: int = env_field(5, "MAX_REFRESH_TOKENS_PER_USER", ge=1)
    email_verification_ttl_hours: int = env_field(24, "EMAIL_VERIFICATION_TTL_HOURS", ge=1)
    password_reset_ttl_minutes: int = env_field(60, "PASSWORD_RESET_TTL_MINUTES", ge=1)
    require_verified_email: bool = env_field(False, "REQUIRE_VERIFIED_EMAIL")
    cleanup_interval_seconds: int = env_field(300, "CLEANUP_INTERVAL_SECONDS", ge=0)

    # Rate limits
    rate_limit_window_seconds: int = env_field(900, "RATE_LIMIT_WINDOW_SECONDS", ge=1)
    general_rate_limit: int = env_field(100, "GENERAL_RATE_LIMIT", ge=1)
    auth_rate_limit: int = env_field(20, "AUTH_RATE_LIMIT", ge=1)
    credential_failure_limit: int = env_field(
        10,
        "CREDENTIAL_FAILURE_LIMIT",
        ge=1,
        description="failed logins per (email, ip) per window, independent of lockout",
    )
    password_reset_rate_limit: int = env_field(3, "PASSWORD_RESET_RATE_LIMIT", ge=1)
    verification_rate_limit: int = env_field(5, "VERIFICATION_RATE_LIMIT", ge=1)
    hourly_window_seconds: int = env_field(3600, "HOURLY_WINDOW_SECONDS", ge=1)
    role_rate_multipliers: dict[str, float] = env_field(
        {"admin": 2.0, "owner": 2.0, "employee": 1.0, "viewer": 0.5},
        "ROLE_RATE_MULTIPLIERS",
        description="comma separated role=multiplier pairs",
    )
    slow_down_enabled: bool = env_field(False, "SLOW_DOWN_ENABLED")
    slow_down_after: int = env_field(50, "SLOW_DOWN_AFTER", ge=0)
    slow_down_step_ms: int = env_field(500, "SLOW_DOWN_STEP_MS", ge=0)
    slow_down_max_ms: int = env_field(20000, "SLOW_DOWN_MAX_MS", ge=0)

    # HTTP
    cookie_secure: bool | None = env_field(None, "COOKIE_SECURE")
    cookie_domain: str | None = env_field(None, "COOKIE_DOMAIN")
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
    app_base_url: str = env_field("http://localhost:3000", "APP_BASE_URL")

    # Email
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("FrameGate", "EMAIL_FROM_NAME")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    @property
    def secure_cookies(self) -> bool:
        if self.cookie_secure is not None:
            return self.cookie_secure
        return not self.test_mode

    @field_validator("session_backend")
    @classmethod
    def _validate_session_backend(cls, value: SessionBackend) -> SessionBackend:
        return SessionBackend(value)

    @field_validator("redis_url")
    @classmethod
    def _blank_redis_url(cls, value: str | None) -> str | None:
        return value or None

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("role_rate_multipliers", mode="before")
    @classmethod
    def _parse_multipliers(cls, value: Any) -> Any:
        if not isinstance(value, str):
            return value
        parsed: dict[str, float] = {}
        for pair in value.split(","):
            if not pair.strip():
                continue
            role, sep, raw = pair.partition("=")
            if not sep:
                raise ValueError(f"invalid role multiplier entry: {pair!r}")
            parsed[role.strip().lower()] = float(raw)
        return parsed

    @field_validator("jwt_access_secret", mode="before")
    @classmethod
    def _ensure_access_secret(cls, value: str | None) -> str:
        return value or _persisted_secret(".jwt_access_secret")

    @field_validator("jwt_refresh_secret", mode="before")
    @classmethod
    def _ensure_refresh_secret(cls, value: str | None) -> str:
        return value or _persisted_secret(".jwt_refresh_secret")

    @model_validator(mode="after")
    def _check_secrets(self) -> "Settings":
        if self.jwt_access_secret == self.jwt_refresh_secret:
            raise ValueError("JWT_ACCESS_SECRET and JWT_REFRESH_SECRET must differ")
        if not self.test_mode:
            for name in ("jwt_access_secret", "jwt_refresh_secret"):
                if len(getattr(self, name)) < MIN_SECRET_LENGTH:
                    raise ValueError(
                        f"{name.upper()} must be at least {MIN_SECRET_LENGTH} characters"
                    )
        if self.is_production and self.password_hash_rounds < 10:
            raise ValueError("PASSWORD_HASH_ROUNDS must be at least 10 in production")
        return self


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
