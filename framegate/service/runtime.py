from __future__ import annotations

import asyncio
import os
import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from framegate.config import SessionBackend, get_settings, reset_settings_cache
from framegate.logging import get_logger
from framegate.service.auth import AuthService
from framegate.service.email import EmailService
from framegate.service.passwords import PasswordPolicy
from framegate.service.rate_limit import RateLimiter
from framegate.service.tokens import TokenService
from framegate.storage.memory import MemoryStore
from framegate.storage.postgres import PostgresStore
from framegate.storage.redis_cache import RedisCache, RedisSessionStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password part of a connection URL with ``***`` for logging.

    ``redis://:secret@localhost:6379`` becomes ``redis://:***@localhost:6379``.
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if not parsed.password:
            return url
        netloc = parsed.hostname or ""
        if parsed.port:
            netloc = f"{netloc}:{parsed.port}"
        netloc = f"{parsed.username or ''}:***@{netloc}"
        return urlunparse(
            (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
        )
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Process-wide service graph used by the HTTP layer."""

    def __init__(self):
        self.settings = get_settings()
        settings = self.settings
        store_type = "memory" if settings.use_memory_store else "postgres"
        logger.info(
            "runtime_init_started",
            store_type=store_type,
            session_backend=settings.session_backend.value,
            test_mode=settings.test_mode,
        )

        try:
            self.store: Union[MemoryStore, PostgresStore] = (
                MemoryStore(
                    settings.state_dir or os.path.join(settings.shared_fs_root, "state"),
                    max_refresh_tokens_per_user=settings.max_refresh_tokens_per_user,
                )
                if settings.use_memory_store
                else PostgresStore(
                    settings.database_url,
                    max_refresh_tokens_per_user=settings.max_refresh_tokens_per_user,
                )
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache: Optional[RedisCache] = None
        redis_error: Exception | None = None
        if settings.redis_url:
            try:
                cache = RedisCache(settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc

        if self.cache is None:
            if not settings.test_mode and not settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for shared rate limits; start Redis or set "
                    "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for per-process counters."
                ) from redis_error
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                mode="TEST_MODE" if settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV",
            )

        self.sessions: Union[MemoryStore, PostgresStore, RedisSessionStore] = self.store
        if settings.session_backend is SessionBackend.REDIS:
            if not settings.redis_url:
                raise RuntimeError("SESSION_BACKEND=redis requires REDIS_URL")
            self.sessions = RedisSessionStore(
                settings.redis_url,
                max_refresh_tokens_per_user=settings.max_refresh_tokens_per_user,
            )

        self.passwords = PasswordPolicy(settings)
        self.tokens = TokenService(settings)
        self.rate_limiter = RateLimiter(settings, self.cache)
        self.email = EmailService.from_settings(settings)
        self.auth = AuthService(
            self.store,
            self.sessions,
            settings,
            passwords=self.passwords,
            tokens=self.tokens,
            limiter=self.rate_limiter,
            email=self.email,
        )

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            session_backend=settings.session_backend.value,
            redis_enabled=self.cache is not None,
            email_configured=self.email.is_configured,
            breach_check=settings.breach_check_enabled,
        )

    async def close(self) -> None:
        await self.auth.drain_notifications()
        if self.cache is not None:
            await self.cache.close()
        if isinstance(self.sessions, RedisSessionStore):
            self.sessions.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Return the shared Runtime, creating it on first use."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Rebuild the runtime from a fresh environment read. TEST_MODE only."""
    global runtime

    with _runtime_lock:
        if runtime is not None and runtime.cache is not None:
            try:
                asyncio.get_running_loop().create_task(runtime.cache.close())
            except RuntimeError:
                asyncio.run(runtime.cache.close())

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
