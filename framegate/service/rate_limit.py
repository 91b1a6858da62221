from __future__ import annotations

import asyncio
import math
import time
from dataclasses import dataclass
from typing import Optional

from redis.exceptions import RedisError

from framegate.config import Settings
from framegate.logging import email_fingerprint, get_logger
from framegate.service.errors import RateLimitedError
from framegate.storage.common import normalize_email
from framegate.storage.redis_cache import RedisCache

logger = get_logger(__name__)

# expired local counters are dropped at most this often
_LOCAL_SWEEP_INTERVAL_SECONDS = 1.0


@dataclass(frozen=True)
class RateLimitDecision:
    """Counter state after one check; returned on accept and on reject."""

    allowed: bool
    limit: int
    remaining: int
    reset_seconds: int
    delay_seconds: float = 0.0

    def apply_headers(self, response) -> None:
        """Apply rate limit headers per IETF draft-polli-ratelimit-headers."""
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.remaining))
        response.headers["X-RateLimit-Reset"] = str(self.reset_seconds)
        if not self.allowed:
            response.headers["Retry-After"] = str(max(1, self.reset_seconds))

    def raise_if_blocked(self, message: str = "too many requests") -> "RateLimitDecision":
        if not self.allowed:
            raise RateLimitedError(
                message, retry_after=max(1, self.reset_seconds), limit=self.limit
            )
        return self


class RateLimiter:
    """Fixed-window request limits in layers.

    * general: every API request, per user when authenticated else per IP,
      scaled by the caller's role
    * auth: login / register / reset style endpoints, per IP
    * credentials: failed logins per (email, IP); only failures count
    * password reset and verification mail, per IP per hour

    Counters live in Redis when a cache is configured so all workers share
    them; otherwise in this process only.
    """

    def __init__(self, settings: Settings, cache: Optional[RedisCache] = None) -> None:
        self.settings = settings
        self.cache = cache
        self._local_counters: dict[str, tuple[int, float]] = {}  # key -> (hits, window_end)
        self._local_lock = asyncio.Lock()
        self._next_sweep = 0.0

    def role_multiplier(self, role: Optional[str]) -> float:
        if not role:
            return 1.0
        return float(self.settings.role_rate_multipliers.get(str(role).lower(), 1.0))

    async def check_general(
        self, ip: str, *, user_id: Optional[str] = None, role: Optional[str] = None
    ) -> RateLimitDecision:
        limit = max(1, int(self.settings.general_rate_limit * self.role_multiplier(role)))
        subject = f"user:{user_id}" if user_id else f"ip:{ip}"
        return await self._hit(f"general:{subject}", limit, self.settings.rate_limit_window_seconds)

    async def check_auth(self, ip: str) -> RateLimitDecision:
        return await self._hit(
            f"auth:{ip}", self.settings.auth_rate_limit, self.settings.rate_limit_window_seconds
        )

    async def check_password_reset(self, ip: str) -> RateLimitDecision:
        return await self._hit(
            f"reset:{ip}",
            self.settings.password_reset_rate_limit,
            self.settings.hourly_window_seconds,
        )

    async def check_verification(self, subject: str) -> RateLimitDecision:
        return await self._hit(
            f"verify:{subject}",
            self.settings.verification_rate_limit,
            self.settings.hourly_window_seconds,
        )

    @staticmethod
    def _credential_key(email: str, ip: str) -> str:
        return f"cred:{normalize_email(email)}:{ip}"

    async def check_credentials(self, email: str, ip: str) -> RateLimitDecision:
        """Peek at the failure counter without counting this attempt."""

        limit = self.settings.credential_failure_limit
        hits, reset_seconds = await self._peek(self._credential_key(email, ip))
        return RateLimitDecision(
            allowed=hits < limit,
            limit=limit,
            remaining=max(0, limit - hits),
            reset_seconds=reset_seconds,
        )

    async def record_credential_failure(self, email: str, ip: str) -> RateLimitDecision:
        decision = await self._hit(
            self._credential_key(email, ip),
            self.settings.credential_failure_limit,
            self.settings.rate_limit_window_seconds,
        )
        if not decision.allowed:
            logger.warning(
                "credential_failures_exceeded", email=email_fingerprint(email), ip=ip
            )
        return decision

    async def reset_credentials(self, email: str, ip: str) -> None:
        key = self._credential_key(email, ip)
        if self.cache:
            try:
                await self.cache.clear_window(key)
                return
            except RedisError as exc:
                logger.warning("rate_limit_cache_error", op="clear", error=str(exc))
        async with self._local_lock:
            self._local_counters.pop(key, None)

    async def slow_down(self, ip: str) -> RateLimitDecision:
        """Never rejects; ``delay_seconds`` grows once the IP passes the threshold."""

        after = self.settings.slow_down_after
        if not self.settings.slow_down_enabled:
            return RateLimitDecision(allowed=True, limit=after, remaining=after, reset_seconds=0)
        hits, reset_seconds = await self._increment(
            f"slow:{ip}", self.settings.rate_limit_window_seconds
        )
        over = hits - after
        delay_ms = 0
        if over > 0:
            delay_ms = min(over * self.settings.slow_down_step_ms, self.settings.slow_down_max_ms)
        return RateLimitDecision(
            allowed=True,
            limit=after,
            remaining=max(0, after - hits),
            reset_seconds=reset_seconds,
            delay_seconds=delay_ms / 1000.0,
        )

    async def _hit(self, key: str, limit: int, window_seconds: int) -> RateLimitDecision:
        hits, reset_seconds = await self._increment(key, window_seconds)
        return RateLimitDecision(
            allowed=hits <= limit,
            limit=limit,
            remaining=max(0, limit - hits),
            reset_seconds=reset_seconds,
        )

    async def _increment(self, key: str, window_seconds: int) -> tuple[int, int]:
        if self.cache:
            try:
                hits, ttl_ms = await self.cache.hit_window(key, window_seconds)
                return hits, max(1, math.ceil(ttl_ms / 1000))
            except RedisError as exc:
                logger.warning("rate_limit_cache_error", op="hit", error=str(exc))
        now = time.monotonic()
        async with self._local_lock:
            if now >= self._next_sweep:
                self._sweep_local(now)
            hits, window_end = self._local_counters.get(key, (0, 0.0))
            if now >= window_end:
                hits, window_end = 0, now + window_seconds
            hits += 1
            self._local_counters[key] = (hits, window_end)
        return hits, max(1, math.ceil(window_end - now))

    def _sweep_local(self, now: float) -> None:
        """Drop counters whose window has ended. Caller holds ``_local_lock``."""
        expired = [key for key, (_, window_end) in self._local_counters.items() if window_end <= now]
        for key in expired:
            del self._local_counters[key]
        self._next_sweep = now + _LOCAL_SWEEP_INTERVAL_SECONDS
        if expired:
            logger.debug("rate_limit_counters_swept", removed=len(expired), kept=len(self._local_counters))

    async def _peek(self, key: str) -> tuple[int, int]:
        if self.cache:
            try:
                hits, ttl_ms = await self.cache.peek_window(key)
                return hits, math.ceil(ttl_ms / 1000)
            except RedisError as exc:
                logger.warning("rate_limit_cache_error", op="peek", error=str(exc))
        now = time.monotonic()
        async with self._local_lock:
            hits, window_end = self._local_counters.get(key, (0, 0.0))
        if now >= window_end:
            return 0, 0
        return hits, math.ceil(window_end - now)
