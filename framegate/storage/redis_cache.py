from __future__ import annotations

import hashlib
import time
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

import redis.asyncio as aioredis
from redis import Redis

from framegate.logging import get_logger
from framegate.storage.common import hash_token, parse_ip_address
from framegate.storage.models import RefreshTokenRecord

logger = get_logger(__name__)


def _to_epoch_ms(value: datetime) -> int:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp() * 1000)


def _from_epoch_ms(raw: str | int) -> datetime:
    return datetime.fromtimestamp(int(raw) / 1000, tz=timezone.utc)


class RedisCache:
    """Async Redis wrapper for request-rate counters."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Fixed window: the first hit in a window starts the expiry clock
    _FIXED_WINDOW_SCRIPT = """
local current = redis.call('INCR', KEYS[1])
local window_ms = tonumber(ARGV[1])
if current == 1 then
  redis.call('PEXPIRE', KEYS[1], window_ms)
end
local ttl = redis.call('PTTL', KEYS[1])
if ttl < 0 then
  redis.call('PEXPIRE', KEYS[1], window_ms)
  ttl = window_ms
end
return {current, ttl}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._fixed_window = self.client.register_script(self._FIXED_WINDOW_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # short-lived sync client so the async pool is not bound to a startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    @staticmethod
    def _normalize_rate_key(key: str) -> str:
        """Hash rate-limit subjects so emails and IPs never appear in key names."""

        digest = hashlib.sha256(key.encode()).hexdigest()
        return f"rate:{digest}"

    async def hit_window(self, key: str, window_seconds: int) -> Tuple[int, int]:
        """Count one hit; returns ``(hits_in_window, ms_until_reset)``."""

        count, ttl_ms = await self._fixed_window(
            keys=[self._normalize_rate_key(key)],
            args=[int(window_seconds * 1000)],
        )
        return int(count), int(ttl_ms)

    async def peek_window(self, key: str) -> Tuple[int, int]:
        safe_key = self._normalize_rate_key(key)
        pipe = self.client.pipeline()
        pipe.get(safe_key)
        pipe.pttl(safe_key)
        raw_count, ttl_ms = await pipe.execute()
        return int(raw_count or 0), max(0, int(ttl_ms or 0))

    async def clear_window(self, key: str) -> None:
        await self.client.delete(self._normalize_rate_key(key))

    async def ping(self) -> bool:
        return bool(await self.client.ping())

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()


class RedisSessionStore:
    """Refresh-token records in Redis.

    Each record is a hash at ``auth:refresh:<token-hash>`` that expires with the
    token; a sorted set ``auth:user_refresh:<user-id>`` indexes a user's
    records by creation time. Insert-and-prune and delete run as Lua scripts so
    concurrent API workers see them as single steps. The client is synchronous
    like the other stores, which the auth service calls inline.
    """

    RECORD_PREFIX = "auth:refresh:"
    USER_PREFIX = "auth:user_refresh:"

    _SAVE_SCRIPT = """
local record_key = KEYS[1]
local user_key = KEYS[2]
local token_hash = ARGV[1]
local created_ms = tonumber(ARGV[2])
local expires_ms = tonumber(ARGV[3])
local keep = tonumber(ARGV[4])
local now_ms = tonumber(ARGV[5])
local prefix = ARGV[6]

local fields = {}
for i = 7, #ARGV do
  fields[#fields + 1] = ARGV[i]
end
redis.call('HSET', record_key, unpack(fields))
redis.call('PEXPIREAT', record_key, expires_ms)
redis.call('ZADD', user_key, created_ms, token_hash)

for _, member in ipairs(redis.call('ZRANGE', user_key, 0, -1)) do
  if redis.call('EXISTS', prefix .. member) == 0 then
    redis.call('ZREM', user_key, member)
  end
end

local evicted = 0
local count = redis.call('ZCARD', user_key)
if count > keep then
  for _, member in ipairs(redis.call('ZRANGE', user_key, 0, count - keep - 1)) do
    redis.call('DEL', prefix .. member)
    redis.call('ZREM', user_key, member)
    evicted = evicted + 1
  end
end

if redis.call('PTTL', user_key) < (expires_ms - now_ms) then
  redis.call('PEXPIREAT', user_key, expires_ms)
end
return evicted
"""

    _DELETE_SCRIPT = """
local user_id = redis.call('HGET', KEYS[1], 'user_id')
local removed = redis.call('DEL', KEYS[1])
if user_id then
  redis.call('ZREM', ARGV[1] .. user_id, ARGV[2])
end
return removed
"""

    _DELETE_USER_SCRIPT = """
local removed = 0
for _, member in ipairs(redis.call('ZRANGE', KEYS[1], 0, -1)) do
  removed = removed + redis.call('DEL', ARGV[1] .. member)
end
redis.call('DEL', KEYS[1])
return removed
"""

    def __init__(
        self,
        redis_url: str | None = None,
        *,
        max_refresh_tokens_per_user: int = 5,
        client: Redis | None = None,
        socket_timeout: float = RedisCache.DEFAULT_OPERATION_TIMEOUT,
    ) -> None:
        if client is None:
            if not redis_url:
                raise ValueError("redis_url or client is required")
            client = Redis.from_url(
                redis_url,
                decode_responses=True,
                socket_timeout=socket_timeout,
                socket_connect_timeout=socket_timeout,
            )
        self.client = client
        self.max_refresh_tokens_per_user = max_refresh_tokens_per_user
        self._save = self.client.register_script(self._SAVE_SCRIPT)
        self._delete = self.client.register_script(self._DELETE_SCRIPT)
        self._delete_user = self.client.register_script(self._DELETE_USER_SCRIPT)

    def _record_key(self, token_hash: str) -> str:
        return f"{self.RECORD_PREFIX}{token_hash}"

    def _user_key(self, user_id: str) -> str:
        return f"{self.USER_PREFIX}{user_id}"

    @staticmethod
    def _decode(token_hash: str, data: Dict[str, str]) -> RefreshTokenRecord:
        return RefreshTokenRecord(
            id=data["id"],
            user_id=data["user_id"],
            token_hash=token_hash,
            created_at=_from_epoch_ms(data["created_at"]),
            expires_at=_from_epoch_ms(data["expires_at"]),
            user_agent=data.get("user_agent") or None,
            ip_addr=data.get("ip_addr") or None,
        )

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
        created_ms = _to_epoch_ms(record.created_at)
        expires_ms = _to_epoch_ms(record.expires_at)
        fields = [
            "id", record.id,
            "user_id", user_id,
            "created_at", str(created_ms),
            "expires_at", str(expires_ms),
            "user_agent", record.user_agent or "",
            "ip_addr", record.ip_addr or "",
        ]
        evicted = self._save(
            keys=[self._record_key(record.token_hash), self._user_key(user_id)],
            args=[
                record.token_hash,
                created_ms,
                expires_ms,
                self.max_refresh_tokens_per_user,
                int(time.time() * 1000),
                self.RECORD_PREFIX,
                *fields,
            ],
        )
        if evicted:
            logger.info("refresh_tokens_evicted", user_id=user_id, count=int(evicted))
        return record

    def get_refresh_token(self, token: str) -> Optional[RefreshTokenRecord]:
        token_hash = hash_token(token)
        data = self.client.hgetall(self._record_key(token_hash))
        if not data:
            return None
        record = self._decode(token_hash, data)
        if record.is_expired():
            return None
        return record

    def delete_refresh_token(self, token: str) -> bool:
        token_hash = hash_token(token)
        removed = self._delete(
            keys=[self._record_key(token_hash)], args=[self.USER_PREFIX, token_hash]
        )
        return int(removed) > 0

    def delete_refresh_token_by_id(self, user_id: str, session_id: str) -> bool:
        for record in self.list_user_refresh_tokens(user_id):
            if record.id == session_id:
                removed = self._delete(
                    keys=[self._record_key(record.token_hash)],
                    args=[self.USER_PREFIX, record.token_hash],
                )
                return int(removed) > 0
        return False

    def delete_user_refresh_tokens(self, user_id: str) -> int:
        removed = self._delete_user(keys=[self._user_key(user_id)], args=[self.RECORD_PREFIX])
        return int(removed)

    def close(self) -> None:
        self.client.close()
        self.client.connection_pool.disconnect()

    def list_user_refresh_tokens(self, user_id: str) -> List[RefreshTokenRecord]:
        members = self.client.zrevrange(self._user_key(user_id), 0, -1)
        if not members:
            return []
        pipe = self.client.pipeline()
        for member in members:
            pipe.hgetall(self._record_key(member))
        records = []
        for member, data in zip(members, pipe.execute()):
            if not data:
                continue
            record = self._decode(member, data)
            if not record.is_expired():
                records.append(record)
        return records

    def purge_expired_refresh_tokens(self) -> int:
        """Drop index entries whose record already expired out of Redis."""

        purged = 0
        for user_key in self.client.scan_iter(match=f"{self.USER_PREFIX}*"):
            for member in self.client.zrange(user_key, 0, -1):
                if not self.client.exists(self._record_key(member)):
                    purged += int(self.client.zrem(user_key, member))
        return purged

    def ping(self) -> bool:
        return bool(self.client.ping())
