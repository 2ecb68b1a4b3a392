from __future__ import annotations

import hashlib
import json
import time
from datetime import datetime, timezone
from typing import List, Optional, Tuple

import redis.asyncio as aioredis
from redis import Redis

_CONSUMED_PREFIX = "auth:refresh:consumed:"
_CONTEXT_PREFIX = "token:ctx:"
_CONTEXT_INDEX_PREFIX = "token:ctxidx:"
_RESET_PREFIX = "auth:reset:"


def _slot_owner(slot_key: str) -> str:
    return slot_key.partition(":")[0]


def _context_index(slot_key: str) -> str:
    return f"{_CONTEXT_INDEX_PREFIX}{_slot_owner(slot_key)}"


class RedisCache:
    """Thin Redis wrapper for the reuse ledger, token slots and rate limits."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Atomic refill + consume
    _TOKEN_BUCKET_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local refill_rate = tonumber(ARGV[2])
local capacity = tonumber(ARGV[3])
local cost = tonumber(ARGV[4])

local data = redis.call('HMGET', key, 'tokens', 'ts')
local tokens = tonumber(data[1])
local last = tonumber(data[2])

if tokens == nil or last == nil then
  tokens = capacity
  last = now
end

local delta = math.max(0, now - last)
tokens = math.min(capacity, tokens + delta * refill_rate)

if tokens < cost then
  redis.call('HMSET', key, 'tokens', tokens, 'ts', now)
  local reset_after = math.ceil((cost - tokens) / refill_rate)
  redis.call('EXPIRE', key, math.max(reset_after, 1))
  return {0, tokens, reset_after}
end

tokens = tokens - cost
redis.call('HMSET', key, 'tokens', tokens, 'ts', now)
local ttl = math.ceil(capacity / refill_rate)
redis.call('EXPIRE', key, math.max(ttl, 1))
return {1, tokens, 0}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self.client.register_script(self._TOKEN_BUCKET_SCRIPT)

    @staticmethod
    def _ttl_seconds(expires_at: datetime) -> int:
        """TTL in whole seconds until ``expires_at``, clamped to at least 1."""

        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        else:
            expires_at = expires_at.astimezone(timezone.utc)
        return max(1, int((expires_at - datetime.now(timezone.utc)).total_seconds()))

    @staticmethod
    def _normalize_rate_key(key: str) -> str:
        digest = hashlib.sha256(key.encode()).hexdigest()
        return f"rate:{digest}"

    @staticmethod
    def _encode_slot(value: str, expires_at: datetime) -> str:
        return json.dumps({"value": value, "expires_at": expires_at.isoformat()})

    @staticmethod
    def _decode_slot(raw: Optional[str]) -> Optional[Tuple[str, datetime]]:
        if not raw:
            return None
        try:
            data = json.loads(raw)
            return data["value"], datetime.fromisoformat(data["expires_at"])
        except (json.JSONDecodeError, KeyError, TypeError, ValueError):
            return None

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async client is not bound to a temporary loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def check_rate_limit(
        self, key: str, limit: int, window_seconds: int, *, cost: int = 1
    ) -> Tuple[bool, int, int]:
        """Token bucket check; returns ``(allowed, remaining, reset_seconds)``."""

        safe_key = self._normalize_rate_key(key)
        refill_rate = float(limit) / float(window_seconds)
        allowed, tokens, reset_after = await self._token_bucket(
            keys=[safe_key],
            args=[time.time(), refill_rate, limit, max(1, cost)],
        )
        return bool(int(allowed)), max(0, int(tokens)), int(reset_after or 0)

    async def mark_refresh_consumed(self, digest: str, ttl_seconds: int) -> bool:
        """Record a consumed refresh-token digest; False if it was already present."""
        return bool(
            await self.client.set(
                f"{_CONSUMED_PREFIX}{digest}", "1", ex=max(1, ttl_seconds), nx=True
            )
        )

    async def release_refresh_consumed(self, digest: str) -> bool:
        """Forget a consumed digest whose rotation never committed."""
        return bool(await self.client.delete(f"{_CONSUMED_PREFIX}{digest}"))

    async def get_token_slot(self, key: str) -> Optional[Tuple[str, datetime]]:
        return self._decode_slot(await self.client.get(key))

    async def set_token_slot(self, key: str, value: str, expires_at: datetime) -> None:
        await self.client.set(
            key, self._encode_slot(value, expires_at), ex=self._ttl_seconds(expires_at)
        )

    async def delete_token_slot(self, *keys: str) -> int:
        if not keys:
            return 0
        return int(await self.client.delete(*keys))

    async def list_token_slots(self, pattern: str) -> List[str]:
        return [key async for key in self.client.scan_iter(match=pattern)]

    async def register_context(self, context_id: str, slot_key: str, ttl_seconds: int) -> None:
        ttl = max(1, ttl_seconds)
        index = _context_index(slot_key)
        async with self.client.pipeline(transaction=True) as pipe:
            pipe.set(f"{_CONTEXT_PREFIX}{context_id}", slot_key, ex=ttl)
            pipe.sadd(index, context_id)
            pipe.expire(index, ttl)
            await pipe.execute()

    async def resolve_context(self, context_id: str) -> Optional[str]:
        return await self.client.get(f"{_CONTEXT_PREFIX}{context_id}")

    async def unregister_context(self, context_id: str) -> bool:
        slot_key = await self.client.getdel(f"{_CONTEXT_PREFIX}{context_id}")
        if slot_key is None:
            return False
        await self.client.srem(_context_index(slot_key), context_id)
        return True

    async def drop_user_contexts(self, user_id: str) -> int:
        """Delete every context still mapped to one of ``user_id``'s slots."""
        index = f"{_CONTEXT_INDEX_PREFIX}{user_id}"
        removed = 0
        for context_id in await self.client.smembers(index):
            key = f"{_CONTEXT_PREFIX}{context_id}"
            slot_key = await self.client.get(key)
            if slot_key and _slot_owner(slot_key) == user_id:
                removed += int(await self.client.delete(key))
        await self.client.delete(index)
        return removed

    async def store_reset_token(self, digest: str, user_id: str, ttl_seconds: int) -> None:
        await self.client.set(f"{_RESET_PREFIX}{digest}", user_id, ex=max(1, ttl_seconds))

    async def pop_reset_token(self, digest: str) -> Optional[str]:
        return await self.client.getdel(f"{_RESET_PREFIX}{digest}")

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous Redis client internally to avoid event loop binding
    issues under pytest, but exposes async methods so callers can await it
    uniformly like :class:`RedisCache`.
    """

    def __init__(
        self, redis_url: str, *, socket_timeout: float = RedisCache.DEFAULT_OPERATION_TIMEOUT
    ):
        self.redis_url = redis_url
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self._sync_client.register_script(
            RedisCache._TOKEN_BUCKET_SCRIPT
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity."""
        self._sync_client.ping()

    async def check_rate_limit(
        self, key: str, limit: int, window_seconds: int, *, cost: int = 1
    ) -> Tuple[bool, int, int]:
        safe_key = RedisCache._normalize_rate_key(key)
        refill_rate = float(limit) / float(window_seconds)
        allowed, tokens, reset_after = self._token_bucket(
            keys=[safe_key], args=[time.time(), refill_rate, limit, max(1, cost)]
        )
        return bool(int(allowed)), max(0, int(tokens)), int(reset_after or 0)

    async def mark_refresh_consumed(self, digest: str, ttl_seconds: int) -> bool:
        return bool(
            self._sync_client.set(
                f"{_CONSUMED_PREFIX}{digest}", "1", ex=max(1, ttl_seconds), nx=True
            )
        )

    async def release_refresh_consumed(self, digest: str) -> bool:
        return bool(self._sync_client.delete(f"{_CONSUMED_PREFIX}{digest}"))

    async def get_token_slot(self, key: str) -> Optional[Tuple[str, datetime]]:
        return RedisCache._decode_slot(self._sync_client.get(key))

    async def set_token_slot(self, key: str, value: str, expires_at: datetime) -> None:
        self._sync_client.set(
            key,
            RedisCache._encode_slot(value, expires_at),
            ex=RedisCache._ttl_seconds(expires_at),
        )

    async def delete_token_slot(self, *keys: str) -> int:
        if not keys:
            return 0
        return int(self._sync_client.delete(*keys))

    async def list_token_slots(self, pattern: str) -> List[str]:
        return list(self._sync_client.scan_iter(match=pattern))

    async def register_context(self, context_id: str, slot_key: str, ttl_seconds: int) -> None:
        ttl = max(1, ttl_seconds)
        index = _context_index(slot_key)
        with self._sync_client.pipeline(transaction=True) as pipe:
            pipe.set(f"{_CONTEXT_PREFIX}{context_id}", slot_key, ex=ttl)
            pipe.sadd(index, context_id)
            pipe.expire(index, ttl)
            pipe.execute()

    async def resolve_context(self, context_id: str) -> Optional[str]:
        return self._sync_client.get(f"{_CONTEXT_PREFIX}{context_id}")

    async def unregister_context(self, context_id: str) -> bool:
        slot_key = self._sync_client.getdel(f"{_CONTEXT_PREFIX}{context_id}")
        if slot_key is None:
            return False
        self._sync_client.srem(_context_index(slot_key), context_id)
        return True

    async def drop_user_contexts(self, user_id: str) -> int:
        index = f"{_CONTEXT_INDEX_PREFIX}{user_id}"
        removed = 0
        for context_id in self._sync_client.smembers(index):
            key = f"{_CONTEXT_PREFIX}{context_id}"
            slot_key = self._sync_client.get(key)
            if slot_key and _slot_owner(slot_key) == user_id:
                removed += int(self._sync_client.delete(key))
        self._sync_client.delete(index)
        return removed

    async def store_reset_token(self, digest: str, user_id: str, ttl_seconds: int) -> None:
        self._sync_client.set(f"{_RESET_PREFIX}{digest}", user_id, ex=max(1, ttl_seconds))

    async def pop_reset_token(self, digest: str) -> Optional[str]:
        return self._sync_client.getdel(f"{_RESET_PREFIX}{digest}")

    async def close(self) -> None:
        """Close Redis connection."""
        self._sync_client.close()
