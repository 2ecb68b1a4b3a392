from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

from authcore.logging import get_logger
from authcore.storage.models import utcnow
from authcore.storage.redis_cache import RedisCache

logger = get_logger(__name__)

JWT = "jwt"
REFRESH = "refresh"
DEFAULT_DEVICE = "default"


@dataclass(frozen=True)
class CachedToken:
    value: str
    expires_at: datetime

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at <= (now or utcnow())


class DistributedTokenCache:
    """Shared access/refresh token slots per ``(user, device)``.

    Entries are expendable copies of durable state: a miss or a backend
    failure is never an error, callers fall back to the store or to a fresh
    rotation. The context map lets many short-lived request contexts resolve
    to one slot instead of each minting their own.
    """

    def __init__(
        self,
        cache: Optional[RedisCache] = None,
        *,
        context_ttl_seconds: int = 24 * 3600,
    ) -> None:
        self.cache = cache
        self.context_ttl_seconds = context_ttl_seconds
        self._entries: Dict[str, CachedToken] = {}
        self._contexts: Dict[str, str] = {}
        self._lock = asyncio.Lock()

    @staticmethod
    def slot_key(user_id: str, token_type: str, device_id: Optional[str] = None) -> str:
        return f"token:{user_id}:{token_type}:{device_id or DEFAULT_DEVICE}"

    async def _get(self, key: str) -> Optional[CachedToken]:
        if self.cache:
            try:
                slot = await self.cache.get_token_slot(key)
            except Exception as exc:
                logger.warning("token_cache_read_failed", key=key, error=str(exc))
                return None
            entry = CachedToken(*slot) if slot else None
        else:
            async with self._lock:
                entry = self._entries.get(key)
        if entry is None or entry.is_expired():
            return None
        return entry

    async def _set(self, key: str, value: str, expires_at: datetime) -> None:
        if self.cache:
            try:
                await self.cache.set_token_slot(key, value, expires_at)
            except Exception as exc:
                logger.warning("token_cache_write_failed", key=key, error=str(exc))
            return
        async with self._lock:
            self._entries[key] = CachedToken(value, expires_at)

    async def _delete(self, *keys: str) -> int:
        if self.cache:
            try:
                return await self.cache.delete_token_slot(*keys)
            except Exception as exc:
                logger.warning("token_cache_delete_failed", error=str(exc))
                return 0
        async with self._lock:
            return sum(1 for key in keys if self._entries.pop(key, None) is not None)

    async def get_jwt(self, user_id: str, device_id: Optional[str] = None) -> Optional[CachedToken]:
        return await self._get(self.slot_key(user_id, JWT, device_id))

    async def set_jwt(
        self, user_id: str, token: str, expires_at: datetime, device_id: Optional[str] = None
    ) -> None:
        await self._set(self.slot_key(user_id, JWT, device_id), token, expires_at)

    async def get_refresh(
        self, user_id: str, device_id: Optional[str] = None
    ) -> Optional[CachedToken]:
        return await self._get(self.slot_key(user_id, REFRESH, device_id))

    async def set_refresh(
        self, user_id: str, token: str, expires_at: datetime, device_id: Optional[str] = None
    ) -> None:
        await self._set(self.slot_key(user_id, REFRESH, device_id), token, expires_at)

    async def update(
        self,
        user_id: str,
        *,
        jwt: str,
        jwt_expires_at: datetime,
        refresh: str,
        refresh_expires_at: datetime,
        device_id: Optional[str] = None,
    ) -> None:
        await self.set_jwt(user_id, jwt, jwt_expires_at, device_id)
        await self.set_refresh(user_id, refresh, refresh_expires_at, device_id)

    async def remove(self, user_id: str, device_id: Optional[str] = None) -> int:
        return await self._delete(
            self.slot_key(user_id, JWT, device_id),
            self.slot_key(user_id, REFRESH, device_id),
        )

    async def remove_user(self, user_id: str) -> int:
        """Drop every slot of ``user_id`` and the contexts mapped to them."""
        prefix = f"token:{user_id}:"
        if self.cache:
            try:
                await self.cache.drop_user_contexts(user_id)
            except Exception as exc:
                logger.warning("token_context_drop_failed", user_id=user_id, error=str(exc))
            try:
                keys = await self.cache.list_token_slots(f"{prefix}*")
            except Exception as exc:
                logger.warning("token_cache_scan_failed", user_id=user_id, error=str(exc))
                return 0
            return await self._delete(*keys)
        async with self._lock:
            keys = [k for k in self._entries if k.startswith(prefix)]
            for key in keys:
                del self._entries[key]
            stale_contexts = [
                ctx for ctx, slot in self._contexts.items() if slot.startswith(f"{user_id}:")
            ]
            for ctx in stale_contexts:
                del self._contexts[ctx]
        return len(keys)

    # context map
    async def register_context(
        self, context_id: str, user_id: str, device_id: Optional[str] = None
    ) -> str:
        slot = f"{user_id}:{device_id or DEFAULT_DEVICE}"
        if self.cache:
            try:
                await self.cache.register_context(context_id, slot, self.context_ttl_seconds)
            except Exception as exc:
                logger.warning("token_context_register_failed", error=str(exc))
            return slot
        async with self._lock:
            self._contexts[context_id] = slot
        return slot

    async def resolve_context(self, context_id: str) -> Optional[Tuple[str, str]]:
        if self.cache:
            try:
                slot = await self.cache.resolve_context(context_id)
            except Exception as exc:
                logger.warning("token_context_resolve_failed", error=str(exc))
                return None
        else:
            async with self._lock:
                slot = self._contexts.get(context_id)
        if not slot:
            return None
        user_id, _, device_id = slot.partition(":")
        return user_id, device_id or DEFAULT_DEVICE

    async def unregister_context(self, context_id: str) -> bool:
        if self.cache:
            try:
                return await self.cache.unregister_context(context_id)
            except Exception as exc:
                logger.warning("token_context_unregister_failed", error=str(exc))
                return False
        async with self._lock:
            return self._contexts.pop(context_id, None) is not None

    async def cleanup(self, now: Optional[datetime] = None) -> int:
        """Evict expired in-memory entries; Redis expires its own keys."""
        if self.cache:
            return 0
        stamp = now or utcnow()
        async with self._lock:
            expired: List[str] = [k for k, e in self._entries.items() if e.is_expired(stamp)]
            for key in expired:
                del self._entries[key]
        return len(expired)

    @staticmethod
    def near_expiry(entry: CachedToken, threshold_seconds: int, now: Optional[datetime] = None) -> bool:
        return entry.expires_at - (now or utcnow()) <= timedelta(seconds=threshold_seconds)
