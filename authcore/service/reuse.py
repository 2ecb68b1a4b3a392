from __future__ import annotations

import hashlib
import hmac
import threading
from datetime import datetime, timedelta
from typing import Dict, Optional

from authcore.logging import get_logger
from authcore.service.refresh_tokens import REASON_REUSE, RefreshTokenService
from authcore.storage.models import utcnow
from authcore.storage.redis_cache import RedisCache

logger = get_logger(__name__)


class ReuseDetector:
    """Short-lived ledger of consumed refresh-token digests.

    A digest seen twice within the ledger TTL means a rotated token was
    replayed; every refresh token of the owner is revoked. The ledger is a
    per-process dict unless a Redis cache is configured, in which case
    ``SET NX`` makes it shared across instances. Ledger failures count as
    reuse.
    """

    def __init__(
        self,
        tokens: RefreshTokenService,
        secret: str,
        *,
        ttl_hours: int = 24,
        cache: Optional[RedisCache] = None,
    ) -> None:
        self.tokens = tokens
        self.cache = cache
        self.ttl = timedelta(hours=ttl_hours)
        self._key = hashlib.sha256(b"authcore-refresh-reuse:" + secret.encode()).digest()
        self._lock = threading.Lock()
        self._ledger: Dict[str, datetime] = {}

    def digest(self, token_value: str) -> str:
        return hmac.new(self._key, token_value.encode(), hashlib.sha256).hexdigest()

    def _mark_local(self, digest: str, now: datetime) -> bool:
        with self._lock:
            seen_at = self._ledger.get(digest)
            if seen_at is not None and now - seen_at < self.ttl:
                return False
            self._ledger[digest] = now
            return True

    async def _mark(self, digest: str) -> bool:
        if self.cache:
            return await self.cache.mark_refresh_consumed(
                digest, int(self.ttl.total_seconds())
            )
        return self._mark_local(digest, utcnow())

    async def can_use(self, token_value: str, *, user_id: Optional[str] = None) -> bool:
        digest = self.digest(token_value)
        try:
            fresh = await self._mark(digest)
        except Exception as exc:
            logger.error("reuse_ledger_unavailable", error=str(exc))
            fresh = False
        if fresh:
            return True
        owner = user_id
        if owner is None:
            record = self.tokens.lookup(token_value)
            owner = record.user_id if record else None
        logger.warning("refresh_reuse_detected", user_id=owner, token_hash=digest[:12])
        if owner:
            self.tokens.revoke_all(owner, REASON_REUSE)
        return False

    async def release(self, token_value: str) -> bool:
        """Drop the ledger entry for a token whose rotation did not commit.

        The token stays valid in the store, so a retry with it must not be
        mistaken for a replay.
        """
        digest = self.digest(token_value)
        if self.cache:
            try:
                return await self.cache.release_refresh_consumed(digest)
            except Exception as exc:
                logger.error("reuse_ledger_release_failed", token_hash=digest[:12], error=str(exc))
                return False
        with self._lock:
            return self._ledger.pop(digest, None) is not None

    def cleanup(self, now: Optional[datetime] = None) -> int:
        cutoff = (now or utcnow()) - self.ttl
        with self._lock:
            stale = [d for d, seen_at in self._ledger.items() if seen_at <= cutoff]
            for digest in stale:
                del self._ledger[digest]
        return len(stale)

    def __len__(self) -> int:
        with self._lock:
            return len(self._ledger)
