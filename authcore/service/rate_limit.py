from __future__ import annotations

import threading
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Protocol

from authcore.logging import get_logger
from authcore.service.errors import ConflictError, NotFoundError
from authcore.service.results import Result
from authcore.service.security_settings import SecuritySettingsService
from authcore.storage.errors import ConstraintViolation
from authcore.storage.models import BlockedIp, FailedLoginAttempt, utcnow

logger = get_logger(__name__)

STATISTICS_WINDOW_DAYS = 7
RECENT_ATTEMPTS_LIMIT = 50
TOP_IPS_LIMIT = 10


class BlockStore(Protocol):
    def add_failed_attempt(self, attempt: FailedLoginAttempt) -> FailedLoginAttempt: ...

    def count_failed_attempts(self, ip_address: str, since: datetime) -> int: ...

    def list_failed_attempts(self, since: datetime) -> List[FailedLoginAttempt]: ...

    def purge_failed_attempts(self, before: datetime) -> int: ...

    def get_active_block(self, ip_address: str) -> Optional[BlockedIp]: ...

    def create_block(self, block: BlockedIp) -> BlockedIp: ...

    def deactivate_block(self, block_id: str) -> bool: ...

    def list_active_blocks(self) -> List[BlockedIp]: ...

    def count_active_blocks(self) -> int: ...

    def deactivate_expired_blocks(self, now: Optional[datetime] = None) -> int: ...


@dataclass
class LoginAttemptStatistics:
    total_failed_attempts: int = 0
    unique_ip_addresses: int = 0
    blocked_ip_addresses: int = 0
    recent_attempts: List[FailedLoginAttempt] = field(default_factory=list)
    attempts_by_ip: Dict[str, int] = field(default_factory=dict)


class IpBlocker:
    """Failed-login bookkeeping and IP blocks.

    Detection counts failures inside the trailing ``block_duration_minutes``
    window, so the same setting drives both sensitivity and block length.
    Count-then-block runs under ``_lock``; across processes the store's
    one-active-row-per-IP constraint keeps blocks unique.
    """

    def __init__(self, store: BlockStore, settings: SecuritySettingsService) -> None:
        self.store = store
        self.settings = settings
        self._lock = threading.Lock()

    def is_blocked(self, ip_address: Optional[str], *, now: Optional[datetime] = None) -> bool:
        if not ip_address or not self.settings.rate_limit.enable_ip_blocking:
            return False
        block = self.store.get_active_block(ip_address)
        if block is None:
            return False
        if block.is_expired(now):
            # Lazy expiry on read
            if self.store.deactivate_block(block.id):
                logger.info("ip_block_expired", ip_address=ip_address)
            return False
        return True

    def retry_after(self, ip_address: Optional[str], *, now: Optional[datetime] = None) -> Optional[int]:
        """Seconds left on the active block, or None for no block or a permanent one."""
        if not ip_address:
            return None
        block = self.store.get_active_block(ip_address)
        if block is None or block.is_permanent or block.expires_at is None:
            return None
        remaining = (block.expires_at - (now or utcnow())).total_seconds()
        return max(1, int(remaining)) if remaining > 0 else None

    def record_failure(
        self,
        username: str,
        ip_address: str,
        user_agent: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> Optional[BlockedIp]:
        """Append a failed attempt; returns the block if this attempt created one."""
        self.store.add_failed_attempt(
            FailedLoginAttempt.new(
                username, ip_address, user_agent=user_agent, reason=reason
            )
        )
        logger.warning(
            "login_failed", username=username, ip_address=ip_address, reason=reason
        )
        cfg = self.settings.rate_limit
        if not cfg.enable_ip_blocking:
            return None
        with self._lock:
            now = utcnow()
            window_start = now - timedelta(minutes=cfg.block_duration_minutes)
            recent = self.store.count_failed_attempts(ip_address, window_start)
            if recent < cfg.suspicious_activity_threshold:
                return None
            existing = self.store.get_active_block(ip_address)
            if existing is not None:
                if not existing.is_expired(now):
                    return None
                self.store.deactivate_block(existing.id)
            block = BlockedIp.new(
                ip_address,
                f"exceeded {cfg.suspicious_activity_threshold} failed login attempts",
                cfg.block_duration_minutes,
                failed_attempts=recent,
            )
            try:
                self.store.create_block(block)
            except ConstraintViolation:
                # Another instance blocked the IP first
                return None
        logger.warning(
            "ip_blocked_automatically",
            ip_address=ip_address,
            failed_attempts=recent,
            duration_minutes=cfg.block_duration_minutes,
        )
        return block

    def block_manually(
        self, ip_address: str, reason: str, duration_minutes: Optional[int] = None
    ) -> Result[BlockedIp]:
        with self._lock:
            existing = self.store.get_active_block(ip_address)
            if existing is not None and not existing.is_expired():
                return Result.failure(
                    ConflictError("ip address already blocked", detail={"ip_address": ip_address})
                )
            if existing is not None:
                self.store.deactivate_block(existing.id)
            block = BlockedIp.new(ip_address, reason, duration_minutes)
            try:
                self.store.create_block(block)
            except ConstraintViolation:
                return Result.failure(
                    ConflictError("ip address already blocked", detail={"ip_address": ip_address})
                )
        logger.info(
            "ip_blocked_manually",
            ip_address=ip_address,
            reason=reason,
            permanent=block.is_permanent,
        )
        return Result.success(block)

    def unblock(self, ip_address: str) -> Result[bool]:
        block = self.store.get_active_block(ip_address)
        if block is None or not self.store.deactivate_block(block.id):
            logger.warning("ip_unblock_not_blocked", ip_address=ip_address)
            return Result.failure(
                NotFoundError("ip address is not blocked", detail={"ip_address": ip_address})
            )
        logger.info("ip_unblocked", ip_address=ip_address)
        return Result.success(True)

    def list_blocked(self) -> List[BlockedIp]:
        return self.store.list_active_blocks()

    def statistics(self, *, now: Optional[datetime] = None) -> LoginAttemptStatistics:
        since = (now or utcnow()) - timedelta(days=STATISTICS_WINDOW_DAYS)
        attempts = self.store.list_failed_attempts(since)
        by_ip = Counter(a.ip_address for a in attempts)
        return LoginAttemptStatistics(
            total_failed_attempts=len(attempts),
            unique_ip_addresses=len(by_ip),
            blocked_ip_addresses=self.store.count_active_blocks(),
            recent_attempts=sorted(attempts, key=lambda a: a.attempt_time, reverse=True)[
                :RECENT_ATTEMPTS_LIMIT
            ],
            attempts_by_ip=dict(by_ip.most_common(TOP_IPS_LIMIT)),
        )

    def cleanup_old_attempts(self, retention_days: int = 30, *, now: Optional[datetime] = None) -> int:
        cutoff = (now or utcnow()) - timedelta(days=retention_days)
        purged = self.store.purge_failed_attempts(cutoff)
        if purged:
            logger.info("failed_attempts_purged", count=purged, retention_days=retention_days)
        return purged

    def sweep_expired_blocks(self, *, now: Optional[datetime] = None) -> int:
        expired = self.store.deactivate_expired_blocks(now)
        if expired:
            logger.info("ip_blocks_expired", count=expired)
        return expired
