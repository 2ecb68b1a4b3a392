from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Optional

from authcore.logging import get_logger
from authcore.service.auth import AuthService
from authcore.service.rate_limit import IpBlocker
from authcore.service.refresh_tokens import RefreshTokenService
from authcore.service.reuse import ReuseDetector
from authcore.service.sessions import SessionRegistry
from authcore.service.token_cache import DistributedTokenCache

logger = get_logger(__name__)


@dataclass
class SweepReport:
    sessions_expired: int = 0
    blocks_expired: int = 0
    attempts_purged: int = 0
    refresh_tokens_purged: int = 0
    ledger_entries_evicted: int = 0
    cache_entries_evicted: int = 0
    reset_tokens_evicted: int = 0


class MaintenanceSweeper:
    """Fixed-interval background task for expiry and retention housekeeping."""

    def __init__(
        self,
        *,
        sessions: SessionRegistry,
        ip_blocker: IpBlocker,
        refresh_tokens: RefreshTokenService,
        reuse: ReuseDetector,
        token_cache: DistributedTokenCache,
        auth: Optional[AuthService] = None,
        interval_seconds: int = 300,
        failed_attempt_retention_days: int = 30,
    ) -> None:
        self.sessions = sessions
        self.ip_blocker = ip_blocker
        self.refresh_tokens = refresh_tokens
        self.reuse = reuse
        self.token_cache = token_cache
        self.auth = auth
        self.interval_seconds = interval_seconds
        self.failed_attempt_retention_days = failed_attempt_retention_days
        self._running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._running

    async def sweep_once(self) -> SweepReport:
        report = SweepReport(
            sessions_expired=self.sessions.sweep_expired(),
            blocks_expired=self.ip_blocker.sweep_expired_blocks(),
            attempts_purged=self.ip_blocker.cleanup_old_attempts(
                self.failed_attempt_retention_days
            ),
            refresh_tokens_purged=self.refresh_tokens.purge_expired(),
            ledger_entries_evicted=self.reuse.cleanup(),
            cache_entries_evicted=await self.token_cache.cleanup(),
            reset_tokens_evicted=self.auth.cleanup_reset_tokens() if self.auth else 0,
        )
        logger.debug("maintenance_sweep_completed", **report.__dict__)
        return report

    async def start(self) -> None:
        if self._running:
            logger.warning("maintenance_sweeper_already_running")
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("maintenance_sweeper_started", interval_seconds=self.interval_seconds)

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("maintenance_sweeper_stopped")

    async def _run_loop(self) -> None:
        consecutive_errors = 0
        while self._running:
            try:
                await self.sweep_once()
                consecutive_errors = 0
            except Exception as exc:
                consecutive_errors += 1
                logger.error(
                    "maintenance_sweep_error",
                    error=str(exc),
                    error_type=type(exc).__name__,
                    consecutive_errors=consecutive_errors,
                )
                if consecutive_errors > 3:
                    backoff = min(
                        3600, self.interval_seconds * (2 ** (consecutive_errors - 3))
                    )
                    logger.warning(
                        "maintenance_sweep_backoff",
                        backoff_seconds=backoff,
                        consecutive_errors=consecutive_errors,
                    )
                    await asyncio.sleep(backoff)
                    continue
            await asyncio.sleep(self.interval_seconds)
