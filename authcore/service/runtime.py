from __future__ import annotations

import asyncio
import threading
from datetime import datetime, timedelta
from typing import Dict, Optional, Tuple
from urllib.parse import urlparse, urlunparse

from authcore.config import get_settings, reset_settings_cache
from authcore.logging import get_logger
from authcore.service.auth import AuthService, PasswordVerifier
from authcore.service.email import EmailService
from authcore.service.geo import GeoLocator
from authcore.service.rate_limit import IpBlocker
from authcore.service.refresh_tokens import RefreshTokenService
from authcore.service.reuse import ReuseDetector
from authcore.service.security_settings import SecuritySettingsService
from authcore.service.sessions import SessionRegistry
from authcore.service.sweeper import MaintenanceSweeper
from authcore.service.token_cache import DistributedTokenCache
from authcore.service.tokens import ClaimsBuilder, TokenIssuer
from authcore.storage.memory import MemoryStore
from authcore.storage.models import utcnow
from authcore.storage.postgres import PostgresStore
from authcore.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a URL with ``***`` for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            if self.settings.use_memory_store:
                self.store = MemoryStore(
                    fs_root=self.settings.shared_fs_root
                    if self.settings.persist_memory_store
                    else None
                )
            else:
                self.store = PostgresStore(self.settings.database_url)
            logger.info("runtime_store_initialized", store_type=store_type)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # Sync client in test mode avoids binding to a per-test event loop
                if self.settings.test_mode:
                    cache = SyncRedisCache(self.settings.redis_url)
                else:
                    cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if not self.cache:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for the shared reuse ledger, token cache and rate limits; "
                    "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; the reuse ledger, token cache "
                    "and rate limits are per-process only."
                ),
                mode=fallback_mode,
            )

        self.security_settings = SecuritySettingsService(self.store)
        self.issuer = TokenIssuer(
            self.settings.jwt_secret,
            self.settings.jwt_issuer,
            self.settings.jwt_audience,
        )
        self.claims = ClaimsBuilder()
        self.refresh_tokens = RefreshTokenService(
            self.store,
            ttl_days=self.settings.refresh_token_ttl_days,
            retention_days=self.settings.refresh_token_retention_days,
        )
        self.reuse = ReuseDetector(
            self.refresh_tokens,
            self.settings.jwt_secret,
            ttl_hours=self.settings.reuse_ledger_ttl_hours,
            cache=self.cache,
        )
        self.ip_blocker = IpBlocker(self.store, self.security_settings)
        self.geo = GeoLocator(
            self.settings.geo_lookup_url,
            timeout_seconds=self.settings.geo_lookup_timeout_seconds,
            enabled=self.settings.geo_lookup_enabled,
        )
        self.sessions = SessionRegistry(self.store, self.security_settings, self.geo)
        self.token_cache = DistributedTokenCache(self.cache)
        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
            base_url=self.settings.app_base_url,
        )
        self.auth = AuthService(
            self.store,
            self.settings,
            issuer=self.issuer,
            claims=self.claims,
            refresh_tokens=self.refresh_tokens,
            reuse=self.reuse,
            ip_blocker=self.ip_blocker,
            sessions=self.sessions,
            token_cache=self.token_cache,
            security_settings=self.security_settings,
            verifier=PasswordVerifier(self.store),
            email=self.email,
            cache=self.cache,
        )
        self.sweeper = MaintenanceSweeper(
            sessions=self.sessions,
            ip_blocker=self.ip_blocker,
            refresh_tokens=self.refresh_tokens,
            reuse=self.reuse,
            token_cache=self.token_cache,
            auth=self.auth,
            interval_seconds=self.settings.sweep_interval_seconds,
            failed_attempt_retention_days=self.settings.failed_attempt_retention_days,
        )
        self._local_rate_limits: Dict[str, Tuple[float, datetime]] = {}
        self._local_rate_limit_lock = asyncio.Lock()

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            redis_enabled=self.cache is not None,
            email_configured=self.email.is_configured,
            geo_lookup_enabled=self.settings.geo_lookup_enabled,
        )


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton with double-checked locking."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and runtime.cache is not None:
            try:
                if isinstance(runtime.cache, SyncRedisCache):
                    asyncio.run(runtime.cache.close())
                else:
                    try:
                        loop = asyncio.get_running_loop()
                        loop.create_task(runtime.cache.close())
                    except RuntimeError:
                        asyncio.run(runtime.cache.close())
            except Exception as exc:
                logger.warning("runtime_cache_close_failed", error=str(exc))

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime


async def check_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    cost: int = 1,
) -> Tuple[bool, int, int]:
    """Token-bucket check that works with or without Redis.

    Returns ``(allowed, remaining, reset_seconds)``.
    """
    if limit <= 0:
        return True, limit, 0
    if window_seconds <= 0:
        logger.warning("rate_limit_invalid_window", key=key, window_seconds=window_seconds)
        window_seconds = 60
    if runtime.cache:
        return await runtime.cache.check_rate_limit(key, limit, window_seconds, cost=cost)
    now = utcnow()
    refill_rate = float(limit) / float(window_seconds)
    async with runtime._local_rate_limit_lock:
        tokens, last_ts = runtime._local_rate_limits.get(key, (float(limit), now))
        elapsed = max(0.0, (now - last_ts).total_seconds())
        tokens = min(float(limit), tokens + elapsed * refill_rate)
        allowed = tokens >= cost
        if allowed:
            tokens -= cost
        runtime._local_rate_limits[key] = (tokens, now)
        reset_seconds = int((cost - tokens) / refill_rate) if not allowed else 0
    return allowed, int(tokens), reset_seconds


def prune_local_rate_limits(runtime: Runtime, *, max_age: timedelta = timedelta(hours=1)) -> int:
    cutoff = utcnow() - max_age
    stale = [k for k, (_, ts) in runtime._local_rate_limits.items() if ts < cutoff]
    for key in stale:
        runtime._local_rate_limits.pop(key, None)
    return len(stale)
