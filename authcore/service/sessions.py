from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Protocol, Tuple

from authcore.logging import get_logger
from authcore.service.errors import ForbiddenError, NotFoundError
from authcore.service.geo import UNKNOWN_LOCATION, GeoLocator
from authcore.service.results import Result
from authcore.service.security_settings import SecuritySettingsService, SessionConfig
from authcore.service.user_agent import parse_user_agent
from authcore.storage.models import UserSession, utcnow

logger = get_logger(__name__)


class SessionStore(Protocol):
    def create_session_with_limit(
        self, session: UserSession, max_active: int
    ) -> Tuple[UserSession, List[UserSession]]: ...

    def get_session(self, session_id: str) -> Optional[UserSession]: ...

    def get_session_by_jwt_id(self, jwt_id: str) -> Optional[UserSession]: ...

    def list_sessions(self, user_id: str, *, active_only: bool = True) -> List[UserSession]: ...

    def latest_session(self, user_id: str) -> Optional[UserSession]: ...

    def update_session_jwt_id(self, session_id: str, jwt_id: str) -> bool: ...

    def deactivate_session(self, session_id: str) -> bool: ...

    def deactivate_user_sessions(
        self, user_id: str, except_session_id: Optional[str] = None
    ) -> int: ...

    def touch_session(
        self, session_id: str, expires_at: datetime, *, now: Optional[datetime] = None
    ) -> Optional[UserSession]: ...

    def deactivate_expired_sessions(self, now: Optional[datetime] = None) -> int: ...


@dataclass
class SessionStatistics:
    total_active_sessions: int = 0
    desktop_sessions: int = 0
    mobile_sessions: int = 0
    tablet_sessions: int = 0
    sessions_by_browser: Dict[str, int] = field(default_factory=dict)
    sessions_by_location: Dict[str, int] = field(default_factory=dict)
    last_login_time: Optional[datetime] = None
    last_login_ip: Optional[str] = None


def is_session_live(session: Optional[UserSession], now: Optional[datetime] = None) -> bool:
    return bool(session and session.is_active and session.expires_at > (now or utcnow()))


class SessionRegistry:
    """One record per authenticated device, capped per user."""

    def __init__(
        self,
        store: SessionStore,
        settings: SecuritySettingsService,
        geo: GeoLocator,
    ) -> None:
        self.store = store
        self.settings = settings
        self.geo = geo

    async def _locate(self, ip: Optional[str]) -> str:
        try:
            return await self.geo.locate(ip)
        except Exception as exc:
            logger.warning("session_geo_lookup_error", ip_address=ip, error=str(exc))
            return UNKNOWN_LOCATION

    def _max_active(self, cfg: SessionConfig) -> int:
        return cfg.max_concurrent_sessions if cfg.allow_multiple_devices else 1

    async def create(
        self,
        user_id: str,
        ip: Optional[str],
        user_agent: Optional[str],
        *,
        jwt_id: Optional[str] = None,
        device_id: Optional[str] = None,
    ) -> UserSession:
        info = parse_user_agent(user_agent)
        location = await self._locate(ip)
        cfg = self.settings.session
        session = UserSession.new(
            user_id,
            cfg.session_timeout_minutes,
            ip_address=ip,
            user_agent=user_agent,
            device_type=info.device_type,
            browser=info.browser,
            os=info.os,
            location=location,
            jwt_id=jwt_id,
            device_id=device_id,
        )
        stored, evicted = self.store.create_session_with_limit(
            session, self._max_active(cfg)
        )
        for old in evicted:
            logger.info(
                "session_evicted",
                user_id=user_id,
                session_id=old.id,
                last_activity=old.last_activity.isoformat(),
            )
        logger.info(
            "session_created",
            user_id=user_id,
            session_id=stored.id,
            device_type=stored.device_type,
            location=stored.location,
        )
        return stored

    def get(self, session_id: str) -> Optional[UserSession]:
        return self.store.get_session(session_id)

    def get_by_jwt_id(self, jwt_id: Optional[str]) -> Optional[UserSession]:
        if not jwt_id:
            return None
        return self.store.get_session_by_jwt_id(jwt_id)

    def bind_jwt(self, session_id: str, jwt_id: str) -> bool:
        return self.store.update_session_jwt_id(session_id, jwt_id)

    def list_for_user(self, user_id: str) -> List[UserSession]:
        return self.store.list_sessions(user_id, active_only=True)

    def terminate(self, session_id: str, requesting_user_id: str) -> Result[bool]:
        session = self.store.get_session(session_id)
        if session is None:
            return Result.failure(NotFoundError("session not found"))
        if session.user_id != requesting_user_id:
            logger.warning(
                "session_terminate_forbidden",
                session_id=session_id,
                requesting_user_id=requesting_user_id,
            )
            return Result.failure(ForbiddenError("cannot terminate another user's session"))
        terminated = self.store.deactivate_session(session_id)
        if terminated:
            logger.info("session_terminated", user_id=requesting_user_id, session_id=session_id)
        return Result.success(terminated)

    def terminate_all(
        self,
        user_id: str,
        except_jwt_id: Optional[str] = None,
        *,
        except_session_id: Optional[str] = None,
    ) -> int:
        """Deactivate every active session except the caller's own.

        The caller's session is matched by ``jwt_id`` first and by session id
        for rows that never recorded one.
        """
        keep: Optional[str] = None
        current = self.get_by_jwt_id(except_jwt_id)
        if current is not None and current.user_id == user_id:
            keep = current.id
        elif except_session_id:
            keep = except_session_id
        count = self.store.deactivate_user_sessions(user_id, except_session_id=keep)
        logger.info("sessions_terminated", user_id=user_id, count=count, kept=keep)
        return count

    def touch(self, session_id: str, *, now: Optional[datetime] = None) -> Optional[UserSession]:
        stamp = now or utcnow()
        expires_at = stamp + timedelta(minutes=self.settings.session.session_timeout_minutes)
        return self.store.touch_session(session_id, expires_at, now=stamp)

    def sweep_expired(self, *, now: Optional[datetime] = None) -> int:
        expired = self.store.deactivate_expired_sessions(now)
        if expired:
            logger.info("sessions_expired", count=expired)
        return expired

    def statistics(self, user_id: str) -> SessionStatistics:
        active = self.store.list_sessions(user_id, active_only=True)
        devices = Counter(s.device_type for s in active)
        latest = self.store.latest_session(user_id)
        return SessionStatistics(
            total_active_sessions=len(active),
            desktop_sessions=devices.get("Desktop", 0),
            mobile_sessions=devices.get("Mobile", 0),
            tablet_sessions=devices.get("Tablet", 0),
            sessions_by_browser=dict(Counter(s.browser for s in active)),
            sessions_by_location=dict(Counter(s.location for s in active)),
            last_login_time=latest.created_at if latest else None,
            last_login_ip=latest.ip_address if latest else None,
        )

    def get_configuration(self) -> SessionConfig:
        return self.settings.session

    def update_configuration(self, config: SessionConfig) -> SessionConfig:
        return self.settings.update_session(config)
