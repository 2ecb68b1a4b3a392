from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_security_stamp() -> str:
    return uuid.uuid4().hex


@dataclass
class User:
    id: str
    username: str
    email: str
    security_stamp: str = field(default_factory=new_security_stamp)
    is_active: bool = True
    created_at: datetime = field(default_factory=utcnow)
    roles: List[str] = field(default_factory=list)


@dataclass
class RefreshToken:
    id: str
    user_id: str
    token: str
    jwt_id: str
    expiry_date: datetime
    created_at: datetime = field(default_factory=utcnow)
    is_revoked: bool = False
    revoked_at: Optional[datetime] = None
    revocation_reason: Optional[str] = None
    created_by_ip: Optional[str] = None
    user_agent: Optional[str] = None
    last_used_by_ip: Optional[str] = None
    last_used_at: Optional[datetime] = None
    use_count: int = 0

    @classmethod
    def new(
        cls,
        user_id: str,
        token: str,
        jwt_id: str,
        ttl_days: int,
        *,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> "RefreshToken":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            token=token,
            jwt_id=jwt_id,
            expiry_date=now + timedelta(days=ttl_days),
            created_at=now,
            created_by_ip=ip,
            user_agent=user_agent,
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expiry_date < (now or utcnow())


@dataclass
class UserSession:
    id: str
    user_id: str
    session_token: str
    created_at: datetime
    last_activity: datetime
    expires_at: datetime
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    device_type: str = "Desktop"
    browser: str = "Other"
    os: str = "Other"
    location: str = "Unknown"
    is_active: bool = True
    jwt_id: Optional[str] = None
    device_id: Optional[str] = None

    @classmethod
    def new(
        cls,
        user_id: str,
        timeout_minutes: int,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        device_type: str = "Desktop",
        browser: str = "Other",
        os: str = "Other",
        location: str = "Unknown",
        jwt_id: Optional[str] = None,
        device_id: Optional[str] = None,
    ) -> "UserSession":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            session_token=uuid.uuid4().hex,
            created_at=now,
            last_activity=now,
            expires_at=now + timedelta(minutes=timeout_minutes),
            ip_address=ip_address,
            user_agent=user_agent,
            device_type=device_type,
            browser=browser,
            os=os,
            location=location,
            jwt_id=jwt_id,
            device_id=device_id,
        )


@dataclass
class FailedLoginAttempt:
    id: str
    username: str
    ip_address: str
    attempt_time: datetime
    user_agent: Optional[str] = None
    reason: Optional[str] = None

    @classmethod
    def new(
        cls,
        username: str,
        ip_address: str,
        *,
        user_agent: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> "FailedLoginAttempt":
        return cls(
            id=str(uuid.uuid4()),
            username=username,
            ip_address=ip_address,
            attempt_time=utcnow(),
            user_agent=user_agent,
            reason=reason,
        )


@dataclass
class BlockedIp:
    id: str
    ip_address: str
    blocked_at: datetime
    reason: str
    expires_at: Optional[datetime] = None
    failed_attempts: int = 0
    is_permanent: bool = False
    is_active: bool = True

    @classmethod
    def new(
        cls,
        ip_address: str,
        reason: str,
        duration_minutes: Optional[int],
        *,
        failed_attempts: int = 0,
    ) -> "BlockedIp":
        """Build a block; ``duration_minutes=None`` means permanent."""
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            ip_address=ip_address,
            blocked_at=now,
            reason=reason,
            expires_at=(
                now + timedelta(minutes=duration_minutes)
                if duration_minutes is not None
                else None
            ),
            failed_attempts=failed_attempts,
            is_permanent=duration_minutes is None,
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.is_permanent or self.expires_at is None:
            return False
        return self.expires_at < (now or utcnow())
