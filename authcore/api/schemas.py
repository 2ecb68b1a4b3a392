from __future__ import annotations

import ipaddress
import re
import unicodedata
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from authcore.service.auth import MIN_PASSWORD_LENGTH
from authcore.service.rate_limit import LoginAttemptStatistics
from authcore.service.sessions import SessionStatistics
from authcore.storage.models import BlockedIp, FailedLoginAttempt, UserSession

MAX_PASSWORD_LENGTH = 128

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
})


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize and drop zero-width and bidi override characters."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in value if c not in zero_width and c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


class ErrorBody(BaseModel):
    """Error envelope body with a stable code value."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _validate_password_length(value: str) -> str:
    if len(value) < MIN_PASSWORD_LENGTH:
        raise ValueError(f"password must be at least {MIN_PASSWORD_LENGTH} characters")
    if len(value) > MAX_PASSWORD_LENGTH:
        raise ValueError(f"password must be at most {MAX_PASSWORD_LENGTH} characters")
    return value


class LoginRequest(BaseModel):
    username: str = Field(..., min_length=1, max_length=254)
    password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_LENGTH)
    device_id: Optional[str] = Field(default=None, max_length=128)

    @field_validator("username")
    @classmethod
    def _normalize_username(cls, value: str) -> str:
        return _normalize_unicode(value.strip())


class TokenRefreshRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1, max_length=2048)
    device_id: Optional[str] = Field(default=None, max_length=128)


class AuthResponse(BaseModel):
    token: str
    refresh_token: str
    expiration: datetime
    refresh_expiration: datetime
    user_id: str
    roles: List[str]
    session_id: Optional[str] = None
    token_type: str = "bearer"


class RegisterRequest(BaseModel):
    username: str = Field(..., min_length=3, max_length=64)
    email: str
    password: str

    @field_validator("username")
    @classmethod
    def _normalize_username(cls, value: str) -> str:
        return _normalize_unicode(value.strip())

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_length(value)


class UserResponse(BaseModel):
    id: str
    username: str
    email: str
    roles: List[str] = Field(default_factory=list)
    is_active: bool = True
    created_at: datetime


class PasswordResetRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_password_reset_email(cls, value: str) -> str:
        return _validate_email(value)


class PasswordResetConfirm(BaseModel):
    token: str = Field(..., min_length=1, max_length=256)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_length(value)


class SessionResponse(BaseModel):
    id: str
    created_at: datetime
    last_activity: datetime
    expires_at: datetime
    ip_address: Optional[str] = None
    device_type: str
    browser: str
    os: str
    location: str
    is_current: bool = False

    @classmethod
    def from_session(cls, session: UserSession, *, current_id: Optional[str] = None) -> "SessionResponse":
        return cls(
            id=session.id,
            created_at=session.created_at,
            last_activity=session.last_activity,
            expires_at=session.expires_at,
            ip_address=session.ip_address,
            device_type=session.device_type,
            browser=session.browser,
            os=session.os,
            location=session.location,
            is_current=session.id == current_id,
        )


class SessionListResponse(BaseModel):
    items: List[SessionResponse]


class SessionStatisticsResponse(BaseModel):
    total_active_sessions: int
    desktop_sessions: int
    mobile_sessions: int
    tablet_sessions: int
    sessions_by_browser: Dict[str, int] = Field(default_factory=dict)
    sessions_by_location: Dict[str, int] = Field(default_factory=dict)
    last_login_time: Optional[datetime] = None
    last_login_ip: Optional[str] = None

    @classmethod
    def from_statistics(cls, stats: SessionStatistics) -> "SessionStatisticsResponse":
        return cls(**stats.__dict__)


class BlockIpRequest(BaseModel):
    ip_address: str = Field(..., max_length=45)
    reason: str = Field(default="blocked by administrator", min_length=1, max_length=500)
    duration_minutes: Optional[int] = Field(
        default=None, ge=1, description="Omit for a permanent block"
    )

    @field_validator("ip_address")
    @classmethod
    def _validate_ip(cls, value: str) -> str:
        try:
            return str(ipaddress.ip_address(value.strip()))
        except ValueError as exc:
            raise ValueError("invalid ip address") from exc


class BlockedIpResponse(BaseModel):
    id: str
    ip_address: str
    blocked_at: datetime
    expires_at: Optional[datetime] = None
    reason: str
    failed_attempts: int = 0
    is_permanent: bool = False

    @classmethod
    def from_block(cls, block: BlockedIp) -> "BlockedIpResponse":
        return cls(
            id=block.id,
            ip_address=block.ip_address,
            blocked_at=block.blocked_at,
            expires_at=block.expires_at,
            reason=block.reason,
            failed_attempts=block.failed_attempts,
            is_permanent=block.is_permanent,
        )


class BlockedIpListResponse(BaseModel):
    items: List[BlockedIpResponse]


class FailedAttemptResponse(BaseModel):
    username: str
    ip_address: str
    attempt_time: datetime
    user_agent: Optional[str] = None
    reason: Optional[str] = None

    @classmethod
    def from_attempt(cls, attempt: FailedLoginAttempt) -> "FailedAttemptResponse":
        return cls(
            username=attempt.username,
            ip_address=attempt.ip_address,
            attempt_time=attempt.attempt_time,
            user_agent=attempt.user_agent,
            reason=attempt.reason,
        )


class LoginAttemptStatisticsResponse(BaseModel):
    total_failed_attempts: int
    unique_ip_addresses: int
    blocked_ip_addresses: int
    recent_attempts: List[FailedAttemptResponse] = Field(default_factory=list)
    attempts_by_ip: Dict[str, int] = Field(default_factory=dict)

    @classmethod
    def from_statistics(cls, stats: LoginAttemptStatistics) -> "LoginAttemptStatisticsResponse":
        return cls(
            total_failed_attempts=stats.total_failed_attempts,
            unique_ip_addresses=stats.unique_ip_addresses,
            blocked_ip_addresses=stats.blocked_ip_addresses,
            recent_attempts=[FailedAttemptResponse.from_attempt(a) for a in stats.recent_attempts],
            attempts_by_ip=stats.attempts_by_ip,
        )
