from __future__ import annotations

import base64
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional, Protocol

from authcore.logging import get_logger
from authcore.service.errors import AuthenticationError, ServerError
from authcore.service.results import Result
from authcore.storage.errors import ConstraintViolation, StoreUnavailable
from authcore.storage.models import RefreshToken, User, utcnow

logger = get_logger(__name__)

REASON_ROTATED = "rotated"
REASON_REUSE = "security: reuse detected"
REASON_LOGOUT = "security: logout"
REASON_PASSWORD_RESET = "security: password reset"

# 64 random bytes = 512 bits of entropy per token value
_TOKEN_BYTES = 64


class RefreshTokenStore(Protocol):
    def add_refresh_token(self, token: RefreshToken) -> RefreshToken: ...

    def get_refresh_token(self, token_value: str) -> Optional[RefreshToken]: ...

    def rotate_refresh_token(
        self,
        old_token_id: str,
        successor: RefreshToken,
        *,
        ip: Optional[str] = None,
        reason: str = REASON_ROTATED,
        now: Optional[datetime] = None,
    ) -> Optional[RefreshToken]: ...

    def revoke_refresh_token(
        self, token_id: str, reason: str, *, now: Optional[datetime] = None
    ) -> bool: ...

    def revoke_user_refresh_tokens(
        self, user_id: str, reason: str, *, now: Optional[datetime] = None
    ) -> int: ...

    def purge_refresh_tokens(self, before: datetime) -> int: ...

    def get_user(self, user_id: str) -> Optional[User]: ...


class RotationFailure(str, Enum):
    NOT_FOUND = "not_found"
    EXPIRED = "expired"
    REVOKED = "revoked"
    ALREADY_ROTATED = "already_rotated"


class RotationError(AuthenticationError):
    """A refresh token could not be exchanged; ``failure`` says why."""

    def __init__(self, failure: RotationFailure, *, token: Optional[RefreshToken] = None):
        super().__init__(
            "invalid refresh token", detail={"reason": failure.value}
        )
        self.failure = failure
        self.token = token


@dataclass(frozen=True)
class RotationOutcome:
    token: RefreshToken
    previous: RefreshToken
    user: User


def generate_token_value() -> str:
    return base64.urlsafe_b64encode(secrets.token_bytes(_TOKEN_BYTES)).decode("ascii")


class RefreshTokenService:
    """Creates, rotates and revokes refresh tokens.

    Rotation never reads and then writes: the store's conditional flip is the
    only correctness boundary, so of any number of concurrent ``rotate``
    calls for one token value exactly one succeeds.
    """

    def __init__(
        self, store: RefreshTokenStore, *, ttl_days: int = 7, retention_days: int = 30
    ) -> None:
        self.store = store
        self.ttl_days = ttl_days
        self.retention_days = retention_days

    def create(
        self,
        user_id: str,
        jwt_id: str,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> RefreshToken:
        token = RefreshToken.new(
            user_id,
            generate_token_value(),
            jwt_id,
            self.ttl_days,
            ip=ip,
            user_agent=user_agent,
        )
        stored = self.store.add_refresh_token(token)
        logger.info("refresh_token_created", user_id=user_id, jwt_id=jwt_id)
        return stored

    def lookup(self, token_value: str) -> Optional[RefreshToken]:
        if not token_value:
            return None
        return self.store.get_refresh_token(token_value)

    def check(
        self, token_value: str, *, now: Optional[datetime] = None
    ) -> Result[RefreshToken]:
        """Classify a presented token without changing any state."""
        record = self.lookup(token_value)
        if record is None:
            return Result.failure(RotationError(RotationFailure.NOT_FOUND))
        if record.is_expired(now):
            return Result.failure(RotationError(RotationFailure.EXPIRED, token=record))
        if record.is_revoked:
            return Result.failure(RotationError(RotationFailure.REVOKED, token=record))
        return Result.success(record)

    def rotate(
        self,
        token_value: str,
        *,
        jwt_id: str,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Result[RotationOutcome]:
        """Revoke ``token_value`` and issue its successor bound to ``jwt_id``."""
        now = utcnow()
        checked = self.check(token_value, now=now)
        if not checked.ok:
            return Result.failure(checked.error)
        record = checked.value
        user = self.store.get_user(record.user_id)
        if user is None or not user.is_active:
            return Result.failure(RotationError(RotationFailure.NOT_FOUND, token=record))
        successor = RefreshToken.new(
            record.user_id,
            generate_token_value(),
            jwt_id,
            self.ttl_days,
            ip=ip,
            user_agent=user_agent,
        )
        try:
            stored = self.store.rotate_refresh_token(
                record.id, successor, ip=ip, reason=REASON_ROTATED, now=now
            )
        except (ConstraintViolation, StoreUnavailable) as exc:
            logger.error(
                "refresh_token_rotation_failed", user_id=record.user_id, error=str(exc)
            )
            return Result.failure(ServerError("refresh token rotation failed"))
        if stored is None:
            logger.warning(
                "refresh_token_rotation_lost_race",
                user_id=record.user_id,
                token_id=record.id,
            )
            return Result.failure(
                RotationError(RotationFailure.ALREADY_ROTATED, token=record)
            )
        logger.info(
            "refresh_token_rotated",
            user_id=record.user_id,
            previous_id=record.id,
            jwt_id=jwt_id,
        )
        return Result.success(RotationOutcome(token=stored, previous=record, user=user))

    def revoke(self, token_value: str, reason: str = REASON_LOGOUT) -> bool:
        record = self.lookup(token_value)
        if record is None:
            return False
        return self.store.revoke_refresh_token(record.id, reason)

    def revoke_all(self, user_id: str, reason: str) -> int:
        revoked = self.store.revoke_user_refresh_tokens(user_id, reason)
        log = logger.warning if reason == REASON_REUSE else logger.info
        log("refresh_tokens_revoked", user_id=user_id, reason=reason, count=revoked)
        return revoked

    def purge_expired(self, now: Optional[datetime] = None) -> int:
        cutoff = (now or utcnow()) - timedelta(days=self.retention_days)
        purged = self.store.purge_refresh_tokens(cutoff)
        if purged:
            logger.info("refresh_tokens_purged", count=purged)
        return purged
