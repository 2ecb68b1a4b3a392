from __future__ import annotations

import asyncio
import hashlib
import re
import secrets
import threading
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import AsyncIterator, Dict, List, Optional, Protocol, Sequence, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError

from authcore.config import Settings
from authcore.logging import get_logger
from authcore.service.errors import (
    AuthenticationError,
    ConflictError,
    RateLimitedError,
    ValidationError,
)
from authcore.service.rate_limit import IpBlocker
from authcore.service.refresh_tokens import (
    REASON_LOGOUT,
    REASON_PASSWORD_RESET,
    REASON_REUSE,
    REASON_ROTATED,
    RefreshTokenService,
    RotationError,
    RotationFailure,
)
from authcore.service.results import Result
from authcore.service.reuse import ReuseDetector
from authcore.service.security_settings import SecuritySettingsService
from authcore.service.sessions import SessionRegistry, is_session_live
from authcore.service.token_cache import DEFAULT_DEVICE, CachedToken, DistributedTokenCache
from authcore.service.tokens import FALLBACK_ROLE, ClaimsBuilder, TokenIssuer
from authcore.storage.errors import ConstraintViolation
from authcore.storage.models import RefreshToken, User, UserSession, utcnow
from authcore.storage.redis_cache import RedisCache

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"
MIN_PASSWORD_LENGTH = 8
_USERNAME_RE = re.compile(r"^[A-Za-z0-9_.@-]{3,64}$")
_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class AuthStore(Protocol):
    def create_user(
        self,
        username: str,
        email: str,
        *,
        roles: Optional[Sequence[str]] = None,
        is_active: bool = True,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_username(self, username: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None: ...

    def get_password_record(self, user_id: str) -> Optional[Tuple[str, str]]: ...

    def get_user_roles(self, user_id: str) -> List[str]: ...

    def get_role_permissions(self, roles: Sequence[str]) -> List[str]: ...

    def update_security_stamp(self, user_id: str) -> Optional[str]: ...

    def list_refresh_tokens(
        self, user_id: str, *, active_only: bool = False
    ) -> List[RefreshToken]: ...

    def list_sessions(self, user_id: str, *, active_only: bool = True) -> List[UserSession]: ...

    def deactivate_user_sessions(
        self, user_id: str, except_session_id: Optional[str] = None
    ) -> int: ...


class CredentialVerifier(Protocol):
    def verify(self, username: str, password: str) -> Optional[User]: ...

    def set_password(self, user_id: str, password: str) -> None: ...


class EmailSender(Protocol):
    def send_password_reset(self, to_email: str, token: str, *, ttl_minutes: int = 15) -> bool: ...

    def send_new_login_notification(
        self,
        to_email: str,
        *,
        device: str,
        location: str,
        ip_address: Optional[str],
    ) -> bool: ...


class PasswordVerifier:
    """argon2id credential check against the store's password records."""

    def __init__(self, store: AuthStore) -> None:
        self.store = store
        self._hasher = PasswordHasher(type=Type.ID)
        # Verified against when the user is unknown so timing does not leak existence
        self._dummy_hash = self._hasher.hash(secrets.token_urlsafe(16))

    def hash_password(self, password: str) -> Tuple[str, str]:
        return self._hasher.hash(password), PASSWORD_ALGO

    def set_password(self, user_id: str, password: str) -> None:
        digest, algo = self.hash_password(password)
        self.store.save_password(user_id, digest, algo)

    def _find_user(self, username: str) -> Optional[User]:
        user = self.store.get_user_by_username(username)
        if user is None and "@" in username:
            user = self.store.get_user_by_email(username)
        return user

    def verify(self, username: str, password: str) -> Optional[User]:
        user = self._find_user(username)
        record = self.store.get_password_record(user.id) if user else None
        if user is None or record is None:
            try:
                self._hasher.verify(self._dummy_hash, password)
            except VerificationError:
                pass
            return None
        stored_hash, algo = record
        if algo != PASSWORD_ALGO:
            logger.warning("password_algo_mismatch", user_id=user.id, algo=algo)
            return None
        try:
            self._hasher.verify(stored_hash, password)
        except (InvalidHashError, VerifyMismatchError, VerificationError):
            return None
        if not user.is_active:
            logger.warning("login_inactive_user", user_id=user.id)
            return None
        if self._hasher.check_needs_rehash(stored_hash):
            self.set_password(user.id, password)
        return user


@dataclass
class AuthContext:
    user_id: str
    username: str
    roles: List[str] = field(default_factory=list)
    permissions: List[str] = field(default_factory=list)
    jwt_id: Optional[str] = None
    session_id: Optional[str] = None

    def has_role(self, role: str) -> bool:
        return role in self.roles


@dataclass(frozen=True)
class AuthTokens:
    token: str
    refresh_token: str
    expiration: datetime
    refresh_expiration: datetime
    user_id: str
    roles: List[str]
    jwt_id: str
    session_id: Optional[str] = None


class AuthService:
    """Login, refresh, logout and bearer authentication.

    Expected failures come back as :class:`Result` values; nothing here
    raises for bad credentials or bad tokens.
    """

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        *,
        issuer: TokenIssuer,
        claims: ClaimsBuilder,
        refresh_tokens: RefreshTokenService,
        reuse: ReuseDetector,
        ip_blocker: IpBlocker,
        sessions: SessionRegistry,
        token_cache: DistributedTokenCache,
        security_settings: SecuritySettingsService,
        verifier: Optional[CredentialVerifier] = None,
        email: Optional[EmailSender] = None,
        cache: Optional[RedisCache] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.issuer = issuer
        self.claims = claims
        self.refresh_tokens = refresh_tokens
        self.reuse = reuse
        self.ip_blocker = ip_blocker
        self.sessions = sessions
        self.token_cache = token_cache
        self.security_settings = security_settings
        self.verifier: CredentialVerifier = verifier or PasswordVerifier(store)
        self.email = email
        self.cache = cache
        self._state_lock = threading.Lock()
        self._slot_locks: Dict[str, Tuple[asyncio.Lock, int]] = {}
        # In-memory fallback for reset tokens when Redis is unavailable
        self._password_reset_tokens: Dict[str, Tuple[str, datetime]] = {}

    # issuance
    def _issue_access(self, user: User):
        roles = self.store.get_user_roles(user.id) or [FALLBACK_ROLE]
        permissions = self.store.get_role_permissions(roles)
        claims = self.claims.build(user, roles, permissions)
        issued = self.issuer.issue(user.id, claims, self.settings.access_token_ttl_minutes)
        return issued, claims["role"]

    async def _cache_pair(
        self, user_id: str, tokens: AuthTokens, device_id: Optional[str]
    ) -> None:
        await self.token_cache.update(
            user_id,
            jwt=tokens.token,
            jwt_expires_at=tokens.expiration,
            refresh=tokens.refresh_token,
            refresh_expires_at=tokens.refresh_expiration,
            device_id=device_id,
        )

    def _is_new_device(self, user_id: str, ip: Optional[str], user_agent: Optional[str]) -> bool:
        previous = self.store.list_sessions(user_id, active_only=False)
        if not previous:
            return False
        return not any(
            s.ip_address == ip and s.user_agent == user_agent for s in previous
        )

    async def _notify_new_login(self, user: User, session: UserSession) -> None:
        if not self.email:
            return
        sent = await asyncio.to_thread(
            self.email.send_new_login_notification,
            user.email,
            device=f"{session.browser} on {session.os}",
            location=session.location,
            ip_address=session.ip_address,
        )
        if not sent:
            logger.warning("new_login_notification_failed", user_id=user.id)

    async def login(
        self,
        username: str,
        password: str,
        *,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
        device_id: Optional[str] = None,
    ) -> Result[AuthTokens]:
        if not username or not password:
            return Result.failure(ValidationError("username and password are required"))
        if self.ip_blocker.is_blocked(ip):
            logger.warning("login_rejected_ip_blocked", ip_address=ip)
            return Result.failure(
                RateLimitedError(
                    "too many failed login attempts, try again later",
                    retry_after=self.ip_blocker.retry_after(ip),
                )
            )
        user = self.verifier.verify(username, password)
        if user is None:
            self.ip_blocker.record_failure(
                username, ip or "unknown", user_agent, "invalid credentials"
            )
            return Result.failure(AuthenticationError("invalid username or password"))

        notify = (
            self.security_settings.session.notify_on_new_login
            and self._is_new_device(user.id, ip, user_agent)
        )
        access, roles = self._issue_access(user)
        refresh = self.refresh_tokens.create(user.id, access.jwt_id, ip, user_agent)
        session = await self.sessions.create(
            user.id, ip, user_agent, jwt_id=access.jwt_id, device_id=device_id
        )
        tokens = AuthTokens(
            token=access.token,
            refresh_token=refresh.token,
            expiration=access.expires_at,
            refresh_expiration=refresh.expiry_date,
            user_id=user.id,
            roles=roles,
            jwt_id=access.jwt_id,
            session_id=session.id,
        )
        await self._cache_pair(user.id, tokens, device_id)
        if notify:
            await self._notify_new_login(user, session)
        logger.info("login_succeeded", user_id=user.id, session_id=session.id)
        return Result.success(tokens)

    # refresh
    async def _contain_reuse(self, user_id: str) -> None:
        """Cut every credential of ``user_id`` after a replayed refresh token."""
        self.refresh_tokens.revoke_all(user_id, REASON_REUSE)
        self.store.deactivate_user_sessions(user_id)
        self.store.update_security_stamp(user_id)
        await self.token_cache.remove_user(user_id)
        logger.warning("refresh_reuse_contained", user_id=user_id)

    async def refresh(
        self,
        refresh_token: str,
        *,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
        device_id: Optional[str] = None,
    ) -> Result[AuthTokens]:
        if not refresh_token:
            return Result.failure(ValidationError("refresh token is required"))
        checked = self.refresh_tokens.check(refresh_token)
        if not checked.ok:
            error = checked.error
            if (
                isinstance(error, RotationError)
                and error.failure is RotationFailure.REVOKED
                and error.token is not None
                and error.token.revocation_reason == REASON_ROTATED
            ):
                # Replay of a rotated token, caught by the durable flag even
                # after the ledger entry has expired
                logger.warning("refresh_reuse_detected", user_id=error.token.user_id)
                await self._contain_reuse(error.token.user_id)
            return Result.failure(error)
        record = checked.value

        if not await self.reuse.can_use(refresh_token, user_id=record.user_id):
            await self._contain_reuse(record.user_id)
            return Result.failure(
                RotationError(RotationFailure.ALREADY_ROTATED, token=record)
            )

        session = self.sessions.get_by_jwt_id(record.jwt_id)
        if session is not None and not is_session_live(session):
            self.refresh_tokens.revoke(refresh_token, "session ended")
            logger.info("refresh_rejected_session_ended", user_id=record.user_id, session_id=session.id)
            return Result.failure(AuthenticationError("session has ended"))

        user = self.store.get_user(record.user_id)
        if user is None or not user.is_active:
            await self.reuse.release(refresh_token)
            return Result.failure(RotationError(RotationFailure.NOT_FOUND, token=record))
        try:
            access, roles = self._issue_access(user)
            rotated = self.refresh_tokens.rotate(
                refresh_token, jwt_id=access.jwt_id, ip=ip, user_agent=user_agent
            )
        except Exception:
            await self.reuse.release(refresh_token)
            raise
        if not rotated.ok:
            error = rotated.error
            # Only a lost race flagged the token as rotated; otherwise it is still live
            if not (
                isinstance(error, RotationError)
                and error.failure is RotationFailure.ALREADY_ROTATED
            ):
                await self.reuse.release(refresh_token)
            logger.warning(
                "refresh_rotation_failed",
                user_id=record.user_id,
                error_type=type(error).__name__,
            )
            return Result.failure(error)
        successor = rotated.value.token
        if session is not None:
            self.sessions.bind_jwt(session.id, access.jwt_id)
            self.sessions.touch(session.id)
        tokens = AuthTokens(
            token=access.token,
            refresh_token=successor.token,
            expiration=access.expires_at,
            refresh_expiration=successor.expiry_date,
            user_id=user.id,
            roles=roles,
            jwt_id=access.jwt_id,
            session_id=session.id if session else None,
        )
        await self._cache_pair(user.id, tokens, device_id)
        return Result.success(tokens)

    @asynccontextmanager
    async def _slot_lock(self, user_id: str, device_id: str) -> AsyncIterator[None]:
        """Per-process lock for one ``(user, device)`` slot, dropped once idle."""
        key = f"{user_id}:{device_id}"
        with self._state_lock:
            lock, holders = self._slot_locks.get(key, (None, 0))
            if lock is None:
                lock = asyncio.Lock()
            self._slot_locks[key] = (lock, holders + 1)
        try:
            async with lock:
                yield
        finally:
            with self._state_lock:
                lock, holders = self._slot_locks[key]
                if holders <= 1:
                    del self._slot_locks[key]
                else:
                    self._slot_locks[key] = (lock, holders - 1)

    def _latest_refresh_value(self, user_id: str, device_id: str) -> Optional[str]:
        """Newest live refresh token whose session is bound to ``device_id``."""
        now = utcnow()
        candidates = []
        for token in self.store.list_refresh_tokens(user_id, active_only=True):
            if token.is_expired(now):
                continue
            session = self.sessions.get_by_jwt_id(token.jwt_id)
            if session is None or not is_session_live(session):
                continue
            if (session.device_id or DEFAULT_DEVICE) == device_id:
                candidates.append(token)
        if not candidates:
            return None
        return max(candidates, key=lambda t: t.created_at).token

    async def get_valid_token(
        self, user_id: str, context_id: str, *, device_id: Optional[str] = None
    ) -> Result[CachedToken]:
        """Serve a usable access token for a request context, rotating if needed.

        The context is bound to the ``(user, device)`` slot named by
        ``device_id``, or the default slot. Contexts sharing a slot are
        serialized per process so that only one of them spends the refresh
        token.
        """
        wanted = device_id or DEFAULT_DEVICE
        resolved = await self.token_cache.resolve_context(context_id)
        if resolved is None or resolved[0] != user_id or (
            device_id is not None and resolved[1] != wanted
        ):
            await self.token_cache.register_context(context_id, user_id, wanted)
            resolved = await self.token_cache.resolve_context(context_id)
        slot_device = resolved[1] if resolved else wanted
        threshold = self.settings.token_cache_refresh_threshold_seconds

        async with self._slot_lock(user_id, slot_device):
            cached = await self.token_cache.get_jwt(user_id, slot_device)
            if cached is not None and not self.token_cache.near_expiry(cached, threshold):
                return Result.success(cached)
            refresh_entry = await self.token_cache.get_refresh(user_id, slot_device)
            refresh_value = refresh_entry.value if refresh_entry else None
            if refresh_value is None:
                refresh_value = self._latest_refresh_value(user_id, slot_device)
            if refresh_value is None:
                logger.info("token_slot_empty", user_id=user_id, device_id=slot_device)
                return Result.failure(
                    AuthenticationError("no usable refresh token, login required")
                )
            result = await self.refresh(refresh_value, device_id=slot_device)
            if not result.ok:
                await self.token_cache.remove(user_id, slot_device)
                return Result.failure(result.error)
            tokens = result.value
            return Result.success(CachedToken(tokens.token, tokens.expiration))

    async def release_context(self, context_id: str) -> bool:
        return await self.token_cache.unregister_context(context_id)

    async def logout(
        self,
        user_id: str,
        *,
        jwt_id: Optional[str] = None,
        session_id: Optional[str] = None,
        device_id: Optional[str] = None,
    ) -> Result[bool]:
        """Revoke all refresh tokens and end the current session; safe to repeat."""
        revoked = self.refresh_tokens.revoke_all(user_id, REASON_LOGOUT)
        current = self.sessions.get_by_jwt_id(jwt_id)
        target = current.id if current is not None and current.user_id == user_id else session_id
        ended = False
        if target:
            ended = self.sessions.terminate(target, user_id).value or False
        await self.token_cache.remove_user(user_id)
        logger.info("logout", user_id=user_id, revoked=revoked, session_ended=ended)
        return Result.success(True)

    # bearer authentication
    @staticmethod
    def _extract_bearer(header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        scheme, _, value = header.partition(" ")
        if scheme.lower() != "bearer" or not value.strip():
            return None
        return value.strip()

    def authenticate(self, authorization: Optional[str]) -> Result[AuthContext]:
        token = self._extract_bearer(authorization)
        if not token:
            return Result.failure(AuthenticationError("missing bearer token"))
        payload = self.issuer.decode(token)
        if payload is None:
            return Result.failure(AuthenticationError("invalid or expired token"))
        user = self.store.get_user(str(payload.get("sub")))
        if user is None or not user.is_active:
            return Result.failure(AuthenticationError("invalid or expired token"))
        if payload.get("security_stamp") != user.security_stamp:
            logger.info("token_rejected_stale_stamp", user_id=user.id)
            return Result.failure(AuthenticationError("invalid or expired token"))
        jwt_id = payload.get("jti")
        session = self.sessions.get_by_jwt_id(jwt_id)
        if session is None or session.user_id != user.id or not is_session_live(session):
            return Result.failure(AuthenticationError("session is no longer active"))
        self.sessions.touch(session.id)
        roles = payload.get("role") or [FALLBACK_ROLE]
        if isinstance(roles, str):
            roles = [roles]
        permissions = payload.get("permission") or []
        if isinstance(permissions, str):
            permissions = [permissions]
        return Result.success(
            AuthContext(
                user_id=user.id,
                username=user.username,
                roles=list(roles),
                permissions=list(permissions),
                jwt_id=jwt_id,
                session_id=session.id,
            )
        )

    # registration / password reset
    def _validate_password(self, password: str) -> Optional[ValidationError]:
        if not password or len(password) < MIN_PASSWORD_LENGTH:
            return ValidationError(
                f"password must be at least {MIN_PASSWORD_LENGTH} characters",
                detail={"field": "password"},
            )
        return None

    def register(self, username: str, email: str, password: str) -> Result[User]:
        if not self.settings.allow_registration:
            return Result.failure(ValidationError("registration is disabled"))
        if not username or not _USERNAME_RE.match(username):
            return Result.failure(
                ValidationError("invalid username", detail={"field": "username"})
            )
        if not email or not _EMAIL_RE.match(email):
            return Result.failure(ValidationError("invalid email", detail={"field": "email"}))
        invalid = self._validate_password(password)
        if invalid:
            return Result.failure(invalid)
        try:
            user = self.store.create_user(username, email, roles=[FALLBACK_ROLE])
        except ConstraintViolation as exc:
            return Result.failure(ConflictError(exc.message, detail=exc.detail))
        self.verifier.set_password(user.id, password)
        logger.info("user_registered", user_id=user.id)
        return Result.success(user)

    @staticmethod
    def _reset_digest(token: str) -> str:
        return hashlib.sha256(token.encode()).hexdigest()

    async def request_password_reset(self, email: str) -> Result[bool]:
        """Always succeeds so the response never reveals whether the email exists."""
        user = self.store.get_user_by_email(email) if email else None
        if user is None or not user.is_active:
            logger.info(
                "password_reset_requested_unknown",
                email_hash=hashlib.sha256((email or "").lower().encode()).hexdigest(),
            )
            return Result.success(True)
        token = secrets.token_urlsafe(32)
        digest = self._reset_digest(token)
        ttl = timedelta(minutes=self.settings.password_reset_ttl_minutes)
        stored = False
        if self.cache:
            try:
                await self.cache.store_reset_token(digest, user.id, int(ttl.total_seconds()))
                stored = True
            except Exception as exc:
                logger.warning("password_reset_cache_failed", error=str(exc))
        if not stored:
            with self._state_lock:
                self._password_reset_tokens[digest] = (user.id, utcnow() + ttl)
        if self.email:
            sent = await asyncio.to_thread(
                self.email.send_password_reset,
                user.email,
                token,
                ttl_minutes=self.settings.password_reset_ttl_minutes,
            )
            if not sent:
                logger.warning("password_reset_email_failed", user_id=user.id)
        logger.info("password_reset_requested", user_id=user.id)
        return Result.success(True)

    async def _consume_reset_token(self, token: str) -> Optional[str]:
        digest = self._reset_digest(token)
        with self._state_lock:
            entry = self._password_reset_tokens.pop(digest, None)
        if entry is not None:
            user_id, expires_at = entry
            return user_id if expires_at > utcnow() else None
        if self.cache:
            try:
                return await self.cache.pop_reset_token(digest)
            except Exception as exc:
                logger.warning("password_reset_cache_failed", error=str(exc))
        return None

    async def complete_password_reset(self, token: str, new_password: str) -> Result[bool]:
        invalid = self._validate_password(new_password)
        if invalid:
            return Result.failure(invalid)
        user_id = await self._consume_reset_token(token) if token else None
        user = self.store.get_user(user_id) if user_id else None
        if user is None:
            logger.warning("password_reset_invalid_token")
            return Result.failure(ValidationError("invalid or expired reset token"))
        self.verifier.set_password(user.id, new_password)
        self.store.update_security_stamp(user.id)
        self.refresh_tokens.revoke_all(user.id, REASON_PASSWORD_RESET)
        self.store.deactivate_user_sessions(user.id)
        await self.token_cache.remove_user(user.id)
        logger.info("password_reset_completed", user_id=user.id)
        return Result.success(True)

    def cleanup_reset_tokens(self, now: Optional[datetime] = None) -> int:
        cutoff = now or utcnow()
        with self._state_lock:
            expired = [d for d, (_, exp) in self._password_reset_tokens.items() if exp <= cutoff]
            for digest in expired:
                del self._password_reset_tokens[digest]
        return len(expired)
