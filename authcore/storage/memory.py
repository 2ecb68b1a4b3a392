from __future__ import annotations

import dataclasses
import json
import threading
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

from authcore.logging import get_logger
from authcore.storage.errors import ConstraintViolation
from authcore.storage.models import (
    BlockedIp,
    FailedLoginAttempt,
    RefreshToken,
    User,
    UserSession,
    new_security_stamp,
    utcnow,
)

# Role -> permission grants seeded into a fresh store
DEFAULT_ROLE_PERMISSIONS: Dict[str, List[str]] = {
    "admin": [
        "security.ip_blocking.manage",
        "security.rate_limit.manage",
        "sessions.configuration.manage",
        "users.manage",
    ],
    "user": ["sessions.self.manage"],
}


def _copy(obj):
    return dataclasses.replace(obj) if obj is not None else None


class MemoryStore:
    """In-process backing store for tests, local development and single-node use.

    Every public method holds ``_data_lock`` for its whole body, so each call
    is one atomic unit, the same guarantee a single Postgres transaction gives.
    Rows are handed out as copies: callers never mutate stored state directly.
    """

    def __init__(self, fs_root: Optional[str] = None) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, Tuple[str, str]] = {}
        self.role_permissions: Dict[str, List[str]] = {
            role: list(perms) for role, perms in DEFAULT_ROLE_PERMISSIONS.items()
        }
        self.refresh_tokens: Dict[str, RefreshToken] = {}
        self._refresh_by_value: Dict[str, str] = {}
        self.sessions: Dict[str, UserSession] = {}
        self.failed_attempts: Dict[str, FailedLoginAttempt] = {}
        self.blocked_ips: Dict[str, BlockedIp] = {}
        self.system_settings: Dict[str, Any] = {}
        # RLock so helpers can re-enter while a public method holds the lock
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    # users / credentials
    def create_user(
        self,
        username: str,
        email: str,
        *,
        roles: Optional[Sequence[str]] = None,
        is_active: bool = True,
    ) -> User:
        with self._data_lock:
            lowered_name = username.lower()
            lowered_email = email.lower()
            for existing in self.users.values():
                if existing.username.lower() == lowered_name:
                    raise ConstraintViolation(
                        "username already exists", {"field": "username"}
                    )
                if existing.email.lower() == lowered_email:
                    raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=str(uuid.uuid4()),
                username=username,
                email=email,
                is_active=is_active,
                roles=list(roles or []),
            )
            self.users[user.id] = user
            self._persist_state()
            return _copy(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return _copy(self.users.get(user_id))

    def get_user_by_username(self, username: str) -> Optional[User]:
        lowered = username.lower()
        with self._data_lock:
            return _copy(
                next(
                    (u for u in self.users.values() if u.username.lower() == lowered),
                    None,
                )
            )

    def get_user_by_email(self, email: str) -> Optional[User]:
        lowered = email.lower()
        with self._data_lock:
            return _copy(
                next((u for u in self.users.values() if u.email.lower() == lowered), None)
            )

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            self.credentials[user_id] = (password_hash, password_algo)
            self._persist_state()

    def get_password_record(self, user_id: str) -> Optional[Tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    def get_user_roles(self, user_id: str) -> List[str]:
        with self._data_lock:
            user = self.users.get(user_id)
            return list(user.roles) if user else []

    def set_user_roles(self, user_id: str, roles: Sequence[str]) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.roles = list(dict.fromkeys(roles))
            self._persist_state()
            return _copy(user)

    def get_role_permissions(self, roles: Sequence[str]) -> List[str]:
        with self._data_lock:
            granted: Dict[str, None] = {}
            for role in roles:
                for perm in self.role_permissions.get(role, []):
                    granted[perm] = None
            return sorted(granted)

    def update_security_stamp(self, user_id: str) -> Optional[str]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.security_stamp = new_security_stamp()
            self._persist_state()
            return user.security_stamp

    # refresh tokens
    def add_refresh_token(self, token: RefreshToken) -> RefreshToken:
        with self._data_lock:
            if token.token in self._refresh_by_value:
                raise ConstraintViolation("refresh token already exists", {"field": "token"})
            stored = _copy(token)
            self.refresh_tokens[stored.id] = stored
            self._refresh_by_value[stored.token] = stored.id
            self._persist_state()
            return _copy(stored)

    def get_refresh_token(self, token_value: str) -> Optional[RefreshToken]:
        with self._data_lock:
            token_id = self._refresh_by_value.get(token_value)
            return _copy(self.refresh_tokens.get(token_id)) if token_id else None

    def list_refresh_tokens(
        self, user_id: str, *, active_only: bool = False
    ) -> List[RefreshToken]:
        with self._data_lock:
            rows = [
                _copy(t)
                for t in self.refresh_tokens.values()
                if t.user_id == user_id and (not active_only or not t.is_revoked)
            ]
        return sorted(rows, key=lambda t: t.created_at)

    def rotate_refresh_token(
        self,
        old_token_id: str,
        successor: RefreshToken,
        *,
        ip: Optional[str] = None,
        reason: str = "rotated",
        now: Optional[datetime] = None,
    ) -> Optional[RefreshToken]:
        """Revoke ``old_token_id`` and insert ``successor`` as one unit.

        Returns ``None`` without inserting anything when the old row is missing
        or was already revoked by a concurrent caller.
        """
        with self._data_lock:
            old = self.refresh_tokens.get(old_token_id)
            if old is None or old.is_revoked:
                return None
            if successor.token in self._refresh_by_value:
                raise ConstraintViolation("refresh token already exists", {"field": "token"})
            stamp = now or utcnow()
            old.is_revoked = True
            old.revoked_at = stamp
            old.revocation_reason = reason
            old.last_used_by_ip = ip
            old.last_used_at = stamp
            old.use_count += 1
            stored = _copy(successor)
            self.refresh_tokens[stored.id] = stored
            self._refresh_by_value[stored.token] = stored.id
            self._persist_state()
            return _copy(stored)

    def revoke_refresh_token(
        self, token_id: str, reason: str, *, now: Optional[datetime] = None
    ) -> bool:
        with self._data_lock:
            token = self.refresh_tokens.get(token_id)
            if token is None or token.is_revoked:
                return False
            token.is_revoked = True
            token.revoked_at = now or utcnow()
            token.revocation_reason = reason
            self._persist_state()
            return True

    def revoke_user_refresh_tokens(
        self, user_id: str, reason: str, *, now: Optional[datetime] = None
    ) -> int:
        stamp = now or utcnow()
        with self._data_lock:
            revoked = 0
            for token in self.refresh_tokens.values():
                if token.user_id == user_id and not token.is_revoked:
                    token.is_revoked = True
                    token.revoked_at = stamp
                    token.revocation_reason = reason
                    revoked += 1
            if revoked:
                self._persist_state()
            return revoked

    def purge_refresh_tokens(self, before: datetime) -> int:
        with self._data_lock:
            stale = [
                t.id
                for t in self.refresh_tokens.values()
                if t.expiry_date < before
                or (t.is_revoked and t.revoked_at is not None and t.revoked_at < before)
            ]
            for token_id in stale:
                token = self.refresh_tokens.pop(token_id)
                self._refresh_by_value.pop(token.token, None)
            if stale:
                self._persist_state()
            return len(stale)

    # sessions
    def create_session_with_limit(
        self, session: UserSession, max_active: int
    ) -> Tuple[UserSession, List[UserSession]]:
        """Insert ``session`` after evicting least-recently-active sessions.

        Eviction and insert happen under one lock acquisition so concurrent
        logins for the same user can never push the active count past
        ``max_active``.
        """
        with self._data_lock:
            if any(s.session_token == session.session_token for s in self.sessions.values()):
                raise ConstraintViolation(
                    "session token already exists", {"field": "session_token"}
                )
            active = sorted(
                (s for s in self.sessions.values() if s.user_id == session.user_id and s.is_active),
                key=lambda s: s.last_activity,
            )
            evicted: List[UserSession] = []
            limit = max(1, max_active)
            while len(active) >= limit:
                oldest = active.pop(0)
                oldest.is_active = False
                evicted.append(_copy(oldest))
            stored = _copy(session)
            self.sessions[stored.id] = stored
            self._persist_state()
            return _copy(stored), evicted

    def get_session(self, session_id: str) -> Optional[UserSession]:
        with self._data_lock:
            return _copy(self.sessions.get(session_id))

    def get_session_by_jwt_id(self, jwt_id: str) -> Optional[UserSession]:
        with self._data_lock:
            return _copy(
                next((s for s in self.sessions.values() if s.jwt_id == jwt_id), None)
            )

    def list_sessions(self, user_id: str, *, active_only: bool = True) -> List[UserSession]:
        with self._data_lock:
            rows = [
                _copy(s)
                for s in self.sessions.values()
                if s.user_id == user_id and (not active_only or s.is_active)
            ]
        return sorted(rows, key=lambda s: s.last_activity, reverse=True)

    def latest_session(self, user_id: str) -> Optional[UserSession]:
        with self._data_lock:
            rows = [s for s in self.sessions.values() if s.user_id == user_id]
            if not rows:
                return None
            return _copy(max(rows, key=lambda s: s.created_at))

    def update_session_jwt_id(self, session_id: str, jwt_id: str) -> bool:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess:
                return False
            sess.jwt_id = jwt_id
            self._persist_state()
            return True

    def deactivate_session(self, session_id: str) -> bool:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess or not sess.is_active:
                return False
            sess.is_active = False
            self._persist_state()
            return True

    def deactivate_user_sessions(
        self, user_id: str, except_session_id: Optional[str] = None
    ) -> int:
        with self._data_lock:
            count = 0
            for sess in self.sessions.values():
                if sess.user_id != user_id or not sess.is_active:
                    continue
                if except_session_id and sess.id == except_session_id:
                    continue
                sess.is_active = False
                count += 1
            if count:
                self._persist_state()
            return count

    def touch_session(
        self, session_id: str, expires_at: datetime, *, now: Optional[datetime] = None
    ) -> Optional[UserSession]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess or not sess.is_active:
                return None
            sess.last_activity = now or utcnow()
            sess.expires_at = expires_at
            self._persist_state()
            return _copy(sess)

    def deactivate_expired_sessions(self, now: Optional[datetime] = None) -> int:
        cutoff = now or utcnow()
        with self._data_lock:
            count = 0
            for sess in self.sessions.values():
                if sess.is_active and sess.expires_at < cutoff:
                    sess.is_active = False
                    count += 1
            if count:
                self._persist_state()
            return count

    # failed attempts / ip blocks
    def add_failed_attempt(self, attempt: FailedLoginAttempt) -> FailedLoginAttempt:
        with self._data_lock:
            self.failed_attempts[attempt.id] = _copy(attempt)
            self._persist_state()
            return _copy(attempt)

    def count_failed_attempts(self, ip_address: str, since: datetime) -> int:
        with self._data_lock:
            return sum(
                1
                for a in self.failed_attempts.values()
                if a.ip_address == ip_address and a.attempt_time > since
            )

    def list_failed_attempts(self, since: datetime) -> List[FailedLoginAttempt]:
        with self._data_lock:
            rows = [_copy(a) for a in self.failed_attempts.values() if a.attempt_time >= since]
        return sorted(rows, key=lambda a: a.attempt_time, reverse=True)

    def purge_failed_attempts(self, before: datetime) -> int:
        with self._data_lock:
            stale = [a.id for a in self.failed_attempts.values() if a.attempt_time < before]
            for attempt_id in stale:
                self.failed_attempts.pop(attempt_id, None)
            if stale:
                self._persist_state()
            return len(stale)

    def get_active_block(self, ip_address: str) -> Optional[BlockedIp]:
        with self._data_lock:
            return _copy(
                next(
                    (
                        b
                        for b in self.blocked_ips.values()
                        if b.ip_address == ip_address and b.is_active
                    ),
                    None,
                )
            )

    def create_block(self, block: BlockedIp) -> BlockedIp:
        with self._data_lock:
            if any(
                b.ip_address == block.ip_address and b.is_active
                for b in self.blocked_ips.values()
            ):
                raise ConstraintViolation(
                    "ip address already blocked", {"ip_address": block.ip_address}
                )
            self.blocked_ips[block.id] = _copy(block)
            self._persist_state()
            return _copy(block)

    def deactivate_block(self, block_id: str) -> bool:
        with self._data_lock:
            block = self.blocked_ips.get(block_id)
            if not block or not block.is_active:
                return False
            block.is_active = False
            self._persist_state()
            return True

    def list_active_blocks(self) -> List[BlockedIp]:
        with self._data_lock:
            rows = [_copy(b) for b in self.blocked_ips.values() if b.is_active]
        return sorted(rows, key=lambda b: b.blocked_at, reverse=True)

    def count_active_blocks(self) -> int:
        with self._data_lock:
            return sum(1 for b in self.blocked_ips.values() if b.is_active)

    def deactivate_expired_blocks(self, now: Optional[datetime] = None) -> int:
        cutoff = now or utcnow()
        with self._data_lock:
            count = 0
            for block in self.blocked_ips.values():
                if block.is_active and block.is_expired(cutoff):
                    block.is_active = False
                    count += 1
            if count:
                self._persist_state()
            return count

    # settings
    def get_system_settings(self) -> Dict[str, Any]:
        with self._data_lock:
            return dict(self.system_settings)

    def set_system_settings(self, values: Dict[str, Any]) -> Dict[str, Any]:
        with self._data_lock:
            self.system_settings.update(values)
            self._persist_state()
            return dict(self.system_settings)

    # persistence
    def _state_path(self) -> Path:
        assert self.fs_root is not None
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _serialize_datetime(dt: datetime) -> str:
        return dt.isoformat()

    @staticmethod
    def _deserialize_datetime(raw: str) -> datetime:
        return datetime.fromisoformat(raw)

    def _serialize(self, obj: Any) -> dict:
        data = dataclasses.asdict(obj)
        for key, value in data.items():
            if isinstance(value, datetime):
                data[key] = self._serialize_datetime(value)
        return data

    def _deserialize(self, cls, data: dict):
        kwargs = {}
        for fld in dataclasses.fields(cls):
            if fld.name not in data:
                continue
            value = data[fld.name]
            if isinstance(value, str) and "datetime" in str(fld.type):
                value = self._deserialize_datetime(value)
            kwargs[fld.name] = value
        return cls(**kwargs)

    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {
            "users": [self._serialize(u) for u in self.users.values()],
            "credentials": [
                {"user_id": uid, "password_hash": h, "password_algo": algo}
                for uid, (h, algo) in self.credentials.items()
            ],
            "role_permissions": self.role_permissions,
            "refresh_tokens": [self._serialize(t) for t in self.refresh_tokens.values()],
            "sessions": [self._serialize(s) for s in self.sessions.values()],
            "failed_attempts": [self._serialize(a) for a in self.failed_attempts.values()],
            "blocked_ips": [self._serialize(b) for b in self.blocked_ips.values()],
            "system_settings": self.system_settings,
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize(User, u) for u in data.get("users", [])}
        self.credentials = {
            entry["user_id"]: (entry["password_hash"], entry.get("password_algo", ""))
            for entry in data.get("credentials", [])
        }
        self.role_permissions = data.get("role_permissions") or self.role_permissions
        self.refresh_tokens = {
            t["id"]: self._deserialize(RefreshToken, t)
            for t in data.get("refresh_tokens", [])
        }
        self._refresh_by_value = {t.token: t.id for t in self.refresh_tokens.values()}
        self.sessions = {
            s["id"]: self._deserialize(UserSession, s) for s in data.get("sessions", [])
        }
        self.failed_attempts = {
            a["id"]: self._deserialize(FailedLoginAttempt, a)
            for a in data.get("failed_attempts", [])
        }
        self.blocked_ips = {
            b["id"]: self._deserialize(BlockedIp, b) for b in data.get("blocked_ips", [])
        }
        self.system_settings = data.get("system_settings", {})
        self.logger.info("memory_store_state_loaded", path=str(path), users=len(self.users))
        return True
