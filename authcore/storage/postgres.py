from __future__ import annotations

import json
import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

from psycopg import Connection, OperationalError, errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from authcore.logging import get_logger
from authcore.storage.errors import ConstraintViolation, StoreUnavailable
from authcore.storage.models import (
    BlockedIp,
    FailedLoginAttempt,
    RefreshToken,
    User,
    UserSession,
    new_security_stamp,
    utcnow,
)

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id UUID PRIMARY KEY,
        username TEXT NOT NULL,
        email TEXT NOT NULL,
        security_stamp TEXT NOT NULL,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE UNIQUE INDEX IF NOT EXISTS app_user_username_idx ON app_user (lower(username))",
    "CREATE UNIQUE INDEX IF NOT EXISTS app_user_email_idx ON app_user (lower(email))",
    """
    CREATE TABLE IF NOT EXISTS user_auth_credential (
        user_id UUID PRIMARY KEY REFERENCES app_user(id) ON DELETE CASCADE,
        password_hash TEXT NOT NULL,
        password_algo TEXT NOT NULL,
        last_updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_role (
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        role TEXT NOT NULL,
        PRIMARY KEY (user_id, role)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS role_permission (
        role TEXT NOT NULL,
        permission TEXT NOT NULL,
        PRIMARY KEY (role, permission)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS refresh_token (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        token TEXT NOT NULL UNIQUE,
        jwt_id TEXT NOT NULL,
        expiry_date TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        is_revoked BOOLEAN NOT NULL DEFAULT FALSE,
        revoked_at TIMESTAMPTZ,
        revocation_reason TEXT,
        created_by_ip TEXT,
        user_agent TEXT,
        last_used_by_ip TEXT,
        last_used_at TIMESTAMPTZ,
        use_count INTEGER NOT NULL DEFAULT 0
    )
    """,
    "CREATE INDEX IF NOT EXISTS refresh_token_user_idx ON refresh_token (user_id) WHERE NOT is_revoked",
    """
    CREATE TABLE IF NOT EXISTS user_session (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        session_token TEXT NOT NULL UNIQUE,
        created_at TIMESTAMPTZ NOT NULL,
        last_activity TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        ip_address TEXT,
        user_agent TEXT,
        device_type TEXT NOT NULL,
        browser TEXT NOT NULL,
        os TEXT NOT NULL,
        location TEXT NOT NULL,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        jwt_id TEXT,
        device_id TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS user_session_active_idx ON user_session (user_id) WHERE is_active",
    "ALTER TABLE user_session ADD COLUMN IF NOT EXISTS device_id TEXT",
    """
    CREATE TABLE IF NOT EXISTS failed_login_attempt (
        id UUID PRIMARY KEY,
        username TEXT NOT NULL,
        ip_address TEXT NOT NULL,
        attempt_time TIMESTAMPTZ NOT NULL,
        user_agent TEXT,
        reason TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS failed_login_attempt_ip_idx ON failed_login_attempt (ip_address, attempt_time)",
    """
    CREATE TABLE IF NOT EXISTS blocked_ip (
        id UUID PRIMARY KEY,
        ip_address TEXT NOT NULL,
        blocked_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ,
        reason TEXT NOT NULL,
        failed_attempts INTEGER NOT NULL DEFAULT 0,
        is_permanent BOOLEAN NOT NULL DEFAULT FALSE,
        is_active BOOLEAN NOT NULL DEFAULT TRUE
    )
    """,
    "CREATE UNIQUE INDEX IF NOT EXISTS blocked_ip_active_idx ON blocked_ip (ip_address) WHERE is_active",
    """
    CREATE TABLE IF NOT EXISTS system_setting (
        key TEXT PRIMARY KEY,
        value JSONB NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
)


class PostgresStore:
    """Postgres-backed store for users, refresh tokens, sessions and IP blocks."""

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    @contextmanager
    def _connect(self) -> Iterator[Connection]:
        """Pooled connection; lost connections and pool exhaustion surface as StoreUnavailable."""
        try:
            with self.pool.connection() as conn:
                yield conn
        except (OperationalError, PoolTimeout) as exc:
            raise StoreUnavailable(str(exc) or type(exc).__name__) from exc

    def _ensure_schema(self) -> None:
        with self._connect() as conn, conn.transaction():
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    # row mapping
    @staticmethod
    def _user_from_row(row: dict, roles: Optional[List[str]] = None) -> User:
        return User(
            id=str(row["id"]),
            username=row["username"],
            email=row["email"],
            security_stamp=row["security_stamp"],
            is_active=row.get("is_active", True),
            created_at=row.get("created_at") or utcnow(),
            roles=list(roles or []),
        )

    @staticmethod
    def _refresh_from_row(row: dict) -> RefreshToken:
        return RefreshToken(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            token=row["token"],
            jwt_id=row["jwt_id"],
            expiry_date=row["expiry_date"],
            created_at=row.get("created_at") or utcnow(),
            is_revoked=row.get("is_revoked", False),
            revoked_at=row.get("revoked_at"),
            revocation_reason=row.get("revocation_reason"),
            created_by_ip=row.get("created_by_ip"),
            user_agent=row.get("user_agent"),
            last_used_by_ip=row.get("last_used_by_ip"),
            last_used_at=row.get("last_used_at"),
            use_count=row.get("use_count", 0),
        )

    @staticmethod
    def _session_from_row(row: dict) -> UserSession:
        return UserSession(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            session_token=row["session_token"],
            created_at=row["created_at"],
            last_activity=row["last_activity"],
            expires_at=row["expires_at"],
            ip_address=row.get("ip_address"),
            user_agent=row.get("user_agent"),
            device_type=row.get("device_type", "Desktop"),
            browser=row.get("browser", "Other"),
            os=row.get("os", "Other"),
            location=row.get("location", "Unknown"),
            is_active=row.get("is_active", True),
            jwt_id=row.get("jwt_id"),
            device_id=row.get("device_id"),
        )

    @staticmethod
    def _attempt_from_row(row: dict) -> FailedLoginAttempt:
        return FailedLoginAttempt(
            id=str(row["id"]),
            username=row["username"],
            ip_address=row["ip_address"],
            attempt_time=row["attempt_time"],
            user_agent=row.get("user_agent"),
            reason=row.get("reason"),
        )

    @staticmethod
    def _block_from_row(row: dict) -> BlockedIp:
        return BlockedIp(
            id=str(row["id"]),
            ip_address=row["ip_address"],
            blocked_at=row["blocked_at"],
            reason=row["reason"],
            expires_at=row.get("expires_at"),
            failed_attempts=row.get("failed_attempts", 0),
            is_permanent=row.get("is_permanent", False),
            is_active=row.get("is_active", True),
        )

    # users
    def create_user(
        self,
        username: str,
        email: str,
        *,
        roles: Optional[Sequence[str]] = None,
        is_active: bool = True,
    ) -> User:
        user = User(
            id=str(uuid.uuid4()),
            username=username,
            email=email,
            is_active=is_active,
            roles=list(roles or []),
        )
        try:
            with self._connect() as conn, conn.transaction():
                conn.execute(
                    """
                    INSERT INTO app_user (id, username, email, security_stamp, is_active, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    """,
                    (
                        user.id,
                        user.username,
                        user.email,
                        user.security_stamp,
                        user.is_active,
                        user.created_at,
                    ),
                )
                for role in user.roles:
                    conn.execute(
                        "INSERT INTO user_role (user_id, role) VALUES (%s, %s) ON CONFLICT DO NOTHING",
                        (user.id, role),
                    )
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "username or email already exists", {"field": "username"}
            )
        return user

    def _load_user(self, where: str, value: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT * FROM app_user WHERE {where}", (value,)
            ).fetchone()
            if not row:
                return None
            roles = conn.execute(
                "SELECT role FROM user_role WHERE user_id = %s ORDER BY role",
                (row["id"],),
            ).fetchall()
        return self._user_from_row(row, [r["role"] for r in roles])

    def get_user(self, user_id: str) -> Optional[User]:
        return self._load_user("id = %s", user_id)

    def get_user_by_username(self, username: str) -> Optional[User]:
        return self._load_user("lower(username) = lower(%s)", username)

    def get_user_by_email(self, email: str) -> Optional[User]:
        return self._load_user("lower(email) = lower(%s)", email)

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_auth_credential (user_id, password_hash, password_algo, last_updated_at)
                    VALUES (%s, %s, %s, now())
                    ON CONFLICT (user_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash,
                        password_algo = EXCLUDED.password_algo,
                        last_updated_at = now()
                    """,
                    (user_id, password_hash, password_algo),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user not found for credentials", {"user_id": user_id})

    def get_password_record(self, user_id: str) -> Optional[Tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM user_auth_credential WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return str(row["password_hash"]), str(row["password_algo"])

    def get_user_roles(self, user_id: str) -> List[str]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT role FROM user_role WHERE user_id = %s ORDER BY role", (user_id,)
            ).fetchall()
        return [r["role"] for r in rows]

    def set_user_roles(self, user_id: str, roles: Sequence[str]) -> Optional[User]:
        with self._connect() as conn, conn.transaction():
            exists = conn.execute(
                "SELECT 1 FROM app_user WHERE id = %s FOR UPDATE", (user_id,)
            ).fetchone()
            if not exists:
                return None
            conn.execute("DELETE FROM user_role WHERE user_id = %s", (user_id,))
            for role in dict.fromkeys(roles):
                conn.execute(
                    "INSERT INTO user_role (user_id, role) VALUES (%s, %s)",
                    (user_id, role),
                )
        return self.get_user(user_id)

    def get_role_permissions(self, roles: Sequence[str]) -> List[str]:
        if not roles:
            return []
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT DISTINCT permission FROM role_permission WHERE role = ANY(%s) ORDER BY permission",
                (list(roles),),
            ).fetchall()
        return [r["permission"] for r in rows]

    def update_security_stamp(self, user_id: str) -> Optional[str]:
        stamp = new_security_stamp()
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET security_stamp = %s WHERE id = %s RETURNING security_stamp",
                (stamp, user_id),
            ).fetchone()
        return row["security_stamp"] if row else None

    # refresh tokens
    def _insert_refresh(self, conn, token: RefreshToken) -> None:
        conn.execute(
            """
            INSERT INTO refresh_token (
                id, user_id, token, jwt_id, expiry_date, created_at, is_revoked,
                created_by_ip, user_agent, use_count
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            """,
            (
                token.id,
                token.user_id,
                token.token,
                token.jwt_id,
                token.expiry_date,
                token.created_at,
                token.is_revoked,
                token.created_by_ip,
                token.user_agent,
                token.use_count,
            ),
        )

    def add_refresh_token(self, token: RefreshToken) -> RefreshToken:
        try:
            with self._connect() as conn, conn.transaction():
                self._insert_refresh(conn, token)
        except errors.UniqueViolation:
            raise ConstraintViolation("refresh token already exists", {"field": "token"})
        return token

    def get_refresh_token(self, token_value: str) -> Optional[RefreshToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_token WHERE token = %s", (token_value,)
            ).fetchone()
        return self._refresh_from_row(row) if row else None

    def list_refresh_tokens(
        self, user_id: str, *, active_only: bool = False
    ) -> List[RefreshToken]:
        clause = " AND NOT is_revoked" if active_only else ""
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM refresh_token WHERE user_id = %s{clause} ORDER BY created_at",
                (user_id,),
            ).fetchall()
        return [self._refresh_from_row(r) for r in rows]

    def rotate_refresh_token(
        self,
        old_token_id: str,
        successor: RefreshToken,
        *,
        ip: Optional[str] = None,
        reason: str = "rotated",
        now: Optional[datetime] = None,
    ) -> Optional[RefreshToken]:
        """Flip ``old_token_id`` to revoked and insert ``successor`` in one transaction.

        The flip is conditional on ``is_revoked = FALSE``; when another
        transaction got there first no row comes back and nothing is inserted.
        """
        stamp = now or utcnow()
        try:
            with self._connect() as conn, conn.transaction():
                flipped = conn.execute(
                    """
                    UPDATE refresh_token
                    SET is_revoked = TRUE,
                        revoked_at = %s,
                        revocation_reason = %s,
                        last_used_by_ip = %s,
                        last_used_at = %s,
                        use_count = use_count + 1
                    WHERE id = %s AND is_revoked = FALSE
                    RETURNING id
                    """,
                    (stamp, reason, ip, stamp, old_token_id),
                ).fetchone()
                if not flipped:
                    return None
                self._insert_refresh(conn, successor)
        except errors.UniqueViolation:
            raise ConstraintViolation("refresh token already exists", {"field": "token"})
        return successor

    def revoke_refresh_token(
        self, token_id: str, reason: str, *, now: Optional[datetime] = None
    ) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE refresh_token
                SET is_revoked = TRUE, revoked_at = %s, revocation_reason = %s
                WHERE id = %s AND is_revoked = FALSE
                """,
                (now or utcnow(), reason, token_id),
            )
            return result.rowcount > 0

    def revoke_user_refresh_tokens(
        self, user_id: str, reason: str, *, now: Optional[datetime] = None
    ) -> int:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE refresh_token
                SET is_revoked = TRUE, revoked_at = %s, revocation_reason = %s
                WHERE user_id = %s AND is_revoked = FALSE
                """,
                (now or utcnow(), reason, user_id),
            )
            return result.rowcount

    def purge_refresh_tokens(self, before: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                """
                DELETE FROM refresh_token
                WHERE expiry_date < %s OR (is_revoked AND revoked_at < %s)
                """,
                (before, before),
            )
            return result.rowcount

    # sessions
    def create_session_with_limit(
        self, session: UserSession, max_active: int
    ) -> Tuple[UserSession, List[UserSession]]:
        evicted: List[UserSession] = []
        try:
            with self._connect() as conn, conn.transaction():
                # Serializes concurrent logins for the same user
                conn.execute("SELECT 1 FROM app_user WHERE id = %s FOR UPDATE", (session.user_id,))
                active = conn.execute(
                    """
                    SELECT * FROM user_session
                    WHERE user_id = %s AND is_active
                    ORDER BY last_activity ASC
                    FOR UPDATE
                    """,
                    (session.user_id,),
                ).fetchall()
                overflow = len(active) - max(1, max_active) + 1
                for row in active[: max(0, overflow)]:
                    conn.execute(
                        "UPDATE user_session SET is_active = FALSE WHERE id = %s",
                        (row["id"],),
                    )
                    evicted_session = self._session_from_row(row)
                    evicted_session.is_active = False
                    evicted.append(evicted_session)
                conn.execute(
                    """
                    INSERT INTO user_session (
                        id, user_id, session_token, created_at, last_activity, expires_at,
                        ip_address, user_agent, device_type, browser, os, location, is_active, jwt_id,
                        device_id
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        session.id,
                        session.user_id,
                        session.session_token,
                        session.created_at,
                        session.last_activity,
                        session.expires_at,
                        session.ip_address,
                        session.user_agent,
                        session.device_type,
                        session.browser,
                        session.os,
                        session.location,
                        session.is_active,
                        session.jwt_id,
                        session.device_id,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "session token already exists", {"field": "session_token"}
            )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("session user missing", {"user_id": session.user_id})
        return session, evicted

    def get_session(self, session_id: str) -> Optional[UserSession]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM user_session WHERE id = %s", (session_id,)
            ).fetchone()
        return self._session_from_row(row) if row else None

    def get_session_by_jwt_id(self, jwt_id: str) -> Optional[UserSession]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM user_session WHERE jwt_id = %s ORDER BY created_at DESC LIMIT 1",
                (jwt_id,),
            ).fetchone()
        return self._session_from_row(row) if row else None

    def list_sessions(self, user_id: str, *, active_only: bool = True) -> List[UserSession]:
        clause = " AND is_active" if active_only else ""
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM user_session WHERE user_id = %s{clause} ORDER BY last_activity DESC",
                (user_id,),
            ).fetchall()
        return [self._session_from_row(r) for r in rows]

    def latest_session(self, user_id: str) -> Optional[UserSession]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM user_session WHERE user_id = %s ORDER BY created_at DESC LIMIT 1",
                (user_id,),
            ).fetchone()
        return self._session_from_row(row) if row else None

    def update_session_jwt_id(self, session_id: str, jwt_id: str) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE user_session SET jwt_id = %s WHERE id = %s", (jwt_id, session_id)
            )
            return result.rowcount > 0

    def deactivate_session(self, session_id: str) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE user_session SET is_active = FALSE WHERE id = %s AND is_active",
                (session_id,),
            )
            return result.rowcount > 0

    def deactivate_user_sessions(
        self, user_id: str, except_session_id: Optional[str] = None
    ) -> int:
        with self._connect() as conn:
            if except_session_id:
                result = conn.execute(
                    "UPDATE user_session SET is_active = FALSE WHERE user_id = %s AND is_active AND id <> %s",
                    (user_id, except_session_id),
                )
            else:
                result = conn.execute(
                    "UPDATE user_session SET is_active = FALSE WHERE user_id = %s AND is_active",
                    (user_id,),
                )
            return result.rowcount

    def touch_session(
        self, session_id: str, expires_at: datetime, *, now: Optional[datetime] = None
    ) -> Optional[UserSession]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE user_session SET last_activity = %s, expires_at = %s
                WHERE id = %s AND is_active
                RETURNING *
                """,
                (now or utcnow(), expires_at, session_id),
            ).fetchone()
        return self._session_from_row(row) if row else None

    def deactivate_expired_sessions(self, now: Optional[datetime] = None) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE user_session SET is_active = FALSE WHERE is_active AND expires_at < %s",
                (now or utcnow(),),
            )
            return result.rowcount

    # failed attempts / ip blocks
    def add_failed_attempt(self, attempt: FailedLoginAttempt) -> FailedLoginAttempt:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO failed_login_attempt (id, username, ip_address, attempt_time, user_agent, reason)
                VALUES (%s, %s, %s, %s, %s, %s)
                """,
                (
                    attempt.id,
                    attempt.username,
                    attempt.ip_address,
                    attempt.attempt_time,
                    attempt.user_agent,
                    attempt.reason,
                ),
            )
        return attempt

    def count_failed_attempts(self, ip_address: str, since: datetime) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS c FROM failed_login_attempt WHERE ip_address = %s AND attempt_time > %s",
                (ip_address, since),
            ).fetchone()
        return int(row["c"]) if row else 0

    def list_failed_attempts(self, since: datetime) -> List[FailedLoginAttempt]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM failed_login_attempt WHERE attempt_time >= %s ORDER BY attempt_time DESC",
                (since,),
            ).fetchall()
        return [self._attempt_from_row(r) for r in rows]

    def purge_failed_attempts(self, before: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM failed_login_attempt WHERE attempt_time < %s", (before,)
            )
            return result.rowcount

    def get_active_block(self, ip_address: str) -> Optional[BlockedIp]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM blocked_ip WHERE ip_address = %s AND is_active",
                (ip_address,),
            ).fetchone()
        return self._block_from_row(row) if row else None

    def create_block(self, block: BlockedIp) -> BlockedIp:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO blocked_ip (
                        id, ip_address, blocked_at, expires_at, reason, failed_attempts, is_permanent, is_active
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        block.id,
                        block.ip_address,
                        block.blocked_at,
                        block.expires_at,
                        block.reason,
                        block.failed_attempts,
                        block.is_permanent,
                        block.is_active,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "ip address already blocked", {"ip_address": block.ip_address}
            )
        return block

    def deactivate_block(self, block_id: str) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE blocked_ip SET is_active = FALSE WHERE id = %s AND is_active",
                (block_id,),
            )
            return result.rowcount > 0

    def list_active_blocks(self) -> List[BlockedIp]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM blocked_ip WHERE is_active ORDER BY blocked_at DESC"
            ).fetchall()
        return [self._block_from_row(r) for r in rows]

    def count_active_blocks(self) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS c FROM blocked_ip WHERE is_active"
            ).fetchone()
        return int(row["c"]) if row else 0

    def deactivate_expired_blocks(self, now: Optional[datetime] = None) -> int:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE blocked_ip SET is_active = FALSE
                WHERE is_active AND NOT is_permanent AND expires_at IS NOT NULL AND expires_at < %s
                """,
                (now or utcnow(),),
            )
            return result.rowcount

    # settings
    def get_system_settings(self) -> Dict[str, Any]:
        with self._connect() as conn:
            rows = conn.execute("SELECT key, value FROM system_setting").fetchall()
        return {r["key"]: r["value"] for r in rows}

    def set_system_settings(self, values: Dict[str, Any]) -> Dict[str, Any]:
        with self._connect() as conn, conn.transaction():
            for key, value in values.items():
                conn.execute(
                    """
                    INSERT INTO system_setting (key, value, updated_at)
                    VALUES (%s, %s, now())
                    ON CONFLICT (key) DO UPDATE SET value = EXCLUDED.value, updated_at = now()
                    """,
                    (key, json.dumps(value)),
                )
        return self.get_system_settings()
