"""PostgresStore behaviour against a scripted connection (no database needed)."""

from contextlib import contextmanager, nullcontext
from datetime import timedelta

import pytest
from psycopg import OperationalError, errors
from psycopg_pool import PoolTimeout

from authcore.storage.errors import ConstraintViolation, StoreUnavailable
from authcore.storage.models import BlockedIp, RefreshToken, UserSession, utcnow
from authcore.storage.postgres import PostgresStore


class FakeCursor:
    def __init__(self, rows=None, rowcount=0):
        self._rows = list(rows or [])
        self.rowcount = rowcount

    def fetchone(self):
        return self._rows[0] if self._rows else None

    def fetchall(self):
        return list(self._rows)


class FakeConnection:
    def __init__(self, responder):
        self.responder = responder
        self.statements = []

    def execute(self, sql, params=None):
        normalized = " ".join(sql.split())
        self.statements.append((normalized, params))
        return self.responder(normalized, params)

    def transaction(self):
        return nullcontext()


class FakePool:
    def __init__(self, responder):
        self.conn = FakeConnection(responder)

    @contextmanager
    def connection(self):
        yield self.conn


class ExhaustedPool(FakePool):
    @contextmanager
    def connection(self):
        raise PoolTimeout("couldn't get a connection after 30.00 sec")
        yield self.conn


def _store(responder):
    store = PostgresStore.__new__(PostgresStore)
    store.pool = FakePool(responder)
    store.dsn = "postgresql://fake"
    return store


def _statements(store):
    return [sql for sql, _ in store.pool.conn.statements]


class TestRotateRefreshToken:
    def test_successor_inserted_when_flip_succeeds(self):
        def responder(sql, params):
            if sql.startswith("UPDATE refresh_token"):
                return FakeCursor([{"id": "old"}])
            return FakeCursor()

        store = _store(responder)
        successor = RefreshToken.new("u1", "v2", "j2", 7)

        assert store.rotate_refresh_token("old", successor, ip="10.0.0.1") is successor
        sql = _statements(store)
        assert "WHERE id = %s AND is_revoked = FALSE" in sql[0]
        assert sql[1].startswith("INSERT INTO refresh_token")

    def test_nothing_inserted_when_already_revoked(self):
        store = _store(lambda sql, params: FakeCursor())
        successor = RefreshToken.new("u1", "v2", "j2", 7)

        assert store.rotate_refresh_token("old", successor) is None
        assert not any(s.startswith("INSERT") for s in _statements(store))

    def test_unique_violation_maps_to_constraint(self):
        def responder(sql, params):
            if sql.startswith("UPDATE"):
                return FakeCursor([{"id": "old"}])
            raise errors.UniqueViolation("duplicate key")

        store = _store(responder)
        with pytest.raises(ConstraintViolation):
            store.rotate_refresh_token("old", RefreshToken.new("u1", "v2", "j2", 7))

    def test_lost_connection_maps_to_store_unavailable(self):
        def responder(sql, params):
            raise OperationalError("server closed the connection unexpectedly")

        store = _store(responder)
        with pytest.raises(StoreUnavailable):
            store.rotate_refresh_token("old", RefreshToken.new("u1", "v2", "j2", 7))

    def test_pool_timeout_maps_to_store_unavailable(self):
        store = _store(lambda sql, params: FakeCursor())
        store.pool = ExhaustedPool(lambda sql, params: FakeCursor())

        with pytest.raises(StoreUnavailable):
            store.rotate_refresh_token("old", RefreshToken.new("u1", "v2", "j2", 7))
        with pytest.raises(StoreUnavailable):
            store.get_user("u1")


class TestCreateSessionWithLimit:
    def _row(self, session_id, minutes_ago):
        now = utcnow()
        return {
            "id": session_id,
            "user_id": "u1",
            "session_token": f"tok-{session_id}",
            "created_at": now - timedelta(minutes=minutes_ago),
            "last_activity": now - timedelta(minutes=minutes_ago),
            "expires_at": now + timedelta(minutes=30),
            "device_type": "Desktop",
            "browser": "Other",
            "os": "Other",
            "location": "Unknown",
            "is_active": True,
        }

    def test_evicts_oldest_rows_over_cap(self):
        active = [self._row("s1", 30), self._row("s2", 20), self._row("s3", 10)]

        def responder(sql, params):
            if sql.startswith("SELECT * FROM user_session"):
                return FakeCursor(active)
            return FakeCursor()

        store = _store(responder)
        session = UserSession.new("u1", 60)

        stored, evicted = store.create_session_with_limit(session, 2)

        assert stored is session
        assert [s.id for s in evicted] == ["s1", "s2"]
        assert all(not s.is_active for s in evicted)
        sql = _statements(store)
        assert sql[0].startswith("SELECT 1 FROM app_user") and sql[0].endswith("FOR UPDATE")
        assert sum(1 for s in sql if s.startswith("UPDATE user_session SET is_active = FALSE")) == 2
        assert sql[-1].startswith("INSERT INTO user_session")

    def test_no_eviction_under_cap(self):
        def responder(sql, params):
            if sql.startswith("SELECT * FROM user_session"):
                return FakeCursor([self._row("s1", 5)])
            return FakeCursor()

        store = _store(responder)
        _, evicted = store.create_session_with_limit(UserSession.new("u1", 60), 5)
        assert evicted == []


class TestBlocks:
    def test_duplicate_active_block_maps_to_constraint(self):
        def responder(sql, params):
            raise errors.UniqueViolation("blocked_ip_active_idx")

        store = _store(responder)
        with pytest.raises(ConstraintViolation) as exc:
            store.create_block(BlockedIp.new("203.0.113.5", "manual", None))
        assert exc.value.detail == {"ip_address": "203.0.113.5"}


class TestRevocation:
    def test_revoke_user_tokens_returns_rowcount(self):
        store = _store(lambda sql, params: FakeCursor(rowcount=3))
        assert store.revoke_user_refresh_tokens("u1", "security: logout") == 3
        sql, params = store.pool.conn.statements[0]
        assert "is_revoked = FALSE" in sql
        assert params[1] == "security: logout"


class TestSettings:
    def test_settings_values_stored_as_json(self):
        def responder(sql, params):
            if sql.startswith("SELECT key, value"):
                return FakeCursor([{"key": "session.max_concurrent_sessions", "value": 3}])
            return FakeCursor()

        store = _store(responder)
        result = store.set_system_settings({"session.max_concurrent_sessions": 3})

        assert result == {"session.max_concurrent_sessions": 3}
        _, params = store.pool.conn.statements[0]
        assert params == ("session.max_concurrent_sessions", "3")
