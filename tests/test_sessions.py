"""Session registry: creation with device metadata, caps, termination, statistics."""

from datetime import timedelta

import pytest

from authcore.service.errors import ForbiddenError, NotFoundError
from authcore.service.geo import GeoLocator
from authcore.service.security_settings import SecuritySettingsService, SessionConfig
from authcore.service.sessions import SessionRegistry, is_session_live
from authcore.storage.memory import MemoryStore
from authcore.storage.models import utcnow

CHROME_WINDOWS = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)
SAFARI_IPHONE = (
    "Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/17.0 Mobile/15E148 Safari/604.1"
)


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def settings(store):
    return SecuritySettingsService(store)


@pytest.fixture
def registry(store, settings):
    return SessionRegistry(store, settings, GeoLocator(enabled=False))


@pytest.fixture
def user(store):
    return store.create_user("alice", "alice@example.com")


def _age(store, session, minutes):
    """Push a session's last activity into the past so eviction order is deterministic."""
    store.sessions[session.id].last_activity = utcnow() - timedelta(minutes=minutes)


class TestSessionCreation:
    async def test_device_metadata_recorded(self, registry, user):
        session = await registry.create(user.id, "10.0.0.1", CHROME_WINDOWS, jwt_id="jti-1")

        assert session.device_type == "Desktop"
        assert session.browser == "Chrome 120"
        assert session.os == "Windows 10"
        assert session.location == "Local Network"
        assert session.jwt_id == "jti-1"
        assert session.is_active
        assert timedelta(minutes=59) < session.expires_at - session.created_at <= timedelta(minutes=60)

    async def test_public_ip_without_lookup_is_unknown(self, registry, user):
        session = await registry.create(user.id, "203.0.113.5", SAFARI_IPHONE)
        assert session.location == "Unknown"
        assert session.device_type == "Mobile"

    async def test_lookup_failure_does_not_fail_login(self, store, settings, user):
        class BrokenGeo(GeoLocator):
            async def locate(self, ip):
                raise RuntimeError("boom")

        registry = SessionRegistry(store, settings, BrokenGeo())
        session = await registry.create(user.id, "203.0.113.5", None)
        assert session.location == "Unknown"

    async def test_cap_evicts_least_recently_active(self, registry, settings, store, user):
        settings.update_session(SessionConfig(max_concurrent_sessions=2))
        oldest = await registry.create(user.id, "10.0.0.1", CHROME_WINDOWS)
        _age(store, oldest, 30)
        newer = await registry.create(user.id, "10.0.0.2", CHROME_WINDOWS)
        _age(store, newer, 10)

        latest = await registry.create(user.id, "10.0.0.3", CHROME_WINDOWS)

        active_ids = {s.id for s in registry.list_for_user(user.id)}
        assert active_ids == {newer.id, latest.id}
        assert not store.get_session(oldest.id).is_active

    async def test_single_device_mode_keeps_one_session(self, registry, settings, user):
        settings.update_session(SessionConfig(allow_multiple_devices=False))
        await registry.create(user.id, "10.0.0.1", CHROME_WINDOWS)
        await registry.create(user.id, "10.0.0.2", SAFARI_IPHONE)
        latest = await registry.create(user.id, "10.0.0.3", CHROME_WINDOWS)

        assert [s.id for s in registry.list_for_user(user.id)] == [latest.id]

    async def test_caps_are_per_user(self, registry, settings, store, user):
        settings.update_session(SessionConfig(max_concurrent_sessions=1))
        other = store.create_user("bob", "bob@example.com")
        await registry.create(user.id, "10.0.0.1", None)
        await registry.create(other.id, "10.0.0.2", None)

        assert len(registry.list_for_user(user.id)) == 1
        assert len(registry.list_for_user(other.id)) == 1


class TestTermination:
    async def test_terminate_own_session(self, registry, user):
        session = await registry.create(user.id, "10.0.0.1", None)
        result = registry.terminate(session.id, user.id)
        assert result.ok and result.value is True
        assert registry.list_for_user(user.id) == []

    async def test_terminate_other_users_session_forbidden(self, registry, store, user):
        session = await registry.create(user.id, "10.0.0.1", None)
        intruder = store.create_user("mallory", "mallory@example.com")

        result = registry.terminate(session.id, intruder.id)

        assert isinstance(result.error, ForbiddenError)
        assert store.get_session(session.id).is_active

    def test_terminate_unknown_session(self, registry, user):
        assert isinstance(registry.terminate("missing", user.id).error, NotFoundError)

    async def test_terminate_all_keeps_current(self, registry, user):
        current = await registry.create(user.id, "10.0.0.1", None, jwt_id="jti-current")
        await registry.create(user.id, "10.0.0.2", None, jwt_id="jti-2")
        await registry.create(user.id, "10.0.0.3", None, jwt_id="jti-3")

        assert registry.terminate_all(user.id, "jti-current") == 2
        assert [s.id for s in registry.list_for_user(user.id)] == [current.id]

    async def test_terminate_all_without_current(self, registry, user):
        await registry.create(user.id, "10.0.0.1", None)
        await registry.create(user.id, "10.0.0.2", None)
        assert registry.terminate_all(user.id) == 2


class TestActivityAndExpiry:
    async def test_touch_extends_expiry(self, registry, store, user):
        session = await registry.create(user.id, "10.0.0.1", None)
        later = utcnow() + timedelta(minutes=20)

        touched = registry.touch(session.id, now=later)

        assert touched.last_activity == later
        assert touched.expires_at == later + timedelta(minutes=60)

    async def test_sweep_deactivates_expired(self, registry, store, user):
        stale = await registry.create(user.id, "10.0.0.1", None)
        fresh = await registry.create(user.id, "10.0.0.2", None)
        store.sessions[stale.id].expires_at = utcnow() - timedelta(minutes=1)

        assert not is_session_live(store.get_session(stale.id))
        assert registry.sweep_expired() == 1
        assert [s.id for s in registry.list_for_user(user.id)] == [fresh.id]

    async def test_touch_ignores_inactive_session(self, registry, user):
        session = await registry.create(user.id, "10.0.0.1", None)
        registry.terminate(session.id, user.id)
        assert registry.touch(session.id) is None


class TestStatistics:
    async def test_statistics_break_down_active_sessions(self, registry, store, user):
        await registry.create(user.id, "10.0.0.1", CHROME_WINDOWS)
        await registry.create(user.id, "10.0.0.2", CHROME_WINDOWS)
        last = await registry.create(user.id, "203.0.113.5", SAFARI_IPHONE)
        store.sessions[last.id].created_at = utcnow() + timedelta(seconds=1)

        stats = registry.statistics(user.id)

        assert stats.total_active_sessions == 3
        assert stats.desktop_sessions == 2
        assert stats.mobile_sessions == 1
        assert stats.tablet_sessions == 0
        assert stats.sessions_by_browser == {"Chrome 120": 2, "Mobile Safari 17": 1}
        assert stats.sessions_by_location == {"Local Network": 2, "Unknown": 1}
        assert stats.last_login_ip == last.ip_address

    def test_statistics_for_user_without_sessions(self, registry, user):
        stats = registry.statistics(user.id)
        assert stats.total_active_sessions == 0
        assert stats.last_login_time is None

    def test_configuration_round_trips_through_settings(self, registry, store):
        updated = registry.update_configuration(SessionConfig(session_timeout_minutes=15))
        assert updated.session_timeout_minutes == 15
        assert registry.get_configuration().session_timeout_minutes == 15
        assert store.get_system_settings()["session.timeout_minutes"] == 15
