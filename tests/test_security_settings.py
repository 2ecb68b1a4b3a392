"""Typed security settings loaded from the settings store."""

import pytest
from pydantic import ValidationError

from authcore.service.security_settings import (
    RateLimitConfig,
    SecuritySettingsService,
    SessionConfig,
)
from authcore.storage.memory import MemoryStore


@pytest.fixture
def store():
    return MemoryStore()


class TestSecuritySettingsService:
    def test_defaults_when_store_empty(self, store):
        service = SecuritySettingsService(store)
        assert service.rate_limit == RateLimitConfig()
        assert service.session.max_concurrent_sessions == 5
        assert service.session.session_timeout_minutes == 60
        assert service.rate_limit.suspicious_activity_threshold == 10

    def test_loads_stored_values(self, store):
        store.set_system_settings(
            {
                "security.ip_blocking.suspicious_activity_threshold": 4,
                "security.ip_blocking.duration_minutes": 15,
                "session.max_concurrent_sessions": 2,
                "session.allow_multiple_devices": False,
            }
        )
        service = SecuritySettingsService(store)

        assert service.rate_limit.suspicious_activity_threshold == 4
        assert service.rate_limit.block_duration_minutes == 15
        assert service.session.max_concurrent_sessions == 2
        assert service.session.allow_multiple_devices is False

    def test_invalid_stored_section_falls_back_to_defaults(self, store):
        store.set_system_settings(
            {
                "session.max_concurrent_sessions": 0,
                "security.ip_blocking.duration_minutes": 15,
            }
        )
        service = SecuritySettingsService(store)

        assert service.session == SessionConfig()
        assert service.rate_limit.block_duration_minutes == 15

    def test_update_persists_and_applies(self, store):
        service = SecuritySettingsService(store)
        service.update_rate_limit(RateLimitConfig(requests_per_minute=5))

        assert service.rate_limit.requests_per_minute == 5
        assert store.get_system_settings()["security.rate_limiting.requests_per_minute"] == 5
        assert SecuritySettingsService(store).rate_limit.requests_per_minute == 5

    def test_reload_picks_up_external_changes(self, store):
        service = SecuritySettingsService(store)
        store.set_system_settings({"session.timeout_minutes": 20})
        assert service.session.session_timeout_minutes == 60

        service.reload()

        assert service.session.session_timeout_minutes == 20

    def test_get_by_store_key(self, store):
        store.set_system_settings({"custom.flag": "on"})
        service = SecuritySettingsService(store)
        assert service.get("session.max_concurrent_sessions") == 5
        assert service.get("security.ip_blocking.enabled") is True
        assert service.get("custom.flag") == "on"
        assert service.get("missing", "fallback") == "fallback"

    def test_returned_config_is_a_copy(self, store):
        service = SecuritySettingsService(store)
        snapshot = service.session
        snapshot.max_concurrent_sessions = 99
        assert service.session.max_concurrent_sessions == 5

    def test_config_models_validate_bounds(self):
        with pytest.raises(ValidationError):
            RateLimitConfig(block_duration_minutes=0)
        with pytest.raises(ValidationError):
            SessionConfig(max_concurrent_sessions=0)
