from __future__ import annotations

import threading
from typing import Any, Dict, Optional, Protocol

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from authcore.logging import get_logger

logger = get_logger(__name__)


class SettingsStore(Protocol):
    def get_system_settings(self) -> Dict[str, Any]: ...

    def set_system_settings(self, values: Dict[str, Any]) -> Dict[str, Any]: ...


class RateLimitConfig(BaseModel):
    model_config = ConfigDict(extra="ignore")

    enable_rate_limiting: bool = True
    requests_per_minute: int = Field(60, ge=1)
    requests_per_hour: int = Field(1000, ge=1)
    enable_ip_blocking: bool = True
    block_duration_minutes: int = Field(60, ge=1)
    suspicious_activity_threshold: int = Field(10, ge=1)


class SessionConfig(BaseModel):
    model_config = ConfigDict(extra="ignore")

    session_timeout_minutes: int = Field(60, ge=1)
    max_concurrent_sessions: int = Field(5, ge=1)
    allow_multiple_devices: bool = True
    notify_on_new_login: bool = True
    require_reauthentication_for_sensitive_actions: bool = True
    inactivity_timeout_minutes: int = Field(30, ge=1)


# Settings-store key for each typed field
RATE_LIMIT_KEYS: Dict[str, str] = {
    "enable_rate_limiting": "security.rate_limiting.enabled",
    "requests_per_minute": "security.rate_limiting.requests_per_minute",
    "requests_per_hour": "security.rate_limiting.requests_per_hour",
    "enable_ip_blocking": "security.ip_blocking.enabled",
    "block_duration_minutes": "security.ip_blocking.duration_minutes",
    "suspicious_activity_threshold": "security.ip_blocking.suspicious_activity_threshold",
}

SESSION_KEYS: Dict[str, str] = {
    "session_timeout_minutes": "session.timeout_minutes",
    "max_concurrent_sessions": "session.max_concurrent_sessions",
    "allow_multiple_devices": "session.allow_multiple_devices",
    "notify_on_new_login": "session.notify_on_new_login",
    "require_reauthentication_for_sensitive_actions": "session.require_reauthentication",
    "inactivity_timeout_minutes": "session.inactivity_timeout_minutes",
}


class SecuritySettingsService:
    """Typed view over the operator-tunable security settings.

    Values are read from the settings store once (and again on ``reload``)
    and held as validated pydantic models, so request paths never touch the
    store for configuration. Invalid stored values fall back to defaults and
    are logged rather than failing startup.
    """

    def __init__(self, store: SettingsStore) -> None:
        self.store = store
        self._lock = threading.Lock()
        self._rate_limit = RateLimitConfig()
        self._session = SessionConfig()
        self._raw: Dict[str, Any] = {}
        self.reload()

    @staticmethod
    def _extract(raw: Dict[str, Any], keys: Dict[str, str]) -> Dict[str, Any]:
        return {field: raw[key] for field, key in keys.items() if key in raw}

    def _build(self, model_cls, raw: Dict[str, Any], keys: Dict[str, str]):
        values = self._extract(raw, keys)
        try:
            return model_cls(**values)
        except ValidationError as exc:
            logger.warning(
                "security_settings_invalid",
                section=model_cls.__name__,
                errors=exc.error_count(),
            )
            return model_cls()

    def reload(self) -> None:
        raw = self.store.get_system_settings()
        rate_limit = self._build(RateLimitConfig, raw, RATE_LIMIT_KEYS)
        session = self._build(SessionConfig, raw, SESSION_KEYS)
        with self._lock:
            self._raw = dict(raw)
            self._rate_limit = rate_limit
            self._session = session
        logger.info(
            "security_settings_loaded",
            ip_blocking=rate_limit.enable_ip_blocking,
            max_sessions=session.max_concurrent_sessions,
        )

    @property
    def rate_limit(self) -> RateLimitConfig:
        with self._lock:
            return self._rate_limit.model_copy()

    @property
    def session(self) -> SessionConfig:
        with self._lock:
            return self._session.model_copy()

    def get(self, key: str, default: Optional[Any] = None) -> Any:
        """Look up a single setting by its store key."""
        with self._lock:
            for field, store_key in RATE_LIMIT_KEYS.items():
                if store_key == key:
                    return getattr(self._rate_limit, field)
            for field, store_key in SESSION_KEYS.items():
                if store_key == key:
                    return getattr(self._session, field)
            return self._raw.get(key, default)

    def update_rate_limit(self, config: RateLimitConfig) -> RateLimitConfig:
        values = {RATE_LIMIT_KEYS[f]: v for f, v in config.model_dump().items()}
        self.store.set_system_settings(values)
        with self._lock:
            self._rate_limit = config.model_copy()
            self._raw.update(values)
        logger.info("rate_limit_configuration_updated", **config.model_dump())
        return config

    def update_session(self, config: SessionConfig) -> SessionConfig:
        values = {SESSION_KEYS[f]: v for f, v in config.model_dump().items()}
        self.store.set_system_settings(values)
        with self._lock:
            self._session = config.model_copy()
            self._raw.update(values)
        logger.info("session_configuration_updated", **config.model_dump())
        return config
