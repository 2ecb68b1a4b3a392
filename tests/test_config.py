"""Settings loading from the environment."""

import pytest
from pydantic import ValidationError

from authcore.config import MIN_JWT_SECRET_BYTES, Settings


class TestSettings:
    def test_short_secret_rejected(self):
        with pytest.raises(ValidationError):
            Settings(jwt_secret="x" * (MIN_JWT_SECRET_BYTES - 1))

    def test_missing_secret_generated_and_persisted(self, tmp_path, monkeypatch):
        monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))

        first = Settings(jwt_secret=None)
        second = Settings()

        assert len(first.jwt_secret.encode()) >= MIN_JWT_SECRET_BYTES
        assert second.jwt_secret == first.jwt_secret
        assert (tmp_path / ".jwt_secret").read_text().strip() == first.jwt_secret

    def test_from_env_reads_named_variables(self, monkeypatch):
        monkeypatch.setenv("ACCESS_TOKEN_TTL_MINUTES", "5")
        monkeypatch.setenv("REFRESH_TOKEN_TTL_DAYS", "2")
        monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://a.example, https://b.example,")
        monkeypatch.setenv("TRUST_FORWARDED_FOR", "true")

        settings = Settings.from_env()

        assert settings.access_token_ttl_minutes == 5
        assert settings.refresh_token_ttl_days == 2
        assert settings.cors_allow_origins == ["https://a.example", "https://b.example"]
        assert settings.trust_forwarded_for is True

    def test_defaults(self):
        settings = Settings(jwt_secret="k" * MIN_JWT_SECRET_BYTES)
        assert settings.jwt_issuer == "authcore"
        assert settings.jwt_audience == "authcore-clients"
        assert settings.access_token_ttl_minutes == 60
        assert settings.refresh_token_ttl_days == 7
        assert settings.reuse_ledger_ttl_hours == 24
        assert settings.allow_registration is True
