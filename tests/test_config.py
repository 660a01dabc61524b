"""Tests for Settings loading and startup validation."""

import pytest

from algoauth.config import ConfigurationError, Settings
from algoauth.service.runtime import Runtime


class TestFromEnv:
    def test_reads_environment(self, monkeypatch):
        monkeypatch.setenv("ACCESS_TOKEN_TTL_MINUTES", "15")
        monkeypatch.setenv("ROTATE_REFRESH_TOKENS", "false")
        monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://a.example, https://b.example")

        settings = Settings.from_env()
        assert settings.access_token_ttl_minutes == 15
        assert settings.rotate_refresh_tokens is False
        assert settings.cors_origins == ["https://a.example", "https://b.example"]

    def test_blank_secret_counts_as_missing(self):
        settings = Settings(jwt_secret="   ", jwt_refresh_secret="refresh")
        assert settings.jwt_secret is None

    def test_ttl_must_be_positive(self):
        with pytest.raises(ValueError):
            Settings(access_token_ttl_minutes=0)


class TestSigningSecrets:
    def test_both_missing(self):
        with pytest.raises(ConfigurationError) as excinfo:
            Settings().require_signing_secrets()
        assert "JWT_SECRET" in str(excinfo.value)
        assert "JWT_REFRESH_SECRET" in str(excinfo.value)

    def test_must_differ(self):
        settings = Settings(jwt_secret="same", jwt_refresh_secret="same")
        with pytest.raises(ConfigurationError):
            settings.require_signing_secrets()

    def test_runtime_refuses_to_start_without_secret(self):
        settings = Settings(
            jwt_secret=None,
            jwt_refresh_secret="refresh",
            use_memory_store=True,
            test_mode=True,
        )
        with pytest.raises(ConfigurationError):
            Runtime(settings)

    def test_runtime_without_redis_requires_opt_in(self):
        settings = Settings(
            jwt_secret="access",
            jwt_refresh_secret="refresh",
            use_memory_store=True,
            redis_url="",
            test_mode=False,
            allow_redis_fallback_dev=False,
        )
        with pytest.raises(RuntimeError):
            Runtime(settings)
