"""Tests for environment-driven settings."""

from pathlib import Path

import pytest
from pydantic import ValidationError

from apilayer.core.config import Settings


class TestDefaults:

    def test_defaults(self):
        settings = Settings(_env_file=None)

        assert settings.rate_limit_max_calls == 60
        assert settings.rate_limit_window_seconds == 60.0
        assert settings.rate_limit_max_retry_after == 300.0
        assert settings.token_safety_margin == 60.0
        assert settings.client_max_retries == 5
        assert settings.client_timeout == 30.0
        assert settings.cache_memory_ttl < settings.cache_local_ttl < settings.cache_remote_ttl
        assert settings.cache_local_dir == Path(".apilayer-cache")
        assert settings.redis_enabled is False
        assert settings.log_format == "text"


class TestEnvironment:

    def test_reads_prefixed_variables(self, monkeypatch):
        monkeypatch.setenv("APILAYER_API_BASE_URL", "https://api.example.test")
        monkeypatch.setenv("APILAYER_RATE_LIMIT_MAX_CALLS", "10")
        monkeypatch.setenv("APILAYER_API_SCOPES", '["read", "write"]')
        monkeypatch.setenv("APILAYER_REDIS_ENABLED", "true")

        settings = Settings(_env_file=None)

        assert settings.api_base_url == "https://api.example.test"
        assert settings.rate_limit_max_calls == 10
        assert settings.api_scopes == ["read", "write"]
        assert settings.redis_enabled is True

    def test_unprefixed_variables_are_ignored(self, monkeypatch):
        monkeypatch.setenv("RATE_LIMIT_MAX_CALLS", "10")
        assert Settings(_env_file=None).rate_limit_max_calls == 60


class TestValidation:

    @pytest.mark.parametrize("field", [
        "rate_limit_max_calls",
        "cache_memory_capacity",
        "client_max_retries",
    ])
    def test_counts_must_be_positive(self, field):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, **{field: 0})

    @pytest.mark.parametrize("field", [
        "rate_limit_window_seconds",
        "rate_limit_max_retry_after",
        "cache_memory_ttl",
        "cache_remote_ttl",
        "client_timeout",
        "client_base_backoff",
        "httpx_read_timeout",
    ])
    def test_durations_must_be_positive(self, field):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, **{field: 0})

    def test_zero_margin_and_jitter_allowed(self):
        settings = Settings(_env_file=None, token_safety_margin=0, client_backoff_jitter=0)
        assert settings.token_safety_margin == 0
        assert settings.client_backoff_jitter == 0

    def test_negative_margin_rejected(self):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, token_safety_margin=-1)

    def test_log_format_is_normalised(self):
        assert Settings(_env_file=None, log_format="JSON").log_format == "json"

    def test_unknown_log_format_rejected(self):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, log_format="xml")
