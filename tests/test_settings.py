"""
Tests for environment-driven settings.
"""

import pytest
from pydantic import ValidationError

from config.settings import Settings


def _settings(**overrides):
    return Settings(_env_file=None, **overrides)


class TestSettings:
    def test_defaults(self):
        cfg = _settings()
        assert cfg.scheduler_tick_interval_seconds == 60
        assert cfg.scheduler_default_interval_seconds == 900
        assert cfg.executor_max_attempts == 3
        assert cfg.executor_refresh_margin_seconds == 30
        assert cfg.operator_token_list == []

    def test_env_prefix(self, monkeypatch):
        monkeypatch.setenv("POBLYSH_OPERATOR_TOKENS", "alpha, beta,,gamma")
        monkeypatch.setenv("POBLYSH_EXECUTOR_CONCURRENCY", "4")
        cfg = _settings()
        assert cfg.operator_token_list == ["alpha", "beta", "gamma"]
        assert cfg.executor_concurrency == 4

    @pytest.mark.parametrize(
        "field, value",
        [
            ("scheduler_tick_interval_seconds", 5),
            ("scheduler_tick_interval_seconds", 301),
            ("executor_refresh_margin_seconds", 9),
            ("executor_refresh_margin_seconds", 61),
            ("executor_max_attempts", 6),
            ("backoff_jitter", 1.0),
        ],
    )
    def test_out_of_range_rejected(self, field, value):
        with pytest.raises(ValidationError):
            _settings(**{field: value})

    def test_issuer_list(self):
        cfg = _settings(pubsub_oidc_issuers="https://accounts.google.com, accounts.google.com")
        assert cfg.pubsub_oidc_issuer_list == ["https://accounts.google.com", "accounts.google.com"]

    def test_backoff_overrides_parsed(self):
        cfg = _settings(backoff_provider_overrides='{"github": {"base_seconds": 10}}')
        assert cfg.get_backoff_overrides() == {"github": {"base_seconds": 10}}
        assert _settings().get_backoff_overrides() == {}

    @pytest.mark.parametrize("raw", ["not json", "[1, 2]"])
    def test_bad_backoff_overrides_rejected(self, raw):
        with pytest.raises(ValueError):
            _settings(backoff_provider_overrides=raw).get_backoff_overrides()
