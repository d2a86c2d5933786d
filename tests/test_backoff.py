"""
Tests for the retry / backoff policy.
"""

import random

import pytest

from core.backoff import BackoffPolicy, BackoffSettings, build_overrides


class _FixedRandom(random.Random):
    """uniform() always returns the given point in the jitter band."""

    def __init__(self, point: float):
        super().__init__(0)
        self.point = point

    def uniform(self, a, b):
        return a + (b - a) * self.point


class TestBackoffDelay:
    def test_exponential_without_jitter(self):
        policy = BackoffPolicy(defaults=BackoffSettings(base_seconds=5, multiplier=2, jitter=0, max_seconds=900))
        assert [policy.delay(n) for n in (1, 2, 3, 4)] == [5, 10, 20, 40]

    def test_capped_at_max(self):
        policy = BackoffPolicy(defaults=BackoffSettings(base_seconds=5, multiplier=2, jitter=0, max_seconds=30))
        assert policy.delay(10) == 30

    def test_jitter_band(self):
        low = BackoffPolicy(rng=_FixedRandom(0.0))
        high = BackoffPolicy(rng=_FixedRandom(1.0))
        assert low.delay(2) == pytest.approx(10 * 0.8)
        assert high.delay(2) == pytest.approx(10 * 1.2)

    def test_jitter_never_exceeds_max(self):
        policy = BackoffPolicy(
            defaults=BackoffSettings(base_seconds=100, multiplier=10, jitter=0.5, max_seconds=120),
            rng=_FixedRandom(1.0),
        )
        assert policy.delay(3) == 120

    def test_random_delays_stay_in_band(self):
        policy = BackoffPolicy(rng=random.Random(42))
        for _ in range(200):
            assert 4.0 <= policy.delay(1) <= 6.0


class TestRateLimitDelay:
    def test_retry_after_is_exact(self):
        policy = BackoffPolicy(rng=_FixedRandom(1.0))
        assert policy.rate_limit_delay(30) == 30

    def test_missing_retry_after_uses_first_step(self):
        policy = BackoffPolicy(defaults=BackoffSettings(jitter=0))
        assert policy.rate_limit_delay(None) == 5


class TestAttempts:
    def test_exhaustion(self):
        policy = BackoffPolicy(max_attempts=3)
        assert not policy.exhausted(2)
        assert policy.exhausted(3)

    def test_max_attempts_capped_at_five(self):
        assert BackoffPolicy(max_attempts=9).max_attempts == 5

    def test_zero_attempts_invalid(self):
        with pytest.raises(ValueError):
            BackoffPolicy(max_attempts=0)


class TestProviderOverrides:
    def test_override_applies_to_one_provider(self):
        defaults = BackoffSettings(jitter=0)
        policy = BackoffPolicy(
            defaults=defaults,
            provider_overrides=build_overrides(defaults, {"slack": {"base_seconds": 30, "bogus": 1}}),
        )
        assert policy.delay(1, "slack") == 30
        assert policy.delay(1, "github") == 5
        assert policy.settings_for("slack").multiplier == 2

    def test_from_config(self):
        class Cfg:
            backoff_base_seconds = 2.0
            backoff_multiplier = 3.0
            backoff_jitter = 0.0
            backoff_max_seconds = 100.0
            executor_max_attempts = 4

            def get_backoff_overrides(self):
                return {"jira": {"max_seconds": 10}}

        policy = BackoffPolicy.from_config(Cfg())
        assert policy.max_attempts == 4
        assert policy.delay(3) == 18
        assert policy.delay(3, "jira") == 10
