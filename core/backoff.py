"""
Retry / backoff policy shared by the sync executor.

Upstream failures back off exponentially (``base * multiplier ** (n-1)``,
capped) with symmetric jitter; rate limits honour the provider's
``retry_after`` hint and never schedule earlier than it.
"""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Mapping, Optional

logger = logging.getLogger(__name__)

MAX_ATTEMPTS_CAP = 5


@dataclass(frozen=True)
class BackoffSettings:
    base_seconds: float = 5.0
    multiplier: float = 2.0
    jitter: float = 0.2          # ±20%
    max_seconds: float = 900.0


@dataclass
class BackoffPolicy:
    defaults: BackoffSettings = field(default_factory=BackoffSettings)
    max_attempts: int = 3
    provider_overrides: Dict[str, BackoffSettings] = field(default_factory=dict)
    rng: random.Random = field(default_factory=random.Random)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.max_attempts = min(self.max_attempts, MAX_ATTEMPTS_CAP)

    @classmethod
    def from_config(cls, cfg, rng: Optional[random.Random] = None) -> "BackoffPolicy":
        defaults = BackoffSettings(
            base_seconds=cfg.backoff_base_seconds,
            multiplier=cfg.backoff_multiplier,
            jitter=cfg.backoff_jitter,
            max_seconds=cfg.backoff_max_seconds,
        )
        return cls(
            defaults=defaults,
            max_attempts=cfg.executor_max_attempts,
            provider_overrides=build_overrides(defaults, cfg.get_backoff_overrides()),
            rng=rng or random.Random(),
        )

    def settings_for(self, provider: Optional[str]) -> BackoffSettings:
        return self.provider_overrides.get(provider or "", self.defaults)

    def delay(self, attempt: int, provider: Optional[str] = None) -> float:
        """
        Seconds to wait before retry number ``attempt`` (1-based).

        ``attempt=1`` waits roughly ``base``; each further attempt multiplies
        by ``multiplier`` until ``max_seconds``.
        """
        s = self.settings_for(provider)
        raw = s.base_seconds * (s.multiplier ** max(0, attempt - 1))
        capped = min(raw, s.max_seconds)
        factor = 1.0 + self.rng.uniform(-s.jitter, s.jitter)
        return max(0.0, min(capped * factor, s.max_seconds))

    def rate_limit_delay(self, retry_after: Optional[float], provider: Optional[str] = None) -> float:
        """Exactly ``retry_after`` when the provider gave one; otherwise the first backoff step."""
        if retry_after is not None and retry_after >= 0:
            return float(retry_after)
        return self.delay(1, provider)

    def exhausted(self, attempt_count: int) -> bool:
        return attempt_count >= self.max_attempts


def build_overrides(defaults: BackoffSettings, raw: Mapping[str, Mapping[str, Any]]) -> Dict[str, BackoffSettings]:
    """Merge per-provider knob dicts onto the defaults, ignoring unknown keys."""
    known = set(BackoffSettings.__dataclass_fields__)
    overrides: Dict[str, BackoffSettings] = {}
    for provider, knobs in raw.items():
        unknown = set(knobs) - known
        if unknown:
            logger.warning("Ignoring unknown backoff keys for %s: %s", provider, sorted(unknown))
        overrides[provider] = replace(defaults, **{k: float(v) for k, v in knobs.items() if k in known})
    return overrides
