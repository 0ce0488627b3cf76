"""Runtime configuration for the hybrid engine and the batch jobs.

All settings are frozen dataclasses with documented defaults; callers pass
them explicitly. :func:`load_hybrid_config_from_env` is the only place that
reads the environment.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field

_ENV_PREFIX = "LEDGER_CATEGORIZER_"
DEFAULT_MODEL = "gpt-4.1-mini"


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Bounded exponential backoff for model calls.

    The wait before attempt ``n + 1`` is ``base_delay_sec * multiplier**(n - 1)``
    with +/- ``jitter_pct`` uniform jitter.
    """

    max_attempts: int = 3
    base_delay_sec: float = 0.5
    multiplier: float = 4.0
    jitter_pct: float = 0.20
    timeout_sec: float = 30.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay_sec < 0 or self.multiplier < 1:
            raise ValueError("base_delay_sec must be >= 0 and multiplier >= 1")

    def delay_for(self, attempt: int) -> float:
        """Nominal (jitter-free) wait after failed attempt number ``attempt``."""

        return self.base_delay_sec * self.multiplier ** max(0, attempt - 1)


@dataclass(frozen=True, slots=True)
class HybridConfig:
    hybrid_threshold: float = 0.95
    enable_llm: bool = True
    temperature: float = 0.1
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    concurrency: int = 4
    model: str = DEFAULT_MODEL

    def __post_init__(self) -> None:
        if not 0.0 <= self.hybrid_threshold <= 1.0:
            raise ValueError("hybrid_threshold must be within [0,1]")
        if self.concurrency < 1:
            raise ValueError("concurrency must be a positive integer")


@dataclass(frozen=True, slots=True)
class CanaryConfig:
    sample_size: int = 100
    pass_threshold: float = 0.80
    min_sample: int = 20
    min_age_days: int = 7


@dataclass(frozen=True, slots=True)
class OscillationConfig:
    # Number of most recent corrections inspected for a revisit.
    window: int = 3


@dataclass(frozen=True, slots=True)
class DriftConfig:
    threshold_pct: float = 10.0


def _env(name: str) -> str | None:
    val = os.getenv(_ENV_PREFIX + name)
    if val is None or not val.strip():
        return None
    return val.strip()


def _env_bool(name: str, default: bool) -> bool:
    val = _env(name)
    if val is None:
        return default
    return val.lower() in {"1", "true", "yes", "on"}


def load_hybrid_config_from_env(base: HybridConfig | None = None) -> HybridConfig:
    """Overlay ``LEDGER_CATEGORIZER_*`` environment variables onto ``base``.

    Malformed numbers raise ``ValueError`` naming the variable.
    """

    base = base or HybridConfig()
    threshold = base.hybrid_threshold
    max_attempts = base.retry.max_attempts
    concurrency = base.concurrency
    try:
        if (v := _env("HYBRID_THRESHOLD")) is not None:
            threshold = float(v)
        if (v := _env("MAX_ATTEMPTS")) is not None:
            max_attempts = int(v)
        if (v := _env("CONCURRENCY")) is not None:
            concurrency = int(v)
    except ValueError as e:
        raise ValueError(f"invalid {_ENV_PREFIX}* setting: {e}") from e

    retry = RetryPolicy(
        max_attempts=max_attempts,
        base_delay_sec=base.retry.base_delay_sec,
        multiplier=base.retry.multiplier,
        jitter_pct=base.retry.jitter_pct,
        timeout_sec=base.retry.timeout_sec,
    )
    return HybridConfig(
        hybrid_threshold=threshold,
        enable_llm=_env_bool("ENABLE_LLM", base.enable_llm),
        temperature=base.temperature,
        retry=retry,
        concurrency=concurrency,
        model=_env("MODEL") or base.model,
    )


__all__ = [
    "CanaryConfig",
    "DEFAULT_MODEL",
    "DriftConfig",
    "HybridConfig",
    "OscillationConfig",
    "RetryPolicy",
    "load_hybrid_config_from_env",
]
