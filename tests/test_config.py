from __future__ import annotations

import pytest
from ledger_categorizer.config import DEFAULT_MODEL, HybridConfig, RetryPolicy, load_hybrid_config_from_env


def test_defaults() -> None:
    cfg = load_hybrid_config_from_env()
    assert cfg == HybridConfig()
    assert cfg.hybrid_threshold == 0.95
    assert cfg.retry.max_attempts == 3
    assert cfg.model == DEFAULT_MODEL


def test_env_overlay(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("LEDGER_CATEGORIZER_HYBRID_THRESHOLD", "0.9")
    monkeypatch.setenv("LEDGER_CATEGORIZER_MAX_ATTEMPTS", "5")
    monkeypatch.setenv("LEDGER_CATEGORIZER_CONCURRENCY", " 8 ")
    monkeypatch.setenv("LEDGER_CATEGORIZER_ENABLE_LLM", "off")
    monkeypatch.setenv("LEDGER_CATEGORIZER_MODEL", "gpt-4o-mini")

    cfg = load_hybrid_config_from_env(HybridConfig(temperature=0.0))

    assert cfg.hybrid_threshold == 0.9
    assert cfg.retry.max_attempts == 5
    assert cfg.concurrency == 8
    assert cfg.enable_llm is False
    assert cfg.model == "gpt-4o-mini"
    assert cfg.temperature == 0.0


def test_blank_values_keep_the_base(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("LEDGER_CATEGORIZER_HYBRID_THRESHOLD", "  ")
    monkeypatch.setenv("LEDGER_CATEGORIZER_ENABLE_LLM", "")
    cfg = load_hybrid_config_from_env()
    assert cfg.hybrid_threshold == 0.95
    assert cfg.enable_llm is True


@pytest.mark.parametrize(
    ("name", "value"),
    [
        ("LEDGER_CATEGORIZER_HYBRID_THRESHOLD", "high"),
        ("LEDGER_CATEGORIZER_HYBRID_THRESHOLD", "1.5"),
        ("LEDGER_CATEGORIZER_MAX_ATTEMPTS", "2.5"),
        ("LEDGER_CATEGORIZER_MAX_ATTEMPTS", "0"),
        ("LEDGER_CATEGORIZER_CONCURRENCY", "0"),
    ],
)
def test_invalid_values(monkeypatch: pytest.MonkeyPatch, name: str, value: str) -> None:
    monkeypatch.setenv(name, value)
    with pytest.raises(ValueError):
        load_hybrid_config_from_env()


def test_retry_delays() -> None:
    policy = RetryPolicy()
    assert [policy.delay_for(n) for n in (1, 2, 3)] == [0.5, 2.0, 8.0]
    with pytest.raises(ValueError):
        RetryPolicy(max_attempts=0)
    with pytest.raises(ValueError):
        RetryPolicy(multiplier=0.5)
