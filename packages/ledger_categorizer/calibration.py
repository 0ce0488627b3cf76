"""Confidence arithmetic shared by the scorer, guardrails and Pass-2.

Every number that turns "how sure is this rule" into "how sure is the
engine" goes through this module, so the curves can be tested in isolation:

- :func:`signal_confidence` scales a rule's base confidence by match strength.
- :func:`aggregate_confidence` blends several signals for one category.
- :func:`calibrate` maps an internal score to the reported confidence, for
  both deterministic (rules) and generative (model) sources.
- :func:`apply_flag_penalty` is the guardrail down-weighting for flagged
  proposals.

Notes
-----
All functions are pure and clamp their outputs; none of them raise for
out-of-range input.
"""

from __future__ import annotations

import math
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Literal

from .models import CategorizationSignal, MatchStrength, SignalType

# ---- Tunables ---------------------------------------------------------------

MAX_CONFIDENCE: float = 0.98

STRENGTH_MODIFIERS: dict[MatchStrength, float] = {
    "exact": 1.0,
    "strong": 0.9,
    "medium": 0.75,
    "weak": 0.6,
}

SIGNAL_WEIGHTS: dict[SignalType, float] = {
    "mcc": 4.5,
    "vendor": 4.0,
    "keyword": 2.5,
    "embedding": 1.0,
}

FLAG_PENALTY: float = 0.8
_FLAG_FLOOR: float = 0.1

# Compound bonuses for independent signal types agreeing on a category.
_PAIR_BONUSES: tuple[tuple[frozenset[str], float], ...] = (
    (frozenset({"mcc", "vendor"}), 0.12),
    (frozenset({"vendor", "keyword"}), 0.10),
    (frozenset({"mcc", "keyword"}), 0.08),
)
_DIVERSITY_BONUS: float = 0.05
_COUNT_BONUS_STEP: float = 0.05
_COUNT_BONUS_CAP: float = 0.15
_SINGLE_WEAK_FACTOR: float = 0.85

# Rules calibration: scores at or above this band are already trustworthy and
# only receive a small agreement lift.
_HIGH_BAND: float = 0.85

# Model calibration
_LLM_TEMPERATURE: float = 2.5
_LLM_BETA_NORMALIZATION: float = 6.0
_LLM_BLEND: float = 0.7
_LLM_PASS1_BOOST: float = 0.08
_LLM_FLOOR: float = 0.25
_LLM_CEILING: float = 0.95


@dataclass(frozen=True, slots=True)
class AgreementFlags:
    """Context for :func:`calibrate`.

    Attributes
    ----------
    source:
        ``"rules"`` for Pass-1 scores, ``"model"`` for generative answers.
    pass1_strong:
        Model path only: Pass-1 produced a confident proposal.
    pass1_agrees:
        Model path only: the model picked the same category as Pass-1.
    """

    source: Literal["rules", "model"] = "rules"
    pass1_strong: bool = False
    pass1_agrees: bool = False


def _clamp(value: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, value))


def signal_confidence(base_confidence: float, strength: MatchStrength) -> float:
    """Scale a rule's base confidence by its match strength (capped)."""

    return min(MAX_CONFIDENCE, base_confidence * STRENGTH_MODIFIERS[strength])


def signal_weight(signal: CategorizationSignal) -> float:
    return SIGNAL_WEIGHTS[signal.type] * STRENGTH_MODIFIERS[signal.strength]


def compound_bonus(signal_types: set[str]) -> float:
    bonus = 0.0
    for pair, value in _PAIR_BONUSES:
        if pair <= signal_types:
            bonus = value
            break
    if len(signal_types) >= 3:
        bonus += _DIVERSITY_BONUS
    return bonus


def aggregate_confidence(signals: Sequence[CategorizationSignal]) -> float:
    """Blend the signals proposing one category into a single confidence.

    ``0.7 * strongest + 0.3 * weight-normalized mean`` plus a bonus for
    independent signal types agreeing and a small bonus per extra signal. A
    lone weak signal is discounted.
    """

    if not signals:
        return 0.0
    total_weight = sum(SIGNAL_WEIGHTS[s.type] for s in signals)
    normalized = sum(s.confidence * SIGNAL_WEIGHTS[s.type] for s in signals) / total_weight
    strongest = max(s.confidence for s in signals)
    types = {s.type for s in signals}
    count_bonus = min(_COUNT_BONUS_CAP, (len(signals) - 1) * _COUNT_BONUS_STEP)
    conf = 0.7 * strongest + 0.3 * normalized + compound_bonus(types) + count_bonus
    if len(signals) == 1 and signals[0].strength == "weak":
        conf *= _SINGLE_WEAK_FACTOR
    return min(MAX_CONFIDENCE, conf)


def _calibrate_rules(internal: float, signal_count: int) -> float:
    if internal <= 0:
        return 0.0 if signal_count == 0 else 0.05
    if internal >= MAX_CONFIDENCE:
        return MAX_CONFIDENCE
    support = math.log(signal_count + 1)
    if internal >= _HIGH_BAND:
        return min(MAX_CONFIDENCE, internal + min(0.03, support * 0.02))
    x = (internal - 0.45) * 6
    sig = 1.0 / (1.0 + math.exp(-x))
    return _clamp(0.1 + sig * 0.75 + min(0.1, support * 0.05), 0.05, MAX_CONFIDENCE)


def _calibrate_model(raw: float, flags: AgreementFlags) -> float:
    if raw <= 0:
        return 0.05
    if raw >= 1.0:
        return _LLM_CEILING
    eps = 1e-10
    logit = math.log((raw + eps) / (1 - raw + eps))
    base = 1.0 / (1.0 + math.exp(-logit / _LLM_TEMPERATURE))
    # Beta(2, 2) shape pulls extreme values toward the middle.
    beta = base * (base * (1 - base) * _LLM_BETA_NORMALIZATION)
    boost = _LLM_PASS1_BOOST if flags.pass1_strong and flags.pass1_agrees else 0.0
    blended = base * _LLM_BLEND + beta * (1 - _LLM_BLEND) + boost
    return _clamp(blended, _LLM_FLOOR, _LLM_CEILING)


def calibrate(
    raw_confidence: float,
    signal_count: int = 1,
    flags: AgreementFlags | None = None,
) -> float:
    """Map an internal confidence to the reported, calibrated confidence.

    Parameters
    ----------
    raw_confidence:
        Aggregated rule confidence or the model's self-reported confidence.
    signal_count:
        Number of signals behind a rules score; more agreeing signals earn a
        small logarithmic lift. Ignored for the model path.
    flags:
        Selects the rules or model curve and carries Pass-1 agreement.

    Notes
    -----
    Rules path: scores at or above 0.85 are kept (plus at most 0.03), lower
    scores go through a sigmoid that spreads the mid range; the result lies in
    ``[0.05, 0.98]`` (or 0.0 with no signals). Model path: temperature scaling
    and a Beta(2, 2) adjustment, clamped to ``[0.25, 0.95]``.
    """

    flags = flags or AgreementFlags()
    if flags.source == "model":
        return _calibrate_model(raw_confidence, flags)
    return _calibrate_rules(raw_confidence, signal_count)


def apply_flag_penalty(confidence: float) -> float:
    """Down-weight a flagged proposal, never below 0.1."""

    return max(_FLAG_FLOOR, confidence * FLAG_PENALTY)


__all__ = [
    "AgreementFlags",
    "FLAG_PENALTY",
    "MAX_CONFIDENCE",
    "SIGNAL_WEIGHTS",
    "STRENGTH_MODIFIERS",
    "aggregate_confidence",
    "apply_flag_penalty",
    "calibrate",
    "compound_bonus",
    "signal_confidence",
    "signal_weight",
]
