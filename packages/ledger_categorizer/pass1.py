"""Pass-1: the deterministic, rule-only categorizer.

``extract -> score -> guardrails -> calibrate``. No network access; the only
side effects are logging and the optional observer callback.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from typing import Any

from .calibration import calibrate
from .guardrails import DEFAULT_GUARDRAIL_CONFIG, GuardrailConfig, apply_guardrails, violation_summary
from .logging_setup import get_logger
from .models import CategorizationSignal, Pass1Result, Transaction
from .rules.keywords import extract_keyword_signal
from .rules.mcc import extract_mcc_signal
from .rules.ruleset import DEFAULT_RULESET, RuleSet
from .rules.vendors import extract_vendor_signal
from .scorer import score_signals

type Observer = Callable[[str, Mapping[str, Any]], None]

logger = get_logger(__name__)


def extract_signals(tx: Transaction, ruleset: RuleSet = DEFAULT_RULESET) -> list[CategorizationSignal]:
    """Run the three extractors; missing inputs just mean fewer signals."""

    signals: list[CategorizationSignal] = []
    for sig in (
        extract_mcc_signal(tx, ruleset.mcc),
        extract_vendor_signal(tx, ruleset.vendors),
        extract_keyword_signal(tx, ruleset.keywords),
    ):
        if sig is not None:
            signals.append(sig)
    return signals


def _notify(observer: Observer | None, event: str, payload: Mapping[str, Any]) -> None:
    if observer is None:
        return
    try:
        observer(event, payload)
    except Exception as e:  # noqa: BLE001
        logger.warning("pass1:observer_failed event=%s error=%s", event, e)


def categorize_pass1(
    tx: Transaction,
    *,
    ruleset: RuleSet = DEFAULT_RULESET,
    config: GuardrailConfig = DEFAULT_GUARDRAIL_CONFIG,
    observer: Observer | None = None,
) -> Pass1Result:
    """Categorize ``tx`` with rules only.

    Returns a :class:`Pass1Result` whose ``category_id``/``confidence`` are
    ``None`` when no signal survived scoring or when the guardrails rejected
    the top candidate. ``rationale`` lists one line per contributing signal
    followed by guardrail notes.
    """

    signals = extract_signals(tx, ruleset)
    scoring = score_signals(signals, amount_cents=tx.amount_cents)
    rationale = list(scoring.rationale)

    if scoring.best is None:
        result = Pass1Result(
            category_id=None,
            confidence=None,
            rationale=tuple(rationale),
            signals=tuple(signals),
            guardrails_applied=(),
        )
        _notify(observer, "pass1_no_candidate", {"tx_id": tx.id, "signal_count": len(signals)})
        return result

    gr = apply_guardrails(tx, scoring.best, config, mcc_table=ruleset.mcc)
    rationale.extend(violation_summary(gr))

    confidence: float | None = None
    if gr.allowed and gr.final_confidence is not None:
        confidence = calibrate(gr.final_confidence, len(signals))

    result = Pass1Result(
        category_id=gr.final_category if gr.allowed else None,
        confidence=confidence,
        rationale=tuple(rationale),
        signals=tuple(signals),
        guardrails_applied=gr.guardrails_applied,
        violations=gr.violations,
        candidates=scoring.candidates,
    )
    logger.debug(
        "pass1:done tx_id=%s category=%s confidence=%s signals=%d violations=%d",
        tx.id,
        result.category_id,
        None if confidence is None else f"{confidence:.3f}",
        len(signals),
        len(gr.violations),
    )
    _notify(
        observer,
        "pass1_categorized" if gr.allowed else "pass1_rejected",
        {
            "tx_id": tx.id,
            "category_id": result.category_id,
            "confidence": confidence,
            "violations": [v.type for v in gr.violations],
        },
    )
    return result


__all__ = ["Observer", "categorize_pass1", "extract_signals"]
