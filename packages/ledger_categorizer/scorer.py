"""Aggregate categorization signals into ranked category candidates.

Signals are grouped by proposed category. For every group the scorer
computes

- ``total_score``: the sum over signals of ``weight * confidence`` where the
  weight combines the signal type (MCC 4.5, vendor 4.0, keyword 2.5,
  embedding 1.0) with its match strength;
- ``confidence``: :func:`calibration.aggregate_confidence` adjusted by the
  amount heuristics below.

Candidates under a score of 0.5 or a confidence of 0.1 are discarded. Ties on
``total_score`` are resolved by signal-type priority (MCC, exact vendor,
fuzzy vendor, keyword, embedding), then by category slug.

Amount heuristics are soft calibration only (at most +/-0.2). They never veto;
vetoes are the guardrails' job.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence

from .calibration import MAX_CONFIDENCE, aggregate_confidence, signal_weight
from .models import CategorizationSignal, CategoryScore, ScoringResult

_MIN_SCORE = 0.5
_MIN_CONFIDENCE = 0.1
_COMPETING_GAP = 0.2
_MAX_SUPPORTING = 2
_AMOUNT_MODIFIER_LIMIT = 0.2

_SAAS_PRICE_POINTS: tuple[int, ...] = (9, 19, 29, 39, 49, 59, 79, 99, 149, 199, 299)


def signal_priority(signal: CategorizationSignal) -> int:
    """Rank used for tie-breaks; lower wins."""

    if signal.type == "mcc":
        return 0
    if signal.type == "vendor":
        return 1 if signal.strength == "exact" else 2
    if signal.type == "keyword":
        return 3
    return 4


def amount_modifier(amount_cents: int, category_id: str) -> tuple[float, str]:
    """Return ``(modifier, reason)`` for how typical the amount is for a category."""

    dollars = abs(amount_cents) / 100.0
    mod, reason = 0.0, "amount within expected range"

    if category_id == "payment_processing_fees":
        if dollars < 1.0:
            mod, reason = 0.15, "very small amount typical of processing fees"
        elif dollars < 10.0:
            mod, reason = 0.10, "small amount consistent with processing fees"
        elif dollars > 100.0:
            mod, reason = -0.10, "large amount unusual for processing fees"
    elif category_id == "payouts_clearing":
        if dollars > 1000.0:
            mod, reason = 0.12, "large amount typical of payout/settlement"
        elif dollars < 100.0:
            mod, reason = -0.10, "small amount unusual for payouts"
    elif category_id == "refunds_contra":
        if amount_cents > 0 and dollars > 1000.0:
            mod, reason = -0.08, "large positive amount less typical for refunds"
        elif amount_cents > 0:
            mod, reason = 0.05, "money returned to the account"
    elif category_id in ("hair_services", "nail_services", "skin_care_services"):
        if dollars >= 1000.0:
            mod, reason = -0.15, "implausibly large amount for a personal service"
        elif dollars > 300.0:
            mod, reason = -0.05, "large amount for a personal service"
    elif category_id == "meals":
        if dollars > 500.0:
            mod, reason = -0.08, "large amount unusual for a meal"
    elif category_id == "supplies_inventory":
        if dollars > 500.0:
            mod, reason = 0.08, "large amount consistent with wholesale purchase"
        elif dollars < 50.0:
            mod, reason = -0.08, "small amount less typical for supplier purchases"
    elif category_id == "shipping_postage":
        if 5.0 <= dollars <= 200.0:
            mod, reason = 0.08, "amount typical for shipping costs"
        elif dollars > 500.0:
            mod, reason = -0.10, "large amount unusual for individual shipping"
    elif category_id == "marketing_ads":
        if dollars >= 100.0 and dollars % 100 == 0:
            mod, reason = 0.05, "round amount typical of ad spend budgets"
    elif category_id == "software_subscriptions":
        if any(abs(dollars - p) < 0.5 for p in _SAAS_PRICE_POINTS):
            mod, reason = 0.10, "amount matches common SaaS pricing tiers"
    elif category_id == "payroll_contractors":
        if dollars > 500.0 and dollars % 50 == 0:
            mod, reason = 0.08, "large round amount typical of payroll"
    elif category_id == "sales_tax_payable":
        if dollars > 100.0:
            mod, reason = 0.08, "substantial amount typical of tax payments"

    mod = max(-_AMOUNT_MODIFIER_LIMIT, min(_AMOUNT_MODIFIER_LIMIT, mod))
    return mod, reason


def _aggregate(signals: Sequence[CategorizationSignal], amount_cents: int | None) -> CategoryScore:
    first = signals[0]
    total = sum(signal_weight(s) * s.confidence for s in signals)
    conf = aggregate_confidence(signals)
    if amount_cents is not None:
        mod, _ = amount_modifier(amount_cents, first.category_id)
        conf = max(0.0, min(MAX_CONFIDENCE, conf + mod))
    ordered = tuple(sorted(signals, key=lambda s: (-signal_weight(s), signal_priority(s))))
    return CategoryScore(
        category_id=first.category_id,
        category_name=first.category_name,
        total_score=total,
        confidence=conf,
        signals=ordered,
        dominant_signal=ordered[0],
    )


def _rank_key(score: CategoryScore) -> tuple[float, int, str]:
    best_priority = min(signal_priority(s) for s in score.signals)
    return (-round(score.total_score, 9), best_priority, score.category_id)


def score_signals(
    signals: Iterable[CategorizationSignal], *, amount_cents: int | None = None
) -> ScoringResult:
    """Group ``signals`` by category and rank the resulting candidates.

    ``amount_cents`` enables the amount heuristics; pass ``None`` to score the
    signals alone.
    """

    signals = list(signals)
    if not signals:
        return ScoringResult(best=None, candidates=(), rationale=("No categorization signals found",))

    grouped: dict[str, list[CategorizationSignal]] = {}
    for s in signals:
        grouped.setdefault(s.category_id, []).append(s)

    candidates = [
        score
        for score in (_aggregate(group, amount_cents) for group in grouped.values())
        if score.total_score >= _MIN_SCORE and score.confidence >= _MIN_CONFIDENCE
    ]
    candidates.sort(key=_rank_key)

    rationale: list[str] = []
    if not candidates:
        rationale.append("No category met minimum scoring thresholds")
        rationale.append(
            f"signals processed: {len(signals)}, categories considered: {len(grouped)}"
        )
        return ScoringResult(best=None, candidates=(), rationale=tuple(rationale))

    best = candidates[0]
    rationale.append(f"best: {best.category_name} (confidence: {best.confidence:.3f})")
    dom = best.dominant_signal
    rationale.append(f"dominant: {dom.evidence} → {dom.rationale}")
    for s in best.signals[1 : 1 + _MAX_SUPPORTING]:
        rationale.append(f"supporting: {s.evidence} → {s.rationale}")
    if amount_cents is not None:
        mod, reason = amount_modifier(amount_cents, best.category_id)
        if mod:
            rationale.append(f"amount: {reason} ({mod:+.2f})")
    if len(candidates) > 1:
        runner_up = candidates[1]
        gap = best.total_score - runner_up.total_score
        if gap < _COMPETING_GAP:
            rationale.append(f"competing: {runner_up.category_name} (score diff: {gap:.3f})")

    return ScoringResult(best=best, candidates=tuple(candidates), rationale=tuple(rationale))


__all__ = ["amount_modifier", "score_signals", "signal_priority"]
