"""Guardrails that veto or down-weight implausible category proposals.

Two layers live here.

:func:`apply_guardrails`
    The validation pass run on every proposal (Pass-1 and Pass-2). Checks run
    in a fixed order (MCC compatibility, blocked categories, amount realism,
    suspicious patterns, minimum confidence) and all of them are evaluated,
    so the result lists every violation. Any ``reject`` violation, or any
    violation at all in strict mode, voids the category. ``flag`` violations
    let the category through with its confidence multiplied by 0.8.

:func:`apply_redirect_rules`
    Accounting redirects applied to model proposals before validation:
    refunds never land in revenue, processors never count as revenue, sales
    tax goes to the liability account, processor payouts go to clearing, and
    outbound shipping goes to shipping & postage.

Every function is pure given its inputs and configuration.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass, field

from .calibration import apply_flag_penalty
from .models import CategoryScore, GuardrailResult, GuardrailViolation, Transaction, ViolationAction
from .rules.keywords import contains_term
from .rules.mcc import MCC_MAPPINGS, MccMapping, is_mcc_compatible
from .taxonomy import CategoryType, category_name, category_type

CHECK_MCC = "mcc_compatibility"
CHECK_BLOCKED = "category_blocklist"
CHECK_AMOUNT = "amount_realism"
CHECK_PATTERNS = "suspicious_patterns"
CHECK_CONFIDENCE = "min_confidence"
CONFIDENCE_PENALTY = "confidence_penalty"


@dataclass(frozen=True, slots=True)
class GuardrailConfig:
    """Switches and thresholds for :func:`apply_guardrails`.

    ``amount_limits_cents`` maps a category to the absolute amount (in cents)
    at or above which an assignment is considered unrealistic.
    ``blocked_categories`` lists categories an organization never wants
    assigned automatically.
    """

    enforce_mcc_compatibility: bool = True
    min_confidence_threshold: float = 0.60
    enable_amount_checks: bool = True
    enable_pattern_checks: bool = True
    strict_mode: bool = False
    amount_limits_cents: Mapping[str, int] = field(
        default_factory=lambda: {
            "hair_services": 100_000,
            "nail_services": 100_000,
            "skin_care_services": 100_000,
            "meals": 50_000,
            "bank_fees": 10_000,
            "payment_processing_fees": 50_000,
        }
    )
    blocked_categories: frozenset[str] = frozenset()


DEFAULT_GUARDRAIL_CONFIG = GuardrailConfig()


@dataclass(frozen=True, slots=True)
class _SuspiciousPattern:
    regex: re.Pattern[str]
    reason: str
    action: ViolationAction
    exempt_types: frozenset[CategoryType] = frozenset()


_SUSPICIOUS_PATTERNS: tuple[_SuspiciousPattern, ...] = (
    _SuspiciousPattern(
        re.compile(r"refund|return|credit|reversal", re.IGNORECASE),
        "Refund/return transactions may need special handling",
        "flag",
    ),
    # Transfers belong in clearing accounts, never in P&L categories.
    _SuspiciousPattern(
        re.compile(r"transfer|deposit|withdrawal", re.IGNORECASE),
        "Bank transfer transactions should not be categorized as business expenses",
        "reject",
        frozenset({"clearing"}),
    ),
    _SuspiciousPattern(
        re.compile(r"\b(test|demo|sample)\b", re.IGNORECASE),
        "Test transactions should not be categorized",
        "flag",
    ),
)


# ---- Individual checks -------------------------------------------------------


def _check_mcc(
    tx: Transaction, category_id: str, config: GuardrailConfig, mcc_table: Mapping[str, MccMapping]
) -> GuardrailViolation | None:
    if not config.enforce_mcc_compatibility or not tx.mcc:
        return None
    if is_mcc_compatible(tx.mcc, category_id, mcc_table):
        return None
    expected = mcc_table[tx.mcc.strip()].category_id
    return GuardrailViolation(
        type="mcc_incompatible",
        reason=f"MCC {tx.mcc} ({category_name(expected)}) incompatible with {category_name(category_id)}",
        category_id=category_id,
        action="reject",
        metadata={"mcc": tx.mcc, "expected_category": expected},
    )


def _check_blocked(category_id: str, config: GuardrailConfig) -> GuardrailViolation | None:
    if category_id not in config.blocked_categories:
        return None
    return GuardrailViolation(
        type="category_blacklisted",
        reason=f"{category_name(category_id)} is blocked for automatic assignment",
        category_id=category_id,
        action="reject",
    )


def _check_amount(tx: Transaction, category_id: str, config: GuardrailConfig) -> GuardrailViolation | None:
    if not config.enable_amount_checks:
        return None
    limit = config.amount_limits_cents.get(category_id)
    if limit is None:
        return None
    amount = abs(tx.amount_cents)
    if amount < limit:
        return None
    return GuardrailViolation(
        type="amount_unrealistic",
        reason=(
            f"Amount ${amount / 100:.2f} is at or above ${limit / 100:.2f} "
            f"for {category_name(category_id)}"
        ),
        category_id=category_id,
        action="flag",
        metadata={"amount_cents": amount, "limit_cents": limit},
    )


def _check_patterns(tx: Transaction, category_id: str, config: GuardrailConfig) -> list[GuardrailViolation]:
    if not config.enable_pattern_checks:
        return []
    ctype = category_type(category_id)
    haystacks = (tx.description or "", tx.merchant_name or "")
    found: list[GuardrailViolation] = []
    for sp in _SUSPICIOUS_PATTERNS:
        if ctype is not None and ctype in sp.exempt_types:
            continue
        if any(sp.regex.search(h) for h in haystacks):
            found.append(
                GuardrailViolation(
                    type="suspicious_pattern",
                    reason=sp.reason,
                    category_id=category_id,
                    action=sp.action,
                    metadata={"pattern": sp.regex.pattern},
                )
            )
    return found


def _check_confidence(confidence: float, category_id: str, config: GuardrailConfig) -> GuardrailViolation | None:
    if confidence >= config.min_confidence_threshold:
        return None
    return GuardrailViolation(
        type="confidence_too_low",
        reason=f"Confidence {confidence:.3f} below threshold {config.min_confidence_threshold}",
        category_id=category_id,
        action="reject",
        metadata={"confidence": confidence, "threshold": config.min_confidence_threshold},
    )


# ---- Public API --------------------------------------------------------------


def check_proposal(
    tx: Transaction,
    category_id: str,
    confidence: float,
    config: GuardrailConfig = DEFAULT_GUARDRAIL_CONFIG,
    *,
    mcc_table: Mapping[str, MccMapping] = MCC_MAPPINGS,
) -> GuardrailResult:
    """Validate a bare ``(category_id, confidence)`` proposal for ``tx``."""

    applied = [CHECK_MCC, CHECK_BLOCKED, CHECK_AMOUNT, CHECK_PATTERNS, CHECK_CONFIDENCE]
    violations: list[GuardrailViolation] = []
    for v in (
        _check_mcc(tx, category_id, config, mcc_table),
        _check_blocked(category_id, config),
        _check_amount(tx, category_id, config),
    ):
        if v is not None:
            violations.append(v)
    violations.extend(_check_patterns(tx, category_id, config))
    low = _check_confidence(confidence, category_id, config)
    if low is not None:
        violations.append(low)

    rejected = any(v.action == "reject" for v in violations)
    if rejected or (config.strict_mode and violations):
        return GuardrailResult(
            allowed=False,
            violations=tuple(violations),
            final_category=None,
            final_confidence=None,
            guardrails_applied=tuple(applied),
        )

    final_conf = confidence
    if any(v.action == "flag" for v in violations):
        final_conf = apply_flag_penalty(confidence)
        applied.append(CONFIDENCE_PENALTY)
    return GuardrailResult(
        allowed=True,
        violations=tuple(violations),
        final_category=category_id,
        final_confidence=final_conf,
        guardrails_applied=tuple(applied),
    )


def apply_guardrails(
    tx: Transaction,
    candidate: CategoryScore,
    config: GuardrailConfig = DEFAULT_GUARDRAIL_CONFIG,
    *,
    mcc_table: Mapping[str, MccMapping] = MCC_MAPPINGS,
) -> GuardrailResult:
    """Validate the scorer's top candidate for ``tx``.

    Returns a :class:`GuardrailResult` listing every violation. When
    ``allowed`` is False the category and confidence are both ``None``; the
    proposal is never partially applied.
    """

    return check_proposal(tx, candidate.category_id, candidate.confidence, config, mcc_table=mcc_table)


def violation_summary(result: GuardrailResult) -> list[str]:
    """Human-readable rationale lines for a guardrail result."""

    lines: list[str] = []
    for v in result.violations:
        lines.append(f"guardrail {v.action}: {v.type} ({v.reason})")
    if not result.allowed:
        lines.append("guardrails_rejected: " + ", ".join(sorted({v.type for v in result.violations})))
    elif CONFIDENCE_PENALTY in result.guardrails_applied:
        lines.append("guardrails: confidence penalty applied")
    return lines


# ---- Redirect rules for model proposals --------------------------------------

_REFUND_TERMS = (
    "refund", "return", "chargeback", "reversal", "void", "cancelled", "dispute", "adjustment", "credit",
)
_REVENUE_PROCESSORS = (
    "stripe", "paypal", "square", "shopify payments", "shop pay", "afterpay", "affirm",
    "klarna", "sezzle", "adyen", "braintree",
)
_PAYOUT_PROCESSORS = ("shopify", "stripe", "paypal", "square", "amazon payments")
_PAYOUT_TERMS = ("payout", "transfer", "deposit", "settlement", "disbursement")
_SALES_TAX_TERMS = (
    "sales tax", "state tax", "local tax", "use tax", "revenue department", "tax authority",
    "comptroller", "department of revenue", "tax commission",
)
_TAX_AUTHORITIES = ("state of", "city of", "county of", "department of revenue", "tax collector", "revenue service")
_OUTBOUND_CARRIERS = ("usps", "ups", "fedex", "dhl", "postal service")
_OUTBOUND_TERMS = ("shipping label", "postage", "freight to")

PROCESSOR_MERCHANTS: tuple[str, ...] = tuple(dict.fromkeys(_REVENUE_PROCESSORS + _PAYOUT_PROCESSORS))


@dataclass(frozen=True, slots=True)
class RedirectResult:
    category_id: str
    confidence: float
    applied: tuple[str, ...]
    reasons: tuple[str, ...]

    @property
    def redirected(self) -> bool:
        return bool(self.applied)


def _has_any(text: str, terms: tuple[str, ...]) -> bool:
    return any(t in text for t in terms)


def is_processor_merchant(tx: Transaction) -> bool:
    merchant = (tx.merchant_name or "").lower()
    return bool(merchant) and _has_any(merchant, PROCESSOR_MERCHANTS)


def apply_redirect_rules(tx: Transaction, category_id: str, confidence: float) -> RedirectResult:
    """Apply accounting redirects to a model proposal.

    Each rule subtracts its penalty from the confidence when it redirects;
    rules run in order (payout, revenue, shipping, sales tax) and each sees
    the category produced by the previous one. A payout redirect takes
    precedence over the revenue processor rule.
    """

    desc = (tx.description or "").lower()
    merchant = (tx.merchant_name or "").lower()
    both = f"{desc} {merchant}"
    cat, conf = category_id, confidence
    applied: list[str] = []
    reasons: list[str] = []

    def _redirect(name: str, target: str, penalty: float, reason: str) -> None:
        nonlocal cat, conf
        cat = target
        conf = max(0.0, conf - penalty)
        applied.append(name)
        reasons.append(reason)

    if _has_any(merchant, _PAYOUT_PROCESSORS) and _has_any(desc, _PAYOUT_TERMS) and cat != "payouts_clearing":
        _redirect(
            "payout_redirect", "payouts_clearing", 0.1, "Payment processor payouts should map to clearing account"
        )

    if category_type(cat) == "revenue":
        is_refund = _has_any(both, _REFUND_TERMS) or tx.amount_cents < 0
        if is_refund and cat != "refunds_contra":
            _redirect("revenue_block", "refunds_contra", 0.4, "Refund/return cannot map to positive revenue")
        elif _has_any(both, _REVENUE_PROCESSORS):
            _redirect(
                "revenue_block", "payment_processing_fees", 0.3, "Payment processor cannot map to revenue"
            )

    outbound = any(contains_term(merchant, c) for c in _OUTBOUND_CARRIERS) or _has_any(desc, _OUTBOUND_TERMS)
    if outbound and tx.amount_cents < 0 and cat != "shipping_postage":
        _redirect(
            "shipping_direction_redirect",
            "shipping_postage",
            0.2,
            "Outbound shipping should map to shipping & postage",
        )

    if (_has_any(both, _SALES_TAX_TERMS) or _has_any(merchant, _TAX_AUTHORITIES)) and cat != "sales_tax_payable":
        _redirect("sales_tax_redirect", "sales_tax_payable", 0.2, "Sales tax payment should map to liability account")

    return RedirectResult(cat, min(1.0, conf), tuple(applied), tuple(reasons))


__all__ = [
    "DEFAULT_GUARDRAIL_CONFIG",
    "GuardrailConfig",
    "PROCESSOR_MERCHANTS",
    "RedirectResult",
    "apply_guardrails",
    "apply_redirect_rules",
    "check_proposal",
    "is_processor_merchant",
    "violation_summary",
]
