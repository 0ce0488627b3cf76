"""Keyword rules scored against the transaction description.

Each rule owns a keyword list scoped to one business domain. A rule matches
when at least one keyword occurs as a whole word (or phrase) in the
description and none of its ``exclude`` terms do. Among matching rules the
one with the highest ``weight * matched_count`` wins, and its confidence is

    rule.confidence + min(0.2, 0.05 * matched) - penalties

capped at 0.95, where penalties come from generic terms ("payment", "com",
...) present in the description but not part of a matched keyword.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from functools import lru_cache

from ..calibration import signal_confidence
from ..models import CategorizationSignal, Transaction
from ..taxonomy import category_name

_KEYWORD_BONUS_STEP = 0.05
_KEYWORD_BONUS_CAP = 0.2
_KEYWORD_CONFIDENCE_CAP = 0.95


@dataclass(frozen=True, slots=True)
class KeywordRule:
    keywords: tuple[str, ...]
    category_id: str
    confidence: float
    weight: int
    domain: str
    exclude: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class KeywordMatch:
    rule: KeywordRule
    matched: tuple[str, ...]
    penalized: tuple[str, ...]
    confidence: float

    @property
    def score(self) -> int:
        return self.rule.weight * len(self.matched)


def _split(terms: str) -> tuple[str, ...]:
    return tuple(p.strip() for p in terms.split("|") if p.strip())


def _k(keywords: str, category_id: str, conf: float, weight: int, domain: str, exclude: str = "") -> KeywordRule:
    return KeywordRule(_split(keywords), category_id, conf, weight, domain, _split(exclude))


KEYWORD_RULES: tuple[KeywordRule, ...] = (
    _k(
        "processing fee|transaction fee|payment fee|merchant fee|card fee",
        "payment_processing_fees", 0.90, 5, "payment_processing", "payout|deposit|transfer",
    ),
    _k("chargeback fee|dispute fee", "payment_processing_fees", 0.92, 5, "payment_processing"),
    _k("payout|settlement|disbursement", "payouts_clearing", 0.88, 5, "clearing", "fee|charge"),
    _k("refund|return|reversal|void", "refunds_contra", 0.92, 6, "revenue_contra"),
    _k(
        "wholesale|supplier invoice|purchase order|po#|net 30|net 60",
        "supplies_inventory", 0.90, 6, "inventory", "refund|credit",
    ),
    _k(
        "inventory purchase|product cost|merchandise|beauty supply|salon supplies",
        "supplies_inventory", 0.85, 5, "inventory",
    ),
    _k(
        "packaging|boxes|mailers|poly bags|bubble wrap|packing tape",
        "packaging", 0.92, 6, "packaging",
    ),
    _k(
        "postage|shipping label|freight|delivery charge|priority mail|ground shipping",
        "shipping_postage", 0.90, 5, "shipping",
    ),
    _k(
        "advertising|ad spend|campaign|sponsored|promotion|influencer",
        "marketing_ads", 0.88, 5, "marketing",
    ),
    _k(
        "subscription|saas|monthly plan|annual plan|license fee|hosting|domain renewal",
        "software_subscriptions", 0.85, 4, "software",
    ),
    _k("payroll|wages|salary|contractor|freelance", "payroll_contractors", 0.92, 6, "labor"),
    _k("rent|lease|office space|co-working|booth rental", "rent_utilities", 0.90, 5, "facilities", "car|vehicle"),
    _k(
        "electric|electricity|gas|water|utilities|internet|phone",
        "rent_utilities", 0.88, 5, "facilities", "gasoline|fuel|gas station",
    ),
    _k("insurance|liability coverage|premium|policy", "insurance", 0.92, 5, "insurance"),
    _k(
        "accountant|bookkeeping|lawyer|attorney|legal fees|consulting",
        "professional_services", 0.90, 5, "professional",
    ),
    _k("bank fee|overdraft|wire fee|atm fee|monthly service charge|bank", "bank_fees", 0.85, 3, "banking"),
    _k("restaurant|cafe|coffee|lunch|dinner|catering", "meals", 0.80, 4, "meals"),
    _k("parking|toll|airline|hotel|gasoline|fuel|rideshare", "vehicle_travel", 0.85, 4, "travel"),
    _k("haircut|hair salon|blowout|color treatment", "hair_services", 0.85, 5, "salon"),
    _k("sales tax|state tax|tax payment", "sales_tax_payable", 0.90, 5, "tax"),
)

KEYWORD_PENALTIES: dict[str, float] = {
    "com": 0.10,
    "inc": 0.05,
    "llc": 0.05,
    "bill": 0.15,
    "fee": 0.05,
    "payment": 0.10,
    "purchase": 0.10,
    "transaction": 0.15,
}


@lru_cache(maxsize=1024)
def _term_re(term: str) -> re.Pattern[str]:
    return re.compile(r"(?<!\w)" + re.escape(term.lower()) + r"(?!\w)")


def contains_term(text: str, term: str) -> bool:
    return _term_re(term).search(text) is not None


def match_keyword_rules(
    description: str, rules: tuple[KeywordRule, ...] = KEYWORD_RULES
) -> list[KeywordMatch]:
    """Every rule that matches ``description``, with its adjusted confidence."""

    text = (description or "").lower().strip()
    if not text:
        return []
    matches: list[KeywordMatch] = []
    for rule in rules:
        matched = tuple(kw for kw in rule.keywords if contains_term(text, kw))
        if not matched:
            continue
        if any(contains_term(text, ex) for ex in rule.exclude):
            continue
        penalized = tuple(
            term
            for term in KEYWORD_PENALTIES
            if contains_term(text, term) and not any(contains_term(kw, term) for kw in matched)
        )
        bonus = min(_KEYWORD_BONUS_CAP, len(matched) * _KEYWORD_BONUS_STEP)
        deduction = sum(KEYWORD_PENALTIES[t] for t in penalized)
        conf = min(_KEYWORD_CONFIDENCE_CAP, max(0.0, rule.confidence + bonus - deduction))
        matches.append(KeywordMatch(rule, matched, penalized, conf))
    return matches


def best_keyword_match(
    description: str, rules: tuple[KeywordRule, ...] = KEYWORD_RULES
) -> KeywordMatch | None:
    best: KeywordMatch | None = None
    for match in match_keyword_rules(description, rules):
        if best is None or match.score > best.score:
            best = match
    return best


def extract_keyword_signal(
    tx: Transaction, rules: tuple[KeywordRule, ...] = KEYWORD_RULES
) -> CategorizationSignal | None:
    match = best_keyword_match(tx.description, rules)
    if match is None or match.confidence <= 0:
        return None
    name = category_name(match.rule.category_id)
    rationale = f"keywords: [{', '.join(match.matched)}] → {name}"
    if match.penalized:
        rationale += f"; penalties: [{', '.join(match.penalized)}]"
    return CategorizationSignal(
        type="keyword",
        category_id=match.rule.category_id,
        category_name=name,
        strength="medium",
        confidence=signal_confidence(match.confidence, "medium"),
        evidence="keywords",
        rationale=rationale,
        matched_terms=match.matched,
    )


def rules_for_domain(domain: str, rules: tuple[KeywordRule, ...] = KEYWORD_RULES) -> list[KeywordRule]:
    return [r for r in rules if r.domain == domain]


__all__ = [
    "KEYWORD_PENALTIES",
    "KEYWORD_RULES",
    "KeywordMatch",
    "KeywordRule",
    "best_keyword_match",
    "contains_term",
    "extract_keyword_signal",
    "match_keyword_rules",
    "rules_for_domain",
]
