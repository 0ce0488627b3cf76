"""Vendor pattern table and matcher.

Patterns are matched against the normalized merchant name (falling back to
the description when a transaction has no merchant). When several patterns
match, the highest ``priority`` wins; ties keep the earlier table entry.

Ambiguous processors (Stripe, PayPal, Shopify, Square) are deliberately
absent: the same merchant produces fees, payouts and subscriptions, which the
keyword rules and the Pass-2 redirect guardrails disambiguate.

``regex`` patterns are admitted only after the offline validator has checked
them for catastrophic backtracking (see ``validator.py``).
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Literal

from ..calibration import signal_confidence
from ..models import CategorizationSignal, Transaction
from ..taxonomy import category_name

type VendorMatchType = Literal["exact", "prefix", "suffix", "contains", "regex"]

_CORPORATE_SUFFIXES: tuple[str, ...] = ("llc", "inc", "corp", "ltd", "co", "company")
_SUFFIX_RE = re.compile(r"\b(" + "|".join(_CORPORATE_SUFFIXES) + r")\b")
_MIN_VENDOR_NAME_LENGTH = 4


@dataclass(frozen=True, slots=True)
class VendorPattern:
    pattern: str
    match_type: VendorMatchType
    category_id: str
    confidence: float
    priority: int


def _v(pattern: str, match_type: VendorMatchType, category_id: str, conf: float, prio: int) -> VendorPattern:
    return VendorPattern(pattern, match_type, category_id, conf, prio)


VENDOR_PATTERNS: tuple[VendorPattern, ...] = (
    # Software
    _v("adobe", "contains", "software_subscriptions", 0.92, 95),
    _v("microsoft", "contains", "software_subscriptions", 0.92, 95),
    _v("canva", "exact", "software_subscriptions", 0.95, 95),
    _v("squarespace", "exact", "software_subscriptions", 0.95, 100),
    _v("wix", "exact", "software_subscriptions", 0.95, 100),
    _v("zoom", "prefix", "software_subscriptions", 0.92, 90),
    _v("slack", "exact", "software_subscriptions", 0.92, 90),
    _v("klaviyo", "exact", "software_subscriptions", 0.92, 90),
    _v("mailchimp", "exact", "software_subscriptions", 0.92, 90),
    _v("quickbooks", "contains", "software_subscriptions", 0.90, 90),
    # Marketing
    _v("facebook ads", "contains", "marketing_ads", 0.95, 95),
    _v("meta for business", "contains", "marketing_ads", 0.95, 95),
    _v("google ads", "contains", "marketing_ads", 0.95, 95),
    _v("tiktok ads", "contains", "marketing_ads", 0.95, 95),
    _v("pinterest ads", "contains", "marketing_ads", 0.90, 90),
    # Shipping
    _v("usps", "contains", "shipping_postage", 0.95, 95),
    _v("fedex", "contains", "shipping_postage", 0.95, 95),
    _v(r"\bups\b", "regex", "shipping_postage", 0.90, 95),
    _v("dhl", "contains", "shipping_postage", 0.95, 95),
    _v("shipbob", "contains", "shipping_postage", 0.90, 90),
    # Payroll
    _v("gusto", "exact", "payroll_contractors", 0.95, 95),
    _v("rippling", "exact", "payroll_contractors", 0.95, 95),
    # Office
    _v("staples", "contains", "office_admin", 0.85, 75),
    _v("office depot", "contains", "office_admin", 0.85, 75),
    # Insurance
    _v("state farm", "contains", "insurance", 0.90, 90),
    _v("allstate", "contains", "insurance", 0.90, 90),
    _v("geico", "contains", "insurance", 0.90, 90),
    # Meals
    _v("starbucks", "contains", "meals", 0.92, 80),
    _v("dunkin", "contains", "meals", 0.90, 80),
    _v("chipotle", "contains", "meals", 0.90, 80),
    # Fuel
    _v("shell", "prefix", "vehicle_travel", 0.85, 75),
    _v("chevron", "contains", "vehicle_travel", 0.88, 75),
    _v("exxon", "contains", "vehicle_travel", 0.88, 75),
    # Beauty supply
    _v("sally beauty", "contains", "supplies_inventory", 0.90, 85),
    _v("salon centric", "contains", "supplies_inventory", 0.90, 85),
)


def _strip_corporate_suffixes(normalized: str) -> str:
    without = re.sub(r"\s+", " ", _SUFFIX_RE.sub("", normalized)).strip()
    # Keep the suffix when dropping it leaves an ambiguous stub ("at t corp").
    if len(without) <= _MIN_VENDOR_NAME_LENGTH and len(normalized) > len(without):
        return normalized
    return without


def normalize_vendor_name(vendor: str) -> str:
    """Lowercase, drop punctuation, collapse spaces and corporate suffixes."""

    normalized = re.sub(r"[^\w\s]", " ", vendor.strip().lower())
    normalized = re.sub(r"\s+", " ", normalized).strip()
    return _strip_corporate_suffixes(normalized)


@lru_cache(maxsize=512)
def _compiled(pattern: str) -> re.Pattern[str] | None:
    try:
        return re.compile(pattern, re.IGNORECASE)
    except re.error:
        return None


def pattern_matches(pattern: VendorPattern, normalized_name: str) -> bool:
    if pattern.match_type == "regex":
        rx = _compiled(pattern.pattern)
        return bool(rx and rx.search(normalized_name))
    target = normalize_vendor_name(pattern.pattern)
    if not target:
        return False
    if pattern.match_type == "exact":
        return normalized_name == target
    if pattern.match_type == "prefix":
        return normalized_name.startswith(target)
    if pattern.match_type == "suffix":
        return normalized_name.endswith(target)
    return target in normalized_name


def match_vendor_pattern(
    vendor_name: str, patterns: tuple[VendorPattern, ...] = VENDOR_PATTERNS
) -> VendorPattern | None:
    """Return the highest-priority pattern matching ``vendor_name``."""

    normalized = normalize_vendor_name(vendor_name)
    if not normalized:
        return None
    best: VendorPattern | None = None
    for pattern in patterns:
        if pattern_matches(pattern, normalized) and (best is None or pattern.priority > best.priority):
            best = pattern
    return best


def extract_vendor_signal(
    tx: Transaction, patterns: tuple[VendorPattern, ...] = VENDOR_PATTERNS
) -> CategorizationSignal | None:
    subject = tx.merchant_name or tx.description
    if not subject:
        return None
    match = match_vendor_pattern(subject, patterns)
    if match is None:
        return None
    strength = "exact" if match.match_type == "exact" else "strong"
    return CategorizationSignal(
        type="vendor",
        category_id=match.category_id,
        category_name=category_name(match.category_id),
        strength=strength,
        confidence=signal_confidence(match.confidence, strength),
        evidence=f"vendor:{match.pattern}",
        rationale=f"'{subject}' matched vendor pattern '{match.pattern}' ({match.match_type})",
    )


__all__ = [
    "VENDOR_PATTERNS",
    "VendorMatchType",
    "VendorPattern",
    "extract_vendor_signal",
    "match_vendor_pattern",
    "normalize_vendor_name",
    "pattern_matches",
]
