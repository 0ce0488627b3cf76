"""Immutable bundle of the three rule tables plus per-organization overlays.

The static tables are built once at import time. Organizations get their own
:class:`RuleSet` by overlaying their active :class:`RuleVersion` records;
overlays never mutate the shared tables.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from types import MappingProxyType

from ..models import RuleVersion, Transaction
from .keywords import KEYWORD_RULES, KeywordRule
from .keywords import contains_term
from .mcc import MCC_MAPPINGS, MccMapping
from .vendors import VENDOR_PATTERNS, VendorPattern, normalize_vendor_name, pattern_matches

# Organization rules outrank every static vendor pattern and keyword rule.
ORG_VENDOR_PRIORITY = 200
ORG_KEYWORD_WEIGHT = 7
_EXACT_MCC_FLOOR = 0.85


@dataclass(frozen=True, slots=True)
class RuleSet:
    mcc: Mapping[str, MccMapping]
    vendors: tuple[VendorPattern, ...]
    keywords: tuple[KeywordRule, ...]

    def with_rule_versions(self, versions: Iterable[RuleVersion]) -> RuleSet:
        """Return a new rule set with the active ``versions`` layered on top."""

        mcc = dict(self.mcc)
        vendors = list(self.vendors)
        keywords = list(self.keywords)
        for rv in versions:
            if not rv.is_active:
                continue
            if rv.rule_type == "mcc":
                strength = "exact" if rv.confidence >= _EXACT_MCC_FLOOR else "family"
                mcc[rv.pattern] = MccMapping(rv.category_id, strength, rv.confidence)
            elif rv.rule_type == "vendor":
                vendors.append(
                    VendorPattern(rv.pattern, "contains", rv.category_id, rv.confidence, ORG_VENDOR_PRIORITY)
                )
            else:
                keywords.append(
                    KeywordRule((rv.pattern,), rv.category_id, rv.confidence, ORG_KEYWORD_WEIGHT, "org")
                )
        return RuleSet(MappingProxyType(mcc), tuple(vendors), tuple(keywords))


DEFAULT_RULESET = RuleSet(MCC_MAPPINGS, VENDOR_PATTERNS, KEYWORD_RULES)


def rule_version_matches(rv: RuleVersion, tx: Transaction) -> bool:
    """Whether the single rule ``rv`` fires for ``tx`` (ignores ``is_active``)."""

    if rv.rule_type == "mcc":
        return bool(tx.mcc) and tx.mcc.strip() == rv.pattern
    if rv.rule_type == "vendor":
        subject = tx.merchant_name or tx.description
        if not subject:
            return False
        as_pattern = VendorPattern(rv.pattern, "contains", rv.category_id, rv.confidence, ORG_VENDOR_PRIORITY)
        return pattern_matches(as_pattern, normalize_vendor_name(subject))
    return bool(tx.description) and contains_term(tx.description.lower(), rv.pattern)


__all__ = ["DEFAULT_RULESET", "RuleSet", "rule_version_matches"]
