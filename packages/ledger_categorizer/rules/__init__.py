"""Static rule tables and signal extractors (MCC, vendor, keyword)."""

from .keywords import KEYWORD_RULES, KeywordRule, extract_keyword_signal
from .mcc import MCC_MAPPINGS, MccMapping, extract_mcc_signal, is_mcc_compatible
from .ruleset import DEFAULT_RULESET, RuleSet, rule_version_matches
from .vendors import VENDOR_PATTERNS, VendorPattern, extract_vendor_signal, normalize_vendor_name

__all__ = [
    "DEFAULT_RULESET",
    "KEYWORD_RULES",
    "KeywordRule",
    "MCC_MAPPINGS",
    "MccMapping",
    "RuleSet",
    "VENDOR_PATTERNS",
    "VendorPattern",
    "extract_keyword_signal",
    "extract_mcc_signal",
    "extract_vendor_signal",
    "is_mcc_compatible",
    "normalize_vendor_name",
    "rule_version_matches",
]
