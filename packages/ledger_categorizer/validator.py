"""Offline static analysis of the rule tables.

Run as a batch tool (``ledger-categorizer validate-rules``), never on the
request path. It reports:

- MCC codes mapped to more than one category (critical);
- vendor patterns that overlap across categories at the same priority
  (high), or where priority already decides the winner (low);
- keyword rules of different categories sharing a keyword without an
  exclude list (medium), or with one (low);
- regex vendor patterns that do not compile or are prone to catastrophic
  backtracking (critical).

Conflicts are sorted by severity, then kind, then subject.

The backtracking analysis walks the parse tree from CPython's private
``re._parser`` (no regex engine of our own). A pattern is rejected when it
nests unbounded quantifiers (star height above one), uses backreferences, or
repeats an alternation whose branches can start with the same character.
"""

from __future__ import annotations

import re
from collections import defaultdict
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from itertools import combinations
from typing import Any

from .models import RuleVersion, Severity
from .rules.keywords import KeywordRule, contains_term
from .rules.mcc import MccMapping
from .rules.ruleset import ORG_KEYWORD_WEIGHT, ORG_VENDOR_PRIORITY, RuleSet
from .rules.vendors import VendorPattern, normalize_vendor_name

_SEVERITY_RANK: dict[str, int] = {"critical": 0, "high": 1, "medium": 2, "low": 3}

RESOLUTION_ORDER: tuple[tuple[str, str], ...] = (
    ("mcc-exact", "MCC code with an exact mapping"),
    ("vendor-exact", "Vendor pattern with exact match type"),
    ("mcc-family", "MCC code with a family mapping"),
    ("vendor-fuzzy", "Vendor pattern with prefix, suffix, substring or regex match"),
    ("keyword-high-weight", "Keyword rule with weight >= 5"),
    ("keyword-low-weight", "Keyword rule with weight < 5"),
)
_HIGH_KEYWORD_WEIGHT = 5


@dataclass(frozen=True, slots=True)
class RuleConflict:
    kind: str
    severity: Severity
    subject: str
    categories: tuple[str, ...]
    detail: str


@dataclass(frozen=True, slots=True)
class ValidationReport:
    conflicts: tuple[RuleConflict, ...]
    rules_checked: int

    @property
    def has_critical(self) -> bool:
        return any(c.severity == "critical" for c in self.conflicts)

    def counts(self) -> dict[str, int]:
        out = {s: 0 for s in _SEVERITY_RANK}
        for c in self.conflicts:
            out[c.severity] += 1
        return out


# ---- Regex safety -----------------------------------------------------------

# ``re._parser`` (``sre_parse`` before 3.11) is CPython's own regex parser and
# a private module: opcode names and tree shapes can change between CPython
# releases. Everything below that touches it goes through ``_sre``;
# ``PARSER_OPCODES`` lists what the analysis needs and the tests check it
# against the running interpreter.
try:
    from re import _parser as _sre  # type: ignore[attr-defined]
except ImportError as e:  # pragma: no cover - non-CPython interpreters
    raise ImportError("regex safety analysis requires CPython 3.11+ (re._parser)") from e

PARSER_OPCODES: tuple[str, ...] = (
    "MAX_REPEAT", "MIN_REPEAT", "POSSESSIVE_REPEAT", "MAXREPEAT", "LITERAL", "SUBPATTERN",
    "AT", "BRANCH", "ASSERT", "ASSERT_NOT", "GROUPREF", "GROUPREF_EXISTS",
)
_REPEATS = {_sre.MAX_REPEAT, _sre.MIN_REPEAT}
# Bounded repeats above this count are treated as unbounded.
_BOUNDED_LIMIT = 10


def _first_chars(items: Any) -> set[int] | None:
    """Literal code points a sequence can start with; ``None`` means "any"."""

    for op, av in items:
        if op is _sre.LITERAL:
            return {av}
        if op is _sre.SUBPATTERN:
            return _first_chars(av[3])
        if op is _sre.AT:
            continue
        return None
    return None


def _branches_overlap(branches: Sequence[Any]) -> bool:
    firsts = [_first_chars(b) for b in branches]
    for a, b in combinations(firsts, 2):
        if a is None or b is None or a & b:
            return True
    return False


def _analyze(items: Any) -> tuple[int, bool]:
    """Return ``(star_height, unsafe_feature)`` for a parsed sequence."""

    height = 0
    unsafe = False
    for op, av in items:
        h = 0
        if op in _REPEATS:
            _lo, hi, sub = av
            inner, bad = _analyze(sub)
            unbounded = hi == _sre.MAXREPEAT or hi > _BOUNDED_LIMIT
            h = inner + (1 if unbounded else 0)
            unsafe = unsafe or bad
            if unbounded:
                for sop, sav in sub:
                    body = sav[3] if sop is _sre.SUBPATTERN else None
                    seq = body if body is not None else [(sop, sav)]
                    for bop, bav in seq:
                        if bop is _sre.BRANCH and _branches_overlap(bav[1]):
                            unsafe = True
        elif op is _sre.POSSESSIVE_REPEAT:
            # Possessive repeats never backtrack into their body.
            h = 0
        elif op is _sre.SUBPATTERN:
            h, bad = _analyze(av[3])
            unsafe = unsafe or bad
        elif op is _sre.BRANCH:
            for branch in av[1]:
                bh, bad = _analyze(branch)
                h = max(h, bh)
                unsafe = unsafe or bad
        elif op in (_sre.ASSERT, _sre.ASSERT_NOT):
            h, bad = _analyze(av[1])
            unsafe = unsafe or bad
        elif op in (_sre.GROUPREF, _sre.GROUPREF_EXISTS):
            unsafe = True
        height = max(height, h)
    return height, unsafe


def is_safe_regex(pattern: str) -> bool:
    """True when ``pattern`` compiles and matches in linear time.

    Conservative: some linear patterns are rejected, no exponential one is
    accepted.
    """

    try:
        parsed = _sre.parse(pattern)
    except re.error:
        return False
    height, unsafe = _analyze(parsed)
    return height <= 1 and not unsafe


# ---- Individual checks ------------------------------------------------------


def check_mcc_entries(entries: Iterable[tuple[str, MccMapping]]) -> list[RuleConflict]:
    by_code: dict[str, set[str]] = defaultdict(set)
    for code, mapping in entries:
        by_code[code.strip()].add(mapping.category_id)
    return [
        RuleConflict(
            kind="mcc_conflict",
            severity="critical",
            subject=f"MCC {code}",
            categories=tuple(sorted(cats)),
            detail=f"MCC {code} maps to {len(cats)} categories",
        )
        for code, cats in sorted(by_code.items())
        if len(cats) > 1
    ]


def _vendor_overlap(a: VendorPattern, b: VendorPattern) -> bool:
    if "regex" in (a.match_type, b.match_type):
        return a.pattern == b.pattern
    na, nb = normalize_vendor_name(a.pattern), normalize_vendor_name(b.pattern)
    if not na or not nb:
        return False
    if na == nb:
        return True
    fuzzy = {"contains", "prefix", "suffix"}
    if a.match_type in fuzzy and na in nb:
        return True
    if b.match_type in fuzzy and nb in na:
        return True
    return False


def check_vendor_patterns(patterns: Sequence[VendorPattern]) -> list[RuleConflict]:
    out: list[RuleConflict] = []
    for a, b in combinations(patterns, 2):
        if a.category_id == b.category_id or not _vendor_overlap(a, b):
            continue
        same_priority = a.priority == b.priority
        out.append(
            RuleConflict(
                kind="vendor_overlap",
                severity="high" if same_priority else "low",
                subject=f"vendor '{a.pattern}' / '{b.pattern}'",
                categories=tuple(sorted({a.category_id, b.category_id})),
                detail=(
                    f"overlapping patterns at equal priority {a.priority}"
                    if same_priority
                    else f"overlap resolved by priority ({a.priority} vs {b.priority})"
                ),
            )
        )
    for p in patterns:
        if p.match_type == "regex" and not is_safe_regex(p.pattern):
            out.append(
                RuleConflict(
                    kind="unsafe_regex",
                    severity="critical",
                    subject=f"vendor regex '{p.pattern}'",
                    categories=(p.category_id,),
                    detail="pattern does not compile or may backtrack catastrophically",
                )
            )
    return out


def check_keyword_rules(rules: Sequence[KeywordRule]) -> list[RuleConflict]:
    out: list[RuleConflict] = []
    for a, b in combinations(rules, 2):
        if a.category_id == b.category_id:
            continue
        shared = sorted(set(a.keywords) & set(b.keywords))
        mitigated = bool(a.exclude or b.exclude)
        if shared:
            out.append(
                RuleConflict(
                    kind="keyword_overlap",
                    severity="low" if mitigated else "medium",
                    subject=f"keywords [{', '.join(shared)}]",
                    categories=tuple(sorted({a.category_id, b.category_id})),
                    detail=(
                        "shared keywords mitigated by an exclude list"
                        if mitigated
                        else "shared keywords without an exclude list"
                    ),
                )
            )
            continue
        nested = sorted(
            f"{x} in {y}"
            for x in a.keywords
            for y in b.keywords
            if x != y and (contains_term(y, x) or contains_term(x, y))
        )
        if nested and not mitigated:
            out.append(
                RuleConflict(
                    kind="keyword_nested",
                    severity="low",
                    subject=f"keywords [{'; '.join(nested[:3])}]",
                    categories=tuple(sorted({a.category_id, b.category_id})),
                    detail="a keyword of one rule occurs inside a keyword of the other",
                )
            )
    return out


# ---- Entry points -----------------------------------------------------------


def _sort(conflicts: Iterable[RuleConflict]) -> tuple[RuleConflict, ...]:
    return tuple(sorted(conflicts, key=lambda c: (_SEVERITY_RANK[c.severity], c.kind, c.subject)))


def validate_ruleset(ruleset: RuleSet, rule_versions: Iterable[RuleVersion] = ()) -> ValidationReport:
    """Check ``ruleset`` plus any candidate ``rule_versions`` layered on it.

    Rule versions are checked whether or not they are active, so learned
    candidates can be vetted before their canary.
    """

    mcc_entries: list[tuple[str, MccMapping]] = list(ruleset.mcc.items())
    vendors = list(ruleset.vendors)
    keywords = list(ruleset.keywords)
    for rv in rule_versions:
        if rv.rule_type == "mcc":
            strength = "exact" if rv.confidence >= 0.85 else "family"
            if rv.pattern in ruleset.mcc and ruleset.mcc[rv.pattern].category_id == rv.category_id:
                continue
            mcc_entries.append((rv.pattern, MccMapping(rv.category_id, strength, rv.confidence)))
        elif rv.rule_type == "vendor":
            vendors.append(
                VendorPattern(rv.pattern, "contains", rv.category_id, rv.confidence, ORG_VENDOR_PRIORITY)
            )
        else:
            keywords.append(KeywordRule((rv.pattern,), rv.category_id, rv.confidence, ORG_KEYWORD_WEIGHT, "org"))

    conflicts = [
        *check_mcc_entries(mcc_entries),
        *check_vendor_patterns(vendors),
        *check_keyword_rules(keywords),
    ]
    return ValidationReport(
        conflicts=_sort(conflicts),
        rules_checked=len(mcc_entries) + len(vendors) + len(keywords),
    )


def render_resolution_order() -> str:
    lines = ["Rule resolution order (first match wins on ties):"]
    for i, (name, desc) in enumerate(RESOLUTION_ORDER, start=1):
        lines.append(f"  {i}. {name}: {desc}")
    return "\n".join(lines)


def format_report(report: ValidationReport) -> str:
    counts = report.counts()
    lines = [
        f"Rules checked: {report.rules_checked}",
        "Conflicts: " + ", ".join(f"{s}={n}" for s, n in counts.items()),
    ]
    for c in report.conflicts:
        lines.append(f"[{c.severity.upper()}] {c.kind}: {c.subject} -> {', '.join(c.categories)} ({c.detail})")
    lines.append("")
    lines.append(render_resolution_order())
    return "\n".join(lines)


__all__ = [
    "RESOLUTION_ORDER",
    "RuleConflict",
    "ValidationReport",
    "check_keyword_rules",
    "check_mcc_entries",
    "check_vendor_patterns",
    "format_report",
    "is_safe_regex",
    "render_resolution_order",
    "validate_ruleset",
]
