"""Data models and type aliases for ``ledger_categorizer``.

Records that the engine reads from or writes to the store are frozen,
slotted dataclasses. They convert to and from plain ``dict`` rows through
``to_record()`` / ``from_record()`` so that the storage collaborator only ever
sees JSON-friendly mappings.

Model output is untrusted and is parsed through the pydantic model
:class:`LlmCategorization` instead.

Notes
-----
- Amounts are signed integers in minor currency units (cents). Negative values
  are money leaving the account.
- Category identifiers are taxonomy slugs (see ``taxonomy.py``).
- Timestamps are timezone-aware UTC ``datetime`` objects.
"""

from __future__ import annotations

import dataclasses
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Literal, Self

from pydantic import BaseModel, ConfigDict, Field, field_validator

# ---------------------------------------------------------------------------
# Literal vocabularies
# ---------------------------------------------------------------------------

type SignalType = Literal["mcc", "vendor", "keyword", "embedding"]
type MatchStrength = Literal["exact", "strong", "medium", "weak"]
type ViolationType = Literal[
    "mcc_incompatible",
    "amount_unrealistic",
    "confidence_too_low",
    "category_blacklisted",
    "suspicious_pattern",
]
type ViolationAction = Literal["reject", "flag", "override"]
type RuleType = Literal["mcc", "vendor", "keyword"]
type RuleSource = Literal["manual", "learned"]
type DecisionSource = Literal["pass1", "llm", "manual"]
type Severity = Literal["low", "medium", "high", "critical"]


class _Record:
    """Mixin giving dataclass records a ``dict`` round-trip for the store."""

    __slots__ = ()

    def to_record(self) -> dict[str, Any]:
        out: dict[str, Any] = {}
        for f in dataclasses.fields(self):  # type: ignore[arg-type]
            value = getattr(self, f.name)
            if isinstance(value, Mapping):
                value = dict(value)
            elif isinstance(value, tuple):
                value = list(value)
            out[f.name] = value
        return out

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> Self:
        names = {f.name for f in dataclasses.fields(cls)}  # type: ignore[arg-type]
        kwargs = {k: v for k, v in record.items() if k in names}
        return cls(**kwargs)


# ---------------------------------------------------------------------------
# Transactions
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class Transaction(_Record):
    """A bank or card transaction as ingested.

    Only the categorization fields (``category_id``, ``confidence``,
    ``needs_review``, ``decision_source``) change after ingestion; use
    :func:`dataclasses.replace` to derive the updated record.
    """

    id: str
    org_id: str
    date: date
    amount_cents: int
    description: str = ""
    currency: str = "USD"
    merchant_name: str | None = None
    mcc: str | None = None
    category_id: str | None = None
    confidence: float | None = None
    needs_review: bool = False
    reviewed: bool = False
    # Provenance of the row itself (e.g., "plaid", "csv").
    source: str = "unknown"
    # Which engine produced ``category_id``.
    decision_source: DecisionSource | None = None
    raw: Mapping[str, Any] = field(default_factory=dict)
    created_at: datetime | None = None

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> Transaction:
        rec = dict(record)
        if isinstance(rec.get("date"), datetime):
            rec["date"] = rec["date"].date()
        if rec.get("raw") is None:
            rec["raw"] = {}
        return super(Transaction, cls).from_record(rec)


# ---------------------------------------------------------------------------
# Pass-1 building blocks
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class CategorizationSignal:
    """One rule source's opinion about a transaction's category."""

    type: SignalType
    category_id: str
    category_name: str
    strength: MatchStrength
    confidence: float
    evidence: str
    rationale: str
    matched_terms: tuple[str, ...] | None = None


@dataclass(frozen=True, slots=True)
class CategoryScore:
    """Aggregate of every signal that proposed one category."""

    category_id: str
    category_name: str
    total_score: float
    confidence: float
    signals: tuple[CategorizationSignal, ...]
    dominant_signal: CategorizationSignal


@dataclass(frozen=True, slots=True)
class ScoringResult:
    best: CategoryScore | None
    candidates: tuple[CategoryScore, ...]
    rationale: tuple[str, ...]


@dataclass(frozen=True, slots=True)
class GuardrailViolation:
    type: ViolationType
    reason: str
    category_id: str
    action: ViolationAction
    metadata: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class GuardrailResult:
    """Outcome of :func:`ledger_categorizer.guardrails.apply_guardrails`.

    ``final_category`` and ``final_confidence`` are ``None`` whenever
    ``allowed`` is False.
    """

    allowed: bool
    violations: tuple[GuardrailViolation, ...]
    final_category: str | None
    final_confidence: float | None
    guardrails_applied: tuple[str, ...]


@dataclass(frozen=True, slots=True)
class Pass1Result:
    """Deterministic categorization with its full rationale."""

    category_id: str | None
    confidence: float | None
    rationale: tuple[str, ...]
    signals: tuple[CategorizationSignal, ...]
    guardrails_applied: tuple[str, ...]
    violations: tuple[GuardrailViolation, ...] = ()
    candidates: tuple[CategoryScore, ...] = ()

    @property
    def rejected(self) -> bool:
        return any(v.action == "reject" for v in self.violations)


# ---------------------------------------------------------------------------
# Pass-2 / hybrid
# ---------------------------------------------------------------------------


class LlmCategorization(BaseModel):
    """Validated shape of a generative-model answer.

    Extra keys are tolerated so that models which add commentary fields do not
    fail validation; only the four documented fields are used.
    """

    model_config = ConfigDict(strict=True, extra="allow", str_strip_whitespace=True)

    category_slug: str
    confidence: float
    rationale: str = ""
    attributes: dict[str, Any] = Field(default_factory=dict)

    @field_validator("category_slug")
    @classmethod
    def _slug_non_empty(cls, v: str) -> str:
        slug = v.strip().lower()
        if not slug:
            raise ValueError("category_slug must be non-empty")
        return slug

    @field_validator("confidence")
    @classmethod
    def _confidence_in_unit_interval(cls, v: float) -> float:
        fv = float(v)
        if 0.0 <= fv <= 1.0:
            return fv
        raise ValueError("confidence must be within [0,1]")

    @field_validator("attributes", mode="before")
    @classmethod
    def _attributes_default(cls, v: Any) -> Any:
        return {} if v is None else v


@dataclass(frozen=True, slots=True)
class GuardrailIntervention:
    """Record of a guardrail changing a model proposal."""

    stage: str
    original_category: str | None
    original_confidence: float | None
    final_category: str | None
    final_confidence: float | None
    reason: str


@dataclass(frozen=True, slots=True)
class Pass2Result:
    category_id: str | None
    confidence: float | None
    rationale: tuple[str, ...]
    attributes: Mapping[str, str] = field(default_factory=dict)
    interventions: tuple[GuardrailIntervention, ...] = ()
    parse_failed: bool = False


@dataclass(frozen=True, slots=True)
class CategorizationOutcome:
    """Final decision for one transaction after the hybrid flow."""

    tx_id: str
    category_id: str | None
    confidence: float | None
    source: DecisionSource | None
    needs_review: bool
    threshold: float
    rationale: tuple[str, ...]
    pass1: Pass1Result
    pass2: Pass2Result | None = None
    attributes: Mapping[str, str] = field(default_factory=dict)
    llm_attempts: int = 0


# ---------------------------------------------------------------------------
# Learning loop
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class RuleVersion(_Record):
    """One version in an (org, rule type, pattern) lineage."""

    id: str
    org_id: str
    rule_type: RuleType
    pattern: str
    category_id: str
    confidence: float
    source: RuleSource
    is_active: bool
    version: int
    parent_version_id: str | None = None
    created_by: str | None = None
    created_at: datetime | None = None
    deactivated_at: datetime | None = None
    deactivated_by: str | None = None
    deactivation_reason: str | None = None
    metadata: Mapping[str, Any] = field(default_factory=dict)

    @property
    def lineage_key(self) -> tuple[str, str, str]:
        return (self.org_id, self.rule_type, self.pattern)


@dataclass(frozen=True, slots=True)
class CanaryTestResult(_Record):
    """Accuracy of a rule version on historical ground truth.

    ``inconclusive`` marks samples smaller than the configured minimum; those
    results always have ``passed=False``.
    """

    id: str
    org_id: str
    rule_version_id: str
    sample_size: int
    correct: int
    incorrect: int
    accuracy: float
    precision: float | None
    recall: float | None
    f1_score: float | None
    threshold: float
    passed: bool
    inconclusive: bool = False
    promoted: bool = False
    created_at: datetime | None = None


@dataclass(frozen=True, slots=True)
class Correction(_Record):
    id: str
    org_id: str
    tx_id: str
    old_category_id: str | None
    new_category_id: str
    actor_id: str
    created_at: datetime


@dataclass(frozen=True, slots=True)
class OscillationEvent:
    category_id: str | None
    at: datetime
    actor_id: str | None


@dataclass(frozen=True, slots=True)
class Oscillation(_Record):
    """Back-and-forth corrections on a single transaction."""

    id: str
    org_id: str
    tx_id: str
    sequence: tuple[OscillationEvent, ...]
    oscillation_count: int
    is_resolved: bool = False
    final_category_id: str | None = None
    resolved_by: str | None = None
    resolved_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def to_record(self) -> dict[str, Any]:
        rec = super(Oscillation, self).to_record()
        rec["sequence"] = [
            {
                "category_id": e.category_id,
                "at": e.at.isoformat(),
                "actor_id": e.actor_id,
            }
            for e in self.sequence
        ]
        return rec

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> Oscillation:
        rec = dict(record)
        events = []
        for e in rec.get("sequence") or []:
            at = e["at"]
            events.append(
                OscillationEvent(
                    category_id=e.get("category_id"),
                    at=datetime.fromisoformat(at) if isinstance(at, str) else at,
                    actor_id=e.get("actor_id"),
                )
            )
        rec["sequence"] = tuple(events)
        return super(Oscillation, cls).from_record(rec)


@dataclass(frozen=True, slots=True)
class RuleEffectiveness(_Record):
    id: str
    org_id: str
    rule_version_id: str
    measurement_date: date
    applications_count: int
    correct_count: int
    incorrect_count: int
    avg_confidence: float | None
    precision: float | None


# ---------------------------------------------------------------------------
# Drift
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class DistributionSnapshot(_Record):
    """Share of one category within an organization's week."""

    id: str
    org_id: str
    snapshot_date: date
    category_id: str
    transaction_count: int
    total_transactions: int
    percentage: float
    avg_confidence: float | None
    source_breakdown: Mapping[str, int] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class ConfidenceSnapshot(_Record):
    """Confidence statistics for one decision source (or ``"overall"``)."""

    id: str
    org_id: str
    snapshot_date: date
    source: str
    avg_confidence: float
    median_confidence: float
    p25_confidence: float
    p75_confidence: float
    p90_confidence: float
    transaction_count: int
    low_confidence_count: int
    medium_confidence_count: int
    high_confidence_count: int


@dataclass(frozen=True, slots=True)
class DriftAlert(_Record):
    id: str
    org_id: str
    alert_type: Literal["distribution", "confidence"]
    metric_name: str
    detection_date: date
    current_value: float
    previous_value: float
    change_pct: float
    threshold_pct: float
    severity: Severity
    acknowledged: bool = False
    acknowledged_by: str | None = None
    acknowledged_at: datetime | None = None
    notes: str | None = None
    created_at: datetime | None = None


__all__ = [
    "CanaryTestResult",
    "CategorizationOutcome",
    "CategorizationSignal",
    "CategoryScore",
    "ConfidenceSnapshot",
    "Correction",
    "DecisionSource",
    "DistributionSnapshot",
    "DriftAlert",
    "GuardrailIntervention",
    "GuardrailResult",
    "GuardrailViolation",
    "LlmCategorization",
    "MatchStrength",
    "Oscillation",
    "OscillationEvent",
    "Pass1Result",
    "Pass2Result",
    "RuleEffectiveness",
    "RuleSource",
    "RuleType",
    "RuleVersion",
    "ScoringResult",
    "Severity",
    "SignalType",
    "Transaction",
    "ViolationAction",
    "ViolationType",
]
