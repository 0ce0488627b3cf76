"""Versioned rules learned from corrections, with canary-gated promotion.

Lineage
-------
Every rule lives in a lineage keyed by ``(org_id, rule_type, pattern)``.
Versions inside a lineage are numbered 1, 2, ... and each new version points
at the latest existing one as its parent. At most one version per lineage is
active; every mutation of the active flag runs under
``store.serialized(lineage_lock_key(...))``.

State machine
-------------
- ``manual`` versions are active on creation (the previously active version
  is deactivated).
- ``learned`` versions start inactive and only become active through
  :func:`promote_rule_version`, which requires the latest canary of that exact
  version to have passed.
- :func:`rollback_rule_version` deactivates the active version and reactivates
  its immediate parent (a learned parent only with a passing canary).

Canary outcome per sampled transaction (ground truth is the latest human
correction, else the stored category):

==========================  ==============  =========
rule fires / truth matches   outcome         counted
==========================  ==============  =========
fires, truth == rule cat     true positive   correct
fires, truth != rule cat     false positive  incorrect
silent, truth == rule cat    false negative  incorrect
silent, truth != rule cat    true negative   correct
==========================  ==============  =========

Audit writes are secondary: failures are logged and never abort the
operation that triggered them.
"""

from __future__ import annotations

from collections import Counter, defaultdict
from collections.abc import Mapping, Sequence
from datetime import date, datetime, timedelta
from typing import Any

from .config import CanaryConfig, OscillationConfig
from .errors import PreconditionError, RecordNotFoundError
from .logging_setup import get_logger, job_context
from .models import (
    CanaryTestResult,
    Correction,
    Oscillation,
    RuleSource,
    RuleType,
    RuleVersion,
    Transaction,
)
from .oscillation import detect_oscillation
from .rules.ruleset import rule_version_matches
from .rules.vendors import normalize_vendor_name
from .store import Store, new_id, utcnow
from .taxonomy import is_valid_leaf

_logger = get_logger(__name__)

_RULE_TYPES: frozenset[str] = frozenset({"mcc", "vendor", "keyword"})
REPLACED_REASON = "Replaced by newer version"

# Learned rule confidence: base plus a step per supporting correction above
# the minimum, capped.
_LEARNED_BASE_CONFIDENCE = 0.80
_LEARNED_STEP = 0.02
_LEARNED_CAP = 0.95
# Share of a pattern's corrections that must agree on one category.
_LEARNED_MIN_AGREEMENT = 0.8


# ---- Helpers ----------------------------------------------------------------


def normalize_pattern(rule_type: str, pattern: str) -> str:
    """Canonical lineage pattern for ``rule_type``."""

    if rule_type == "mcc":
        return pattern.strip()
    if rule_type == "vendor":
        return normalize_vendor_name(pattern)
    return pattern.strip().lower()


def lineage_lock_key(org_id: str, rule_type: str, pattern: str) -> str:
    return f"rule_lineage:{org_id}:{rule_type}:{pattern}"


def _audit(
    store: Store,
    *,
    org_id: str,
    action: str,
    entity_type: str,
    entity_id: str | None,
    actor_id: str | None,
    details: Mapping[str, Any] | None = None,
) -> None:
    try:
        store.insert(
            "audit_log",
            {
                "org_id": org_id,
                "action": action,
                "entity_type": entity_type,
                "entity_id": entity_id,
                "actor_id": actor_id,
                "details": dict(details or {}),
            },
        )
    except Exception as e:  # noqa: BLE001
        _logger.warning(
            "learning:audit_failed action=%s entity_id=%s error=%s", action, entity_id, e.__class__.__name__
        )


def _require_rule_version(store: Store, rule_version_id: str) -> RuleVersion:
    row = store.get("rule_versions", rule_version_id)
    if row is None:
        raise RecordNotFoundError("rule_versions", rule_version_id)
    return RuleVersion.from_record(row)


def _lineage(store: Store, org_id: str, rule_type: str, pattern: str) -> list[RuleVersion]:
    rows = store.query(
        "rule_versions",
        {"org_id": org_id, "rule_type": rule_type, "pattern": pattern},
        order_by="version",
    )
    return [RuleVersion.from_record(r) for r in rows]


def _deactivate(store: Store, rv: RuleVersion, *, actor_id: str | None, reason: str, now: datetime) -> None:
    store.update(
        "rule_versions",
        rv.id,
        {
            "is_active": False,
            "deactivated_at": now,
            "deactivated_by": actor_id,
            "deactivation_reason": reason,
        },
    )


def _activate(store: Store, rv: RuleVersion) -> RuleVersion:
    row = store.update(
        "rule_versions",
        rv.id,
        {"is_active": True, "deactivated_at": None, "deactivated_by": None, "deactivation_reason": None},
    )
    return RuleVersion.from_record(row)


def get_active_rule_versions(store: Store, org_id: str) -> list[RuleVersion]:
    rows = store.query("rule_versions", {"org_id": org_id, "is_active": True}, order_by="created_at")
    return [RuleVersion.from_record(r) for r in rows]


# ---- Versions ---------------------------------------------------------------


def create_rule_version(
    store: Store,
    *,
    org_id: str,
    rule_type: RuleType,
    pattern: str,
    category_id: str,
    confidence: float,
    source: RuleSource,
    created_by: str | None = None,
    metadata: Mapping[str, Any] | None = None,
) -> RuleVersion:
    """Append a new version to the ``(org_id, rule_type, pattern)`` lineage.

    Parameters
    ----------
    pattern:
        Normalized before use (MCC trimmed, vendor names normalized, keywords
        lower-cased), so equivalent spellings share a lineage.
    source:
        ``"manual"`` versions become active immediately and deactivate the
        current active version; ``"learned"`` versions start inactive.

    Raises
    ------
    ValueError
        Unknown rule type, empty pattern, non-leaf category or confidence
        outside ``[0, 1]``.
    """

    if rule_type not in _RULE_TYPES:
        raise ValueError(f"unknown rule_type: {rule_type!r}")
    if source not in ("manual", "learned"):
        raise ValueError(f"unknown rule source: {source!r}")
    if not is_valid_leaf(category_id):
        raise ValueError(f"not an assignable category: {category_id!r}")
    if not 0.0 <= confidence <= 1.0:
        raise ValueError("confidence must be within [0,1]")
    key = normalize_pattern(rule_type, pattern)
    if not key:
        raise ValueError("pattern must be non-empty after normalization")

    with store.serialized(lineage_lock_key(org_id, rule_type, key)):
        lineage = _lineage(store, org_id, rule_type, key)
        parent = lineage[-1] if lineage else None
        now = utcnow()
        active = source == "manual"
        if active:
            for rv in lineage:
                if rv.is_active:
                    _deactivate(store, rv, actor_id=created_by, reason=REPLACED_REASON, now=now)
        row = store.insert(
            "rule_versions",
            RuleVersion(
                id=new_id(),
                org_id=org_id,
                rule_type=rule_type,
                pattern=key,
                category_id=category_id,
                confidence=confidence,
                source=source,
                is_active=active,
                version=(parent.version + 1) if parent else 1,
                parent_version_id=parent.id if parent else None,
                created_by=created_by,
                created_at=now,
                metadata=dict(metadata or {}),
            ).to_record(),
        )
    created = RuleVersion.from_record(row)
    _logger.info(
        "learning:rule_version_created org_id=%s rule_type=%s pattern=%s version=%d source=%s active=%s",
        org_id,
        rule_type,
        key,
        created.version,
        source,
        created.is_active,
    )
    _audit(
        store,
        org_id=org_id,
        action="rule_version_created",
        entity_type="rule_version",
        entity_id=created.id,
        actor_id=created_by,
        details={"version": created.version, "source": source, "category_id": category_id},
    )
    return created


# ---- Canary -----------------------------------------------------------------


def _ground_truth(store: Store, tx: Transaction) -> str | None:
    history = store.query("corrections", {"org_id": tx.org_id, "tx_id": tx.id}, order_by="created_at")
    if history:
        return history[-1]["new_category_id"]
    return tx.category_id


def run_canary_test(
    store: Store,
    rule_version_id: str,
    *,
    config: CanaryConfig | None = None,
    as_of: date | None = None,
) -> CanaryTestResult:
    """Evaluate a rule version against historical ground truth and record it.

    The sample is the organization's categorized transactions dated at least
    ``config.min_age_days`` before ``as_of`` (most recent first, at most
    ``config.sample_size``). Samples smaller than ``config.min_sample`` are
    recorded as inconclusive and never pass.
    """

    cfg = config or CanaryConfig()
    rv = _require_rule_version(store, rule_version_id)
    cutoff = (as_of or utcnow().date()) - timedelta(days=cfg.min_age_days)
    rows = store.query(
        "transactions",
        {"org_id": rv.org_id},
        date_field="date",
        until=cutoff,
        order_by="date",
        descending=True,
    )

    tp = fp = fn = tn = 0
    sample = 0
    for row in rows:
        if sample >= cfg.sample_size:
            break
        tx = Transaction.from_record(row)
        truth = _ground_truth(store, tx)
        if truth is None:
            continue
        sample += 1
        fires = rule_version_matches(rv, tx)
        hit = truth == rv.category_id
        if fires and hit:
            tp += 1
        elif fires:
            fp += 1
        elif hit:
            fn += 1
        else:
            tn += 1

    correct = tp + tn
    incorrect = fp + fn
    accuracy = correct / sample if sample else 0.0
    precision = tp / (tp + fp) if (tp + fp) else None
    recall = tp / (tp + fn) if (tp + fn) else None
    f1 = (
        2 * precision * recall / (precision + recall)
        if precision is not None and recall is not None and (precision + recall) > 0
        else None
    )
    inconclusive = sample < max(1, cfg.min_sample)
    passed = not inconclusive and accuracy >= cfg.pass_threshold

    result = CanaryTestResult(
        id=new_id(),
        org_id=rv.org_id,
        rule_version_id=rv.id,
        sample_size=sample,
        correct=correct,
        incorrect=incorrect,
        accuracy=accuracy,
        precision=precision,
        recall=recall,
        f1_score=f1,
        threshold=cfg.pass_threshold,
        passed=passed,
        inconclusive=inconclusive,
    )
    stored = CanaryTestResult.from_record(store.insert("canary_results", result.to_record()))
    _logger.info(
        "learning:canary_done rule_version_id=%s sample=%d accuracy=%.3f passed=%s inconclusive=%s",
        rv.id,
        sample,
        accuracy,
        passed,
        inconclusive,
    )
    return stored


def latest_canary(store: Store, rule_version_id: str) -> CanaryTestResult | None:
    rows = store.query("canary_results", {"rule_version_id": rule_version_id}, order_by="created_at")
    return CanaryTestResult.from_record(rows[-1]) if rows else None


# ---- Promotion / rollback ---------------------------------------------------


def promote_rule_version(store: Store, rule_version_id: str, *, actor_id: str) -> RuleVersion:
    """Activate a version whose latest canary passed.

    Raises
    ------
    PreconditionError
        No canary exists for this version, or the latest one did not pass.
    """

    rv = _require_rule_version(store, rule_version_id)
    with store.serialized(lineage_lock_key(rv.org_id, rv.rule_type, rv.pattern)):
        canary = latest_canary(store, rv.id)
        if canary is None:
            raise PreconditionError(f"rule version {rv.id} has no canary result; run a canary test first")
        if not canary.passed:
            raise PreconditionError(
                f"rule version {rv.id} failed its latest canary "
                f"(accuracy={canary.accuracy:.3f}, threshold={canary.threshold:.2f}, "
                f"inconclusive={canary.inconclusive})"
            )
        now = utcnow()
        for other in _lineage(store, rv.org_id, rv.rule_type, rv.pattern):
            if other.is_active and other.id != rv.id:
                _deactivate(store, other, actor_id=actor_id, reason=REPLACED_REASON, now=now)
        promoted = _activate(store, rv)
        store.update("canary_results", canary.id, {"promoted": True})

    _logger.info(
        "learning:rule_promoted rule_version_id=%s version=%d actor=%s", rv.id, rv.version, actor_id
    )
    _audit(
        store,
        org_id=rv.org_id,
        action="rule_version_promoted",
        entity_type="rule_version",
        entity_id=rv.id,
        actor_id=actor_id,
        details={"canary_id": canary.id, "accuracy": canary.accuracy},
    )
    return promoted


def rollback_rule_version(
    store: Store, rule_version_id: str, *, actor_id: str, reason: str = "rollback"
) -> RuleVersion:
    """Deactivate ``rule_version_id`` and reactivate its immediate parent.

    Returns the reactivated parent. Any other active version in the lineage
    is deactivated too, leaving the parent as the only active one.

    Raises
    ------
    PreconditionError
        The version has no parent to roll back to, is not the active version,
        or its parent is a learned version without a passing canary.
    """

    rv = _require_rule_version(store, rule_version_id)
    if rv.parent_version_id is None:
        raise PreconditionError(f"rule version {rv.id} has no parent version to roll back to")
    with store.serialized(lineage_lock_key(rv.org_id, rv.rule_type, rv.pattern)):
        rv = _require_rule_version(store, rv.id)
        if not rv.is_active:
            raise PreconditionError(f"rule version {rv.id} is not active; only the active version can be rolled back")
        parent = _require_rule_version(store, rv.parent_version_id)
        if parent.source == "learned":
            canary = latest_canary(store, parent.id)
            if canary is None or not canary.passed:
                raise PreconditionError(
                    f"parent version {parent.id} is a learned rule without a passing canary; cannot restore it"
                )
        now = utcnow()
        for other in _lineage(store, rv.org_id, rv.rule_type, rv.pattern):
            if other.is_active and other.id not in (rv.id, parent.id):
                _deactivate(store, other, actor_id=actor_id, reason=reason, now=now)
        _deactivate(store, rv, actor_id=actor_id, reason=reason, now=now)
        restored = _activate(store, parent)

    _logger.info(
        "learning:rule_rolled_back rule_version_id=%s parent_id=%s actor=%s", rv.id, parent.id, actor_id
    )
    _audit(
        store,
        org_id=rv.org_id,
        action="rule_version_rolled_back",
        entity_type="rule_version",
        entity_id=rv.id,
        actor_id=actor_id,
        details={"reason": reason, "restored_version_id": parent.id, "restored_version": parent.version},
    )
    return restored


def canary_and_promote(
    store: Store,
    rule_version_id: str,
    *,
    actor_id: str,
    config: CanaryConfig | None = None,
    as_of: date | None = None,
) -> tuple[CanaryTestResult, RuleVersion | None]:
    """Run a canary and promote on pass; the version is returned only when promoted."""

    result = run_canary_test(store, rule_version_id, config=config, as_of=as_of)
    if not result.passed:
        return result, None
    return result, promote_rule_version(store, rule_version_id, actor_id=actor_id)


# ---- Corrections ------------------------------------------------------------


def record_correction(
    store: Store,
    *,
    org_id: str,
    tx_id: str,
    new_category_id: str,
    actor_id: str,
    old_category_id: str | None = None,
    oscillation_config: OscillationConfig | None = None,
) -> tuple[Correction, Oscillation | None]:
    """Apply a human correction and run oscillation detection.

    ``old_category_id`` defaults to the transaction's current category. The
    transaction must belong to ``org_id``.
    """

    if not is_valid_leaf(new_category_id):
        raise ValueError(f"not an assignable category: {new_category_id!r}")
    row = store.get("transactions", tx_id)
    if row is None or row.get("org_id") != org_id:
        raise RecordNotFoundError("transactions", tx_id)
    old = old_category_id if old_category_id is not None else row.get("category_id")

    now = utcnow()
    store.update(
        "transactions",
        tx_id,
        {
            "category_id": new_category_id,
            "confidence": 1.0,
            "decision_source": "manual",
            "needs_review": False,
            "reviewed": True,
            "updated_at": now,
        },
    )
    correction = Correction(
        id=new_id(),
        org_id=org_id,
        tx_id=tx_id,
        old_category_id=old,
        new_category_id=new_category_id,
        actor_id=actor_id,
        created_at=now,
    )
    stored = Correction.from_record(store.insert("corrections", correction.to_record()))
    oscillation = detect_oscillation(store, org_id, tx_id, config=oscillation_config)
    _audit(
        store,
        org_id=org_id,
        action="transaction_corrected",
        entity_type="transaction",
        entity_id=tx_id,
        actor_id=actor_id,
        details={"old_category_id": old, "new_category_id": new_category_id},
    )
    return stored, oscillation


def _has_pending_or_active(store: Store, org_id: str, rule_type: str, pattern: str, category_id: str) -> bool:
    for rv in _lineage(store, org_id, rule_type, pattern):
        if rv.category_id != category_id:
            continue
        if rv.is_active or rv.deactivated_at is None:
            return True
    return False


def learn_rules_from_corrections(
    store: Store,
    org_id: str,
    *,
    min_support: int = 3,
    since: date | datetime | None = None,
    created_by: str = "learning_loop",
) -> list[RuleVersion]:
    """Turn consistent correction patterns into inactive ``learned`` versions.

    Corrections are grouped by normalized merchant name and by MCC. A group
    with at least ``min_support`` corrections where one category holds at
    least 80% of them yields a candidate, unless the lineage already has an
    active or pending version for that category.
    """

    corrections = store.query(
        "corrections", {"org_id": org_id}, date_field="created_at" if since else None, since=since
    )
    groups: dict[tuple[RuleType, str], Counter[str]] = defaultdict(Counter)
    for c in corrections:
        row = store.get("transactions", c["tx_id"])
        if row is None or row.get("org_id") != org_id:
            continue
        tx = Transaction.from_record(row)
        if tx.merchant_name:
            vendor = normalize_vendor_name(tx.merchant_name)
            if vendor:
                groups[("vendor", vendor)][c["new_category_id"]] += 1
        if tx.mcc and tx.mcc.strip():
            groups[("mcc", tx.mcc.strip())][c["new_category_id"]] += 1

    with job_context("learn_rules", org_id=org_id):
        created: list[RuleVersion] = []
        for (rule_type, pattern), counts in sorted(groups.items()):
            total = sum(counts.values())
            category_id, support = counts.most_common(1)[0]
            if support < min_support or support / total < _LEARNED_MIN_AGREEMENT:
                continue
            if _has_pending_or_active(store, org_id, rule_type, pattern, category_id):
                continue
            confidence = min(_LEARNED_CAP, _LEARNED_BASE_CONFIDENCE + _LEARNED_STEP * (support - min_support))
            created.append(
                create_rule_version(
                    store,
                    org_id=org_id,
                    rule_type=rule_type,
                    pattern=pattern,
                    category_id=category_id,
                    confidence=round(confidence, 4),
                    source="learned",
                    created_by=created_by,
                    metadata={"support": support, "total": total},
                )
            )
        _logger.info("learning:rules_learned org_id=%s candidates=%d", org_id, len(created))
    return created


def lineage_versions(store: Store, rule_version_id: str) -> Sequence[RuleVersion]:
    """All versions in the lineage of ``rule_version_id``, oldest first."""

    rv = _require_rule_version(store, rule_version_id)
    return _lineage(store, rv.org_id, rv.rule_type, rv.pattern)


__all__ = [
    "REPLACED_REASON",
    "canary_and_promote",
    "create_rule_version",
    "get_active_rule_versions",
    "latest_canary",
    "learn_rules_from_corrections",
    "lineage_lock_key",
    "lineage_versions",
    "normalize_pattern",
    "promote_rule_version",
    "record_correction",
    "rollback_rule_version",
    "run_canary_test",
]
