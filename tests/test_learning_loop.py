"""Rule versions, canary tests, promotion, rollback and rule learning."""

from __future__ import annotations

from datetime import date
from typing import Any

import pytest
from ledger_categorizer.config import CanaryConfig
from ledger_categorizer.errors import PreconditionError, RecordNotFoundError
from ledger_categorizer.learning_loop import (
    REPLACED_REASON,
    canary_and_promote,
    create_rule_version,
    get_active_rule_versions,
    latest_canary,
    learn_rules_from_corrections,
    lineage_versions,
    promote_rule_version,
    record_correction,
    rollback_rule_version,
    run_canary_test,
)
from ledger_categorizer.models import RuleVersion
from ledger_categorizer.store import InMemoryStore

from tests.helpers.factories import ORG, insert_tx

AS_OF = date(2024, 3, 20)
HISTORY_DAY = date(2024, 3, 1)


@pytest.fixture()
def store() -> InMemoryStore:
    return InMemoryStore()


# ---- Helpers -----------------------------------------------------------------


def _seed_history(store: InMemoryStore, *, matching: int = 15, other: int = 10, day: date = HISTORY_DAY) -> None:
    for _ in range(matching):
        insert_tx(store, merchant_name="Blue Bottle Coffee", category_id="meals", date=day)
    for _ in range(other):
        insert_tx(store, merchant_name="Office Depot", category_id="office_admin", date=day)


def _version(store: InMemoryStore, *, source: str = "learned", category_id: str = "meals", **kw: Any) -> RuleVersion:
    return create_rule_version(
        store,
        org_id=kw.pop("org_id", ORG),
        rule_type=kw.pop("rule_type", "vendor"),
        pattern=kw.pop("pattern", "Blue Bottle"),
        category_id=category_id,
        confidence=kw.pop("confidence", 0.9),
        source=source,  # type: ignore[arg-type]
        created_by=kw.pop("created_by", "tester"),
    )


def _reload(store: InMemoryStore, rv: RuleVersion) -> RuleVersion:
    row = store.get("rule_versions", rv.id)
    assert row is not None
    return RuleVersion.from_record(row)


# ---- Versions ----------------------------------------------------------------------


def test_manual_version_replaces_active_one(store: InMemoryStore) -> None:
    v1 = _version(store, source="manual")
    v2 = _version(store, source="manual", category_id="supplies_inventory")

    assert (v1.version, v2.version) == (1, 2)
    assert v2.parent_version_id == v1.id
    assert v2.is_active
    old = _reload(store, v1)
    assert not old.is_active
    assert old.deactivation_reason == REPLACED_REASON
    assert old.deactivated_by == "tester"
    assert [rv.id for rv in get_active_rule_versions(store, ORG)] == [v2.id]


def test_learned_version_starts_inactive(store: InMemoryStore) -> None:
    manual = _version(store, source="manual")
    learned = _version(store, source="learned", category_id="supplies_inventory")
    assert not learned.is_active
    assert learned.version == 2
    assert _reload(store, manual).is_active


def test_equivalent_patterns_share_a_lineage(store: InMemoryStore) -> None:
    a = _version(store, pattern="Blue Bottle, Inc.")
    b = _version(store, pattern="  BLUE BOTTLE ")
    assert a.pattern == b.pattern == "blue bottle"
    assert [rv.version for rv in lineage_versions(store, b.id)] == [1, 2]


@pytest.mark.parametrize(
    "overrides",
    [
        {"rule_type": "regex"},
        {"category_id": "revenue"},
        {"category_id": "not_a_category"},
        {"confidence": 1.2},
        {"pattern": "   "},
    ],
)
def test_invalid_versions_are_rejected(store: InMemoryStore, overrides: dict[str, Any]) -> None:
    with pytest.raises(ValueError):
        _version(store, **overrides)
    assert store.query("rule_versions") == []


def test_version_creation_is_audited(store: InMemoryStore) -> None:
    rv = _version(store)
    (entry,) = store.query("audit_log")
    assert entry["action"] == "rule_version_created"
    assert entry["entity_id"] == rv.id


def test_audit_failures_do_not_abort(store: InMemoryStore, monkeypatch: pytest.MonkeyPatch) -> None:
    real_insert = store.insert

    def flaky_insert(table: str, record: Any) -> Any:
        if table == "audit_log":
            raise RuntimeError("audit sink down")
        return real_insert(table, record)

    monkeypatch.setattr(store, "insert", flaky_insert)
    rv = _version(store, source="manual")
    assert rv.is_active
    assert store.query("audit_log") == []


# ---- Canary -----------------------------------------------------------------------------


def test_canary_passes_on_consistent_history(store: InMemoryStore) -> None:
    _seed_history(store)
    rv = _version(store)

    res = run_canary_test(store, rv.id, as_of=AS_OF)

    assert res.sample_size == 25
    assert (res.correct, res.incorrect) == (25, 0)
    assert res.accuracy == pytest.approx(1.0)
    assert res.precision == pytest.approx(1.0)
    assert res.recall == pytest.approx(1.0)
    assert res.f1_score == pytest.approx(1.0)
    assert res.passed and not res.inconclusive
    assert latest_canary(store, rv.id) == res


def test_canary_uses_corrections_as_ground_truth(store: InMemoryStore) -> None:
    _seed_history(store, matching=15, other=10)
    for row in store.query("transactions", {"merchant_name": "Blue Bottle Coffee"})[:10]:
        record_correction(store, org_id=ORG, tx_id=row["id"], new_category_id="supplies_inventory", actor_id="u1")
    rv = _version(store)

    res = run_canary_test(store, rv.id, as_of=AS_OF)

    assert res.sample_size == 25
    assert (res.correct, res.incorrect) == (15, 10)
    assert res.accuracy == pytest.approx(0.6)
    assert res.precision == pytest.approx(5 / 15)
    assert not res.passed


def test_small_sample_is_inconclusive(store: InMemoryStore) -> None:
    _seed_history(store, matching=3, other=2)
    rv = _version(store)
    res = run_canary_test(store, rv.id, as_of=AS_OF)
    assert res.sample_size == 5
    assert res.inconclusive
    assert not res.passed


def test_recent_and_uncategorized_transactions_are_not_sampled(store: InMemoryStore) -> None:
    _seed_history(store, matching=15, other=10)
    _seed_history(store, matching=5, other=0, day=date(2024, 3, 18))
    insert_tx(store, merchant_name="Blue Bottle Coffee", category_id=None, date=HISTORY_DAY)
    insert_tx(store, org_id="org-2", merchant_name="Blue Bottle Coffee", category_id="meals", date=HISTORY_DAY)
    rv = _version(store)

    res = run_canary_test(store, rv.id, as_of=AS_OF)

    assert res.sample_size == 25


def test_canary_sample_is_capped(store: InMemoryStore) -> None:
    _seed_history(store, matching=30, other=0)
    rv = _version(store)
    res = run_canary_test(store, rv.id, config=CanaryConfig(sample_size=20), as_of=AS_OF)
    assert res.sample_size == 20
    assert res.passed


def test_canary_for_missing_version(store: InMemoryStore) -> None:
    with pytest.raises(RecordNotFoundError):
        run_canary_test(store, "nope", as_of=AS_OF)


# ---- Promotion and rollback ---------------------------------------------------------------


def test_promote_requires_a_canary(store: InMemoryStore) -> None:
    rv = _version(store)
    with pytest.raises(PreconditionError, match="no canary"):
        promote_rule_version(store, rv.id, actor_id="admin")
    assert not _reload(store, rv).is_active


def test_promote_requires_latest_canary_to_pass(store: InMemoryStore) -> None:
    _seed_history(store)
    rv = _version(store)
    assert run_canary_test(store, rv.id, as_of=AS_OF).passed
    failed = run_canary_test(store, rv.id, config=CanaryConfig(min_sample=100), as_of=AS_OF)
    assert failed.inconclusive

    with pytest.raises(PreconditionError, match="failed its latest canary"):
        promote_rule_version(store, rv.id, actor_id="admin")


def test_promote_swaps_the_active_version(store: InMemoryStore) -> None:
    _seed_history(store)
    manual = _version(store, source="manual", confidence=0.7)
    learned = _version(store, source="learned", confidence=0.9)
    canary = run_canary_test(store, learned.id, as_of=AS_OF)

    promoted = promote_rule_version(store, learned.id, actor_id="admin")

    assert promoted.is_active
    assert promoted.deactivated_at is None
    old = _reload(store, manual)
    assert not old.is_active
    assert old.deactivation_reason == REPLACED_REASON
    assert store.get("canary_results", canary.id)["promoted"] is True
    assert [rv.id for rv in get_active_rule_versions(store, ORG)] == [learned.id]
    assert [e["action"] for e in store.query("audit_log", {"entity_id": learned.id})] == [
        "rule_version_created",
        "rule_version_promoted",
    ]


def test_rollback_restores_parent(store: InMemoryStore) -> None:
    v1 = _version(store, source="manual")
    v2 = _version(store, source="manual", category_id="supplies_inventory")

    restored = rollback_rule_version(store, v2.id, actor_id="admin", reason="too many corrections")

    assert restored.id == v1.id
    assert restored.is_active
    rolled = _reload(store, v2)
    assert not rolled.is_active
    assert rolled.deactivation_reason == "too many corrections"
    assert rolled.deactivated_by == "admin"
    assert [rv.id for rv in get_active_rule_versions(store, ORG)] == [v1.id]


def test_rollback_of_replaced_version_is_refused(store: InMemoryStore) -> None:
    v1 = _version(store, source="manual", pattern="acme")
    v2 = _version(store, source="manual", pattern="acme", category_id="supplies_inventory")
    v3 = _version(store, source="manual", pattern="acme", category_id="office_admin")

    with pytest.raises(PreconditionError, match="not active"):
        rollback_rule_version(store, v2.id, actor_id="admin")

    assert [rv.id for rv in get_active_rule_versions(store, ORG)] == [v3.id]
    assert not _reload(store, v1).is_active


def test_rollback_leaves_a_single_active_version(store: InMemoryStore) -> None:
    v1 = _version(store, source="manual", pattern="acme")
    v2 = _version(store, source="manual", pattern="acme", category_id="supplies_inventory")
    v3 = _version(store, source="manual", pattern="acme", category_id="office_admin")

    restored = rollback_rule_version(store, v3.id, actor_id="admin")

    assert restored.id == v2.id
    assert [rv.id for rv in get_active_rule_versions(store, ORG)] == [v2.id]
    assert not _reload(store, v1).is_active


def test_rollback_refuses_to_restore_unvetted_learned_parent(store: InMemoryStore) -> None:
    learned = _version(store, source="learned")
    manual = _version(store, source="manual", category_id="supplies_inventory")
    assert manual.parent_version_id == learned.id

    with pytest.raises(PreconditionError, match="without a passing canary"):
        rollback_rule_version(store, manual.id, actor_id="admin")

    assert _reload(store, manual).is_active
    assert not _reload(store, learned).is_active


def test_rollback_without_parent_fails(store: InMemoryStore) -> None:
    v1 = _version(store, source="manual")
    with pytest.raises(PreconditionError, match="no parent"):
        rollback_rule_version(store, v1.id, actor_id="admin")
    assert _reload(store, v1).is_active


def test_canary_and_promote(store: InMemoryStore) -> None:
    _seed_history(store)
    good = _version(store)
    result, promoted = canary_and_promote(store, good.id, actor_id="admin", as_of=AS_OF)
    assert result.passed
    assert promoted is not None and promoted.is_active

    bad = _version(store, pattern="Office Depot", category_id="meals")
    result, promoted = canary_and_promote(store, bad.id, actor_id="admin", as_of=AS_OF)
    assert not result.passed
    assert promoted is None
    assert not _reload(store, bad).is_active


# ---- Corrections and learning -------------------------------------------------------------


def test_record_correction_updates_the_transaction(store: InMemoryStore) -> None:
    tx = insert_tx(store, category_id="meals", confidence=0.7, needs_review=True, decision_source="llm")

    correction, oscillation = record_correction(
        store, org_id=ORG, tx_id=tx.id, new_category_id="office_admin", actor_id="u1"
    )

    assert correction.old_category_id == "meals"
    assert correction.new_category_id == "office_admin"
    assert oscillation is None
    row = store.get("transactions", tx.id)
    assert row["category_id"] == "office_admin"
    assert row["confidence"] == 1.0
    assert row["decision_source"] == "manual"
    assert row["needs_review"] is False
    assert row["reviewed"] is True
    assert store.query("audit_log", {"action": "transaction_corrected"})[0]["entity_id"] == tx.id


def test_record_correction_checks_tenant_and_category(store: InMemoryStore) -> None:
    tx = insert_tx(store, org_id="org-2", category_id="meals")
    with pytest.raises(RecordNotFoundError):
        record_correction(store, org_id=ORG, tx_id=tx.id, new_category_id="office_admin", actor_id="u1")
    with pytest.raises(ValueError):
        record_correction(store, org_id="org-2", tx_id=tx.id, new_category_id="operating_expenses", actor_id="u1")
    assert store.query("corrections") == []


def test_learn_rules_from_consistent_corrections(store: InMemoryStore) -> None:
    for _ in range(4):
        tx = insert_tx(store, merchant_name="Blue Bottle Coffee", mcc="5814", category_id="miscellaneous")
        record_correction(store, org_id=ORG, tx_id=tx.id, new_category_id="meals", actor_id="u1")

    learned = learn_rules_from_corrections(store, ORG, min_support=3)

    assert {(rv.rule_type, rv.pattern) for rv in learned} == {("mcc", "5814"), ("vendor", "blue bottle coffee")}
    for rv in learned:
        assert rv.source == "learned"
        assert not rv.is_active
        assert rv.category_id == "meals"
        assert rv.confidence == pytest.approx(0.82)
        assert dict(rv.metadata) == {"support": 4, "total": 4}

    # Pending candidates are not duplicated.
    assert learn_rules_from_corrections(store, ORG, min_support=3) == []


def test_learning_requires_support_and_agreement(store: InMemoryStore) -> None:
    targets = ["meals", "meals", "meals", "office_admin"]
    for target in targets:
        tx = insert_tx(store, merchant_name="Corner Deli", category_id="miscellaneous")
        record_correction(store, org_id=ORG, tx_id=tx.id, new_category_id=target, actor_id="u1")
    # 3 of 4 agree (75%): below the agreement bar.
    assert learn_rules_from_corrections(store, ORG, min_support=3) == []
    # Not enough support at all.
    assert learn_rules_from_corrections(store, ORG, min_support=5) == []
