"""Back-and-forth corrections on a single transaction."""

from __future__ import annotations

import pytest
from ledger_categorizer.config import OscillationConfig
from ledger_categorizer.errors import PreconditionError, RecordNotFoundError
from ledger_categorizer.learning_loop import record_correction
from ledger_categorizer.oscillation import get_unresolved_oscillations, resolve_oscillation, revisit_span
from ledger_categorizer.store import InMemoryStore

from tests.helpers.factories import ORG, insert_tx


def _flip(store: InMemoryStore, tx_id: str, *targets: str):
    result = None
    for target in targets:
        _, result = record_correction(store, org_id=ORG, tx_id=tx_id, new_category_id=target, actor_id="u1")
    return result


@pytest.mark.parametrize(
    ("categories", "expected"),
    [
        (["a", "b", "a"], 2),
        (["a", "b", "c", "b"], 2),
        (["a", "b", "a", "b"], 3),
        (["a", "b", "c"], 0),
        (["a", "a", "b"], 0),
        ([], 0),
    ],
)
def test_revisit_span(categories: list[str], expected: int) -> None:
    assert revisit_span(categories) == expected


def test_single_change_is_not_an_oscillation() -> None:
    store = InMemoryStore()
    tx = insert_tx(store, category_id="meals")
    assert _flip(store, tx.id, "office_admin") is None
    assert store.query("oscillations") == []


def test_changing_twice_to_new_categories_is_not_an_oscillation() -> None:
    store = InMemoryStore()
    tx = insert_tx(store, category_id="meals")
    assert _flip(store, tx.id, "office_admin", "software_subscriptions") is None


def test_count_grows_with_each_flip() -> None:
    store = InMemoryStore()
    tx = insert_tx(store, category_id="meals")
    _flip(store, tx.id, "office_admin")

    counts = [_flip(store, tx.id, target).oscillation_count for target in ("meals", "office_admin", "meals")]

    assert counts == [2, 3, 4]
    (row,) = store.query("oscillations")
    assert row["tx_id"] == tx.id
    assert [e["category_id"] for e in row["sequence"]] == ["office_admin", "meals", "office_admin", "meals"]
    assert row["is_resolved"] is False


def test_window_limits_what_is_seen() -> None:
    store = InMemoryStore()
    tx = insert_tx(store, category_id="meals")
    cfg = OscillationConfig(window=1)
    record_correction(store, org_id=ORG, tx_id=tx.id, new_category_id="office_admin", actor_id="u1", oscillation_config=cfg)
    _, osc = record_correction(
        store, org_id=ORG, tx_id=tx.id, new_category_id="meals", actor_id="u1", oscillation_config=cfg
    )
    assert osc is None


def test_resolve_pins_the_category() -> None:
    store = InMemoryStore()
    tx = insert_tx(store, category_id="meals")
    osc = _flip(store, tx.id, "office_admin", "meals")

    resolved = resolve_oscillation(store, osc.id, final_category_id="office_admin", actor_id="controller")

    assert resolved.is_resolved
    assert resolved.final_category_id == "office_admin"
    assert resolved.resolved_by == "controller"
    assert resolved.resolved_at is not None
    row = store.get("transactions", tx.id)
    assert row["category_id"] == "office_admin"
    assert row["decision_source"] == "manual"
    assert get_unresolved_oscillations(store, ORG) == []

    with pytest.raises(PreconditionError):
        resolve_oscillation(store, osc.id, final_category_id="meals", actor_id="controller")


def test_resolve_validates_inputs() -> None:
    store = InMemoryStore()
    with pytest.raises(RecordNotFoundError):
        resolve_oscillation(store, "missing", final_category_id="meals", actor_id="u1")
    with pytest.raises(ValueError):
        resolve_oscillation(store, "missing", final_category_id="revenue", actor_id="u1")


def test_new_flip_reopens_a_resolved_entry() -> None:
    store = InMemoryStore()
    tx = insert_tx(store, category_id="meals")
    osc = _flip(store, tx.id, "office_admin", "meals", "office_admin")
    assert osc.oscillation_count == 3
    resolve_oscillation(store, osc.id, final_category_id="office_admin", actor_id="controller")

    reopened = _flip(store, tx.id, "meals")

    assert reopened.id == osc.id
    assert not reopened.is_resolved
    assert reopened.final_category_id is None
    # A resolved entry restarts from the observed span.
    assert reopened.oscillation_count == 3
    assert len(store.query("oscillations")) == 1


def test_unresolved_are_listed_most_frequent_first() -> None:
    store = InMemoryStore()
    calm = insert_tx(store, category_id="meals")
    busy = insert_tx(store, category_id="meals")
    other_org = insert_tx(store, org_id="org-2", category_id="meals")
    _flip(store, calm.id, "office_admin", "meals")
    _flip(store, busy.id, "office_admin", "meals", "office_admin", "meals")
    record_correction(store, org_id="org-2", tx_id=other_org.id, new_category_id="office_admin", actor_id="u2")
    record_correction(store, org_id="org-2", tx_id=other_org.id, new_category_id="meals", actor_id="u2")

    listed = get_unresolved_oscillations(store, ORG)

    assert [(o.tx_id, o.oscillation_count) for o in listed] == [(busy.id, 4), (calm.id, 2)]
