"""Weekly rule effectiveness."""

from __future__ import annotations

from datetime import date

import pytest
from ledger_categorizer.effectiveness import measurement_week, track_rule_effectiveness
from ledger_categorizer.learning_loop import create_rule_version, record_correction
from ledger_categorizer.store import InMemoryStore

from tests.helpers.factories import ORG, insert_tx

WEEK_DAY = date(2024, 3, 6)


@pytest.mark.parametrize(
    ("day", "expected"),
    [
        (date(2024, 3, 6), (date(2024, 3, 4), date(2024, 3, 10))),
        (date(2024, 3, 4), (date(2024, 3, 4), date(2024, 3, 10))),
        (date(2024, 3, 10), (date(2024, 3, 4), date(2024, 3, 10))),
    ],
)
def test_measurement_week(day: date, expected: tuple[date, date]) -> None:
    assert measurement_week(day) == expected


@pytest.fixture()
def store() -> InMemoryStore:
    store = InMemoryStore()
    create_rule_version(
        store,
        org_id=ORG,
        rule_type="vendor",
        pattern="Blue Bottle",
        category_id="meals",
        confidence=0.9,
        source="manual",
        created_by="owner",
    )
    # Active but never matching anything this week.
    create_rule_version(
        store,
        org_id=ORG,
        rule_type="mcc",
        pattern="5999",
        category_id="supplies_inventory",
        confidence=0.85,
        source="manual",
        created_by="owner",
    )
    return store


def _coffee(store: InMemoryStore, day: int, category_id: str = "meals"):
    return insert_tx(store, merchant_name="Blue Bottle Coffee", category_id=category_id, date=date(2024, 3, day))


def _correct(store: InMemoryStore, tx_id: str, target: str) -> None:
    record_correction(store, org_id=ORG, tx_id=tx_id, new_category_id=target, actor_id="u1")


def test_counts_corrected_applications(store: InMemoryStore) -> None:
    _coffee(store, 5)
    wrong = _coffee(store, 6)
    _correct(store, wrong.id, "office_admin")
    flipped_back = _coffee(store, 7)
    _correct(store, flipped_back.id, "office_admin")
    _correct(store, flipped_back.id, "meals")
    _coffee(store, 8, category_id="office_admin")  # rule category never applied
    _coffee(store, 11)  # following week
    insert_tx(store, merchant_name="Office Depot", category_id="meals", date=date(2024, 3, 5))

    (eff,) = track_rule_effectiveness(store, ORG, WEEK_DAY)

    assert eff.applications_count == 3
    assert eff.correct_count == 2
    assert eff.incorrect_count == 1
    assert eff.precision == pytest.approx(2 / 3)
    assert eff.avg_confidence == pytest.approx(0.9)
    assert eff.measurement_date == WEEK_DAY


def test_rerun_updates_the_same_row(store: InMemoryStore) -> None:
    _coffee(store, 5)
    first = track_rule_effectiveness(store, ORG, WEEK_DAY)
    wrong = _coffee(store, 6)
    _correct(store, wrong.id, "office_admin")

    second = track_rule_effectiveness(store, ORG, WEEK_DAY)

    assert first[0].id == second[0].id
    assert second[0].applications_count == 2
    assert second[0].incorrect_count == 1
    assert len(store.query("rule_effectiveness")) == 1


def test_inactive_rules_and_other_orgs_are_ignored(store: InMemoryStore) -> None:
    create_rule_version(
        store,
        org_id=ORG,
        rule_type="vendor",
        pattern="Office Depot",
        category_id="office_admin",
        confidence=0.9,
        source="learned",
    )
    insert_tx(store, merchant_name="Office Depot", category_id="office_admin", date=date(2024, 3, 5))
    insert_tx(store, org_id="org-2", merchant_name="Blue Bottle Coffee", category_id="meals", date=date(2024, 3, 5))

    assert track_rule_effectiveness(store, ORG, WEEK_DAY) == []
    assert store.query("rule_effectiveness") == []
