"""SqlStore against a temporary SQLite database."""

from __future__ import annotations

from datetime import date, datetime, timedelta
from pathlib import Path

import pytest
from ledger_categorizer.drift import acknowledge_alert, run_weekly_drift_check
from ledger_categorizer.errors import RecordNotFoundError
from ledger_categorizer.learning_loop import (
    create_rule_version,
    get_active_rule_versions,
    promote_rule_version,
    record_correction,
    run_canary_test,
)
from ledger_categorizer.persistence import SqlStore

from tests.helpers.db import bootstrap_sqlite_db
from tests.helpers.factories import ORG, insert_tx, make_tx


@pytest.fixture()
def store(tmp_path: Path) -> SqlStore:
    url = bootstrap_sqlite_db(tmp_path / "categorizer.sqlite3")
    return SqlStore(database_url=url)


# ---- CRUD ------------------------------------------------------------------------------


def test_insert_and_get(store: SqlStore) -> None:
    tx = make_tx(merchant_name="Starbucks", raw={"plaid_id": "p-1"})
    row = store.insert("transactions", tx.to_record())

    assert row["id"] == tx.id
    assert row["date"] == date(2024, 3, 4)
    assert row["raw"] == {"plaid_id": "p-1"}
    assert row["needs_review"] is False
    assert row["created_at"].tzinfo is not None
    assert store.get("transactions", tx.id) == row
    assert store.get("transactions", "missing") is None


def test_unknown_fields_are_ignored(store: SqlStore) -> None:
    record = make_tx().to_record()
    record["not_a_column"] = "x"
    row = store.insert("transactions", record)
    assert "not_a_column" not in row


def test_update(store: SqlStore) -> None:
    tx = insert_tx(store)
    row = store.update("transactions", tx.id, {"category_id": "meals", "confidence": 0.9})
    assert (row["category_id"], row["confidence"]) == ("meals", 0.9)
    with pytest.raises(RecordNotFoundError):
        store.update("transactions", "missing", {"category_id": "meals"})


def test_delete_by_membership(store: SqlStore) -> None:
    keep = insert_tx(store)
    gone = [insert_tx(store), insert_tx(store)]

    assert store.delete("transactions", {"id": tuple(t.id for t in gone)}) == 2
    assert [r["id"] for r in store.query("transactions")] == [keep.id]
    assert store.delete("transactions", {"id": "missing"}) == 0
    with pytest.raises(ValueError):
        store.delete("transactions", {})


def test_missing_read_back_raises_not_found(store: SqlStore, monkeypatch: pytest.MonkeyPatch) -> None:
    tx = insert_tx(store)
    monkeypatch.setattr(store, "_select_one", lambda *args, **kwargs: None)

    with pytest.raises(RecordNotFoundError):
        store.insert("transactions", make_tx().to_record())
    with pytest.raises(RecordNotFoundError):
        store.update("transactions", tx.id, {"category_id": "meals"})


def test_unknown_table_or_column(store: SqlStore) -> None:
    with pytest.raises(ValueError):
        store.get("nope", "x")
    with pytest.raises(ValueError):
        store.query("transactions", {"color": "blue"})
    with pytest.raises(ValueError):
        store.query("transactions", order_by="color")


# ---- Queries -------------------------------------------------------------------------------


def test_query_filters_and_ordering(store: SqlStore) -> None:
    for day, cat in [(1, "meals"), (3, None), (5, "office_admin"), (9, "meals")]:
        insert_tx(store, date=date(2024, 3, day), category_id=cat)
    insert_tx(store, org_id="org-2", date=date(2024, 3, 2), category_id="meals")

    uncategorized = store.query("transactions", {"org_id": ORG, "category_id": None})
    assert [r["date"].day for r in uncategorized] == [3]

    either = store.query("transactions", {"category_id": ("meals", "office_admin")}, order_by="date")
    assert [r["date"].day for r in either] == [1, 2, 5, 9]

    window = store.query(
        "transactions",
        {"org_id": ORG},
        date_field="date",
        since=date(2024, 3, 3),
        until=date(2024, 3, 5),
        order_by="date",
        descending=True,
    )
    assert [r["date"].day for r in window] == [5, 3]

    latest = store.query("transactions", {"org_id": ORG}, order_by="date", descending=True, limit=1)
    assert latest[0]["date"] == date(2024, 3, 9)


def test_datetime_range_on_timestamp_column(store: SqlStore) -> None:
    tx = insert_tx(store)
    stamp = store.get("transactions", tx.id)["created_at"]
    assert store.query("transactions", date_field="created_at", since=stamp - timedelta(seconds=1))
    assert store.query("transactions", date_field="created_at", since=stamp + timedelta(hours=1)) == []
    naive = datetime(2000, 1, 1)
    assert len(store.query("transactions", date_field="created_at", since=naive)) == 1
    with pytest.raises(ValueError):
        store.query("transactions", since=date(2024, 1, 1))


def test_upsert_preserves_identity(store: SqlStore) -> None:
    record = {
        "org_id": ORG,
        "snapshot_date": date(2024, 3, 4),
        "category_id": "meals",
        "transaction_count": 1,
        "total_transactions": 2,
        "percentage": 50.0,
        "avg_confidence": 0.9,
        "source_breakdown": {"pass1": 1},
    }
    first = store.upsert("distribution_snapshots", record, key=("org_id", "snapshot_date", "category_id"))
    second = store.upsert(
        "distribution_snapshots",
        {**record, "transaction_count": 2, "percentage": 100.0},
        key=("org_id", "snapshot_date", "category_id"),
    )

    assert second["id"] == first["id"]
    assert second["created_at"] == first["created_at"]
    assert second["percentage"] == 100.0
    assert len(store.query("distribution_snapshots")) == 1
    with pytest.raises(ValueError):
        store.upsert("distribution_snapshots", record, key=())


def test_serialized_is_reentrant(store: SqlStore) -> None:
    with store.serialized("rule_lineage:a"):
        with store.serialized("rule_lineage:a"):
            insert_tx(store)
    assert len(store.query("transactions")) == 1


# ---- Engine flows on SQL ------------------------------------------------------------------


def test_learning_loop_on_sql(store: SqlStore) -> None:
    for _ in range(20):
        insert_tx(store, merchant_name="Blue Bottle Coffee", category_id="meals", date=date(2024, 3, 1))
    for _ in range(5):
        insert_tx(store, merchant_name="Office Depot", category_id="office_admin", date=date(2024, 3, 1))
    manual = create_rule_version(
        store, org_id=ORG, rule_type="vendor", pattern="Blue Bottle", category_id="meals", confidence=0.8, source="manual"
    )
    learned = create_rule_version(
        store,
        org_id=ORG,
        rule_type="vendor",
        pattern="blue bottle",
        category_id="meals",
        confidence=0.9,
        source="learned",
        metadata={"support": 5, "total": 5},
    )

    canary = run_canary_test(store, learned.id, as_of=date(2024, 3, 20))
    assert canary.sample_size == 25 and canary.passed
    promote_rule_version(store, learned.id, actor_id="admin")

    active = get_active_rule_versions(store, ORG)
    assert [rv.id for rv in active] == [learned.id]
    assert dict(active[0].metadata) == {"support": 5, "total": 5}
    assert store.get("rule_versions", manual.id)["is_active"] is False
    assert store.get("canary_results", canary.id)["promoted"] is True
    assert {r["action"] for r in store.query("audit_log")} == {"rule_version_created", "rule_version_promoted"}


def test_oscillation_on_sql(store: SqlStore) -> None:
    tx = insert_tx(store, category_id="meals")
    record_correction(store, org_id=ORG, tx_id=tx.id, new_category_id="office_admin", actor_id="u1")
    _, osc = record_correction(store, org_id=ORG, tx_id=tx.id, new_category_id="meals", actor_id="u1")

    assert osc is not None
    assert osc.oscillation_count == 2
    assert [e.category_id for e in osc.sequence] == ["meals", "office_admin", "meals"]
    assert osc.sequence[0].at.tzinfo is not None


def test_drift_rerun_on_sql(store: SqlStore) -> None:
    for _ in range(8):
        insert_tx(store, date=date(2024, 3, 5), category_id="meals", decision_source="pass1", confidence=0.9)
    for _ in range(2):
        insert_tx(store, date=date(2024, 3, 5), category_id="office_admin", decision_source="llm", confidence=0.7)
    for cat in ("meals", "office_admin") * 5:
        insert_tx(store, date=date(2024, 3, 12), category_id=cat, decision_source="pass1", confidence=0.9)
    run_weekly_drift_check(store, ORG, as_of=date(2024, 3, 6))

    report = run_weekly_drift_check(store, ORG, as_of=date(2024, 3, 13))
    assert {a.severity for a in report.alerts} == {"high", "critical"}
    acknowledge_alert(store, report.alerts[0].id, actor_id="analyst", notes="expected")

    rerun = run_weekly_drift_check(store, ORG, as_of=date(2024, 3, 13))

    assert sorted(a.id for a in rerun.alerts) == sorted(a.id for a in report.alerts)
    assert len(store.query("drift_alerts")) == len(report.alerts)
    assert store.get("drift_alerts", report.alerts[0].id)["acknowledged"] is True
    assert len(store.query("confidence_snapshots", {"snapshot_date": date(2024, 3, 13)})) == 2
