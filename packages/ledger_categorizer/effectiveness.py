"""Weekly per-rule effectiveness measurement.

For every active rule version of an organization, count the transactions of
the measurement week (Monday to Sunday around ``measurement_date``) that the
rule matches and that were assigned the rule's category before any human
correction. Those later corrected to a different category count as
incorrect. Rows are upserted per ``(org_id, rule_version_id,
measurement_date)`` so the job is safe to re-run.
"""

from __future__ import annotations

from datetime import date, timedelta

from .learning_loop import get_active_rule_versions
from .logging_setup import get_logger
from .models import RuleEffectiveness, RuleVersion, Transaction
from .rules.ruleset import rule_version_matches
from .store import Store, new_id, utcnow

_logger = get_logger(__name__)


def measurement_week(measurement_date: date) -> tuple[date, date]:
    start = measurement_date - timedelta(days=measurement_date.weekday())
    return start, start + timedelta(days=6)


def _applied_and_final(store: Store, tx: Transaction) -> tuple[str | None, str | None]:
    """(category before corrections, category after the latest correction)."""

    history = store.query("corrections", {"org_id": tx.org_id, "tx_id": tx.id}, order_by="created_at")
    if not history:
        return tx.category_id, tx.category_id
    return history[0]["old_category_id"], history[-1]["new_category_id"]


def measure_rule(
    store: Store, rv: RuleVersion, transactions: list[Transaction], measurement_date: date
) -> RuleEffectiveness | None:
    applications = incorrect = 0
    for tx in transactions:
        if not rule_version_matches(rv, tx):
            continue
        applied, final = _applied_and_final(store, tx)
        if applied != rv.category_id:
            continue
        applications += 1
        if final != rv.category_id:
            incorrect += 1
    if applications == 0:
        return None
    correct = applications - incorrect
    return RuleEffectiveness(
        id=new_id(),
        org_id=rv.org_id,
        rule_version_id=rv.id,
        measurement_date=measurement_date,
        applications_count=applications,
        correct_count=correct,
        incorrect_count=incorrect,
        avg_confidence=rv.confidence,
        precision=correct / applications,
    )


def track_rule_effectiveness(
    store: Store, org_id: str, measurement_date: date | None = None
) -> list[RuleEffectiveness]:
    """Measure every active rule of ``org_id``; rules never applied are skipped."""

    day = measurement_date or utcnow().date()
    start, end = measurement_week(day)
    rows = store.query("transactions", {"org_id": org_id}, date_field="date", since=start, until=end)
    txs = [Transaction.from_record(r) for r in rows]

    out: list[RuleEffectiveness] = []
    for rv in get_active_rule_versions(store, org_id):
        measured = measure_rule(store, rv, txs, day)
        if measured is None:
            continue
        record = measured.to_record()
        record.pop("id")
        row = store.upsert(
            "rule_effectiveness", record, key=("org_id", "rule_version_id", "measurement_date")
        )
        out.append(RuleEffectiveness.from_record(row))
    _logger.info(
        "effectiveness:tracked org_id=%s week_start=%s rules_measured=%d", org_id, start.isoformat(), len(out)
    )
    return out


__all__ = ["measure_rule", "measurement_week", "track_rule_effectiveness"]
