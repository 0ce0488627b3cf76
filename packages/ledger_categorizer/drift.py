"""Weekly drift detection over category distribution and confidence.

Steps
-----
1. Snapshot the week (Monday to Sunday) containing ``snapshot_date``:
   each category's share of categorized transactions, and confidence
   statistics per decision source plus ``"overall"``.
2. Compare with the snapshots dated exactly one week earlier.
3. Raise a :class:`DriftAlert` when the relative change of a metric is at
   least ``threshold_pct`` percent.
4. Hand new ``critical``/``high`` alerts to an optional :class:`Notifier`.

Snapshots and alerts are upserted (alerts per ``(org_id, metric_name,
detection_date)``), so re-running a day neither duplicates rows nor resets
acknowledgements.
"""

from __future__ import annotations

import math
from collections import Counter, defaultdict
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Protocol

from .config import DriftConfig
from .errors import PreconditionError, RecordNotFoundError
from .logging_setup import get_logger, job_context
from .models import ConfidenceSnapshot, DistributionSnapshot, DriftAlert, Severity
from .store import Store, new_id, utcnow

_logger = get_logger(__name__)

OVERALL = "overall"
_UNKNOWN_SOURCE = "unknown"
_LOW_CONFIDENCE = 0.6
_HIGH_CONFIDENCE = 0.8
_ACK_FIELDS = ("acknowledged", "acknowledged_by", "acknowledged_at", "notes")


class Notifier(Protocol):
    def notify(self, alert: DriftAlert) -> None: ...


@dataclass(frozen=True, slots=True)
class DriftCheckReport:
    org_id: str
    snapshot_date: date
    distribution: tuple[DistributionSnapshot, ...]
    confidence: tuple[ConfidenceSnapshot, ...]
    alerts: tuple[DriftAlert, ...]
    notified: int = 0


# ---- Statistics -------------------------------------------------------------


def percentile_cont(values: Sequence[float], q: float) -> float:
    """Linear-interpolated percentile (``PERCENTILE_CONT`` semantics)."""

    if not values:
        raise ValueError("percentile of an empty sequence")
    ordered = sorted(values)
    pos = q * (len(ordered) - 1)
    lo = math.floor(pos)
    hi = math.ceil(pos)
    if lo == hi:
        return ordered[lo]
    return ordered[lo] + (ordered[hi] - ordered[lo]) * (pos - lo)


def distribution_severity(change_pct: float) -> Severity:
    if change_pct >= 50:
        return "critical"
    if change_pct >= 25:
        return "high"
    if change_pct >= 15:
        return "medium"
    return "low"


def confidence_severity(change_pct: float) -> Severity:
    if change_pct >= 20:
        return "high"
    if change_pct >= 15:
        return "medium"
    return "low"


def change_pct(current: float, previous: float) -> float | None:
    if previous == 0:
        return None
    return abs((current - previous) / previous * 100.0)


def _week(day: date) -> tuple[date, date]:
    start = day - timedelta(days=day.weekday())
    return start, start + timedelta(days=6)


# ---- Snapshots --------------------------------------------------------------


def _drop_stale(store: Store, table: str, org_id: str, snapshot_date: date, field: str, keep: set[str]) -> int:
    """Delete rows of this snapshot date whose ``field`` is no longer produced."""

    existing = store.query(table, {"org_id": org_id, "snapshot_date": snapshot_date})
    stale = tuple(r["id"] for r in existing if r[field] not in keep)
    if not stale:
        return 0
    removed = store.delete(table, {"id": stale})
    _logger.info(
        "drift:stale_snapshots_removed table=%s org_id=%s date=%s removed=%d",
        table,
        org_id,
        snapshot_date.isoformat(),
        removed,
    )
    return removed


def create_distribution_snapshot(
    store: Store, org_id: str, snapshot_date: date
) -> list[DistributionSnapshot]:
    start, end = _week(snapshot_date)
    rows = [
        r
        for r in store.query("transactions", {"org_id": org_id}, date_field="date", since=start, until=end)
        if r.get("category_id") is not None
    ]
    by_cat: dict[str, list[dict]] = defaultdict(list)
    for r in rows:
        by_cat[r["category_id"]].append(r)
    _drop_stale(store, "distribution_snapshots", org_id, snapshot_date, "category_id", set(by_cat))
    if not rows:
        return []
    total = len(rows)

    out: list[DistributionSnapshot] = []
    for category_id, members in sorted(by_cat.items()):
        confs = [m["confidence"] for m in members if m.get("confidence") is not None]
        breakdown = Counter(m.get("decision_source") or _UNKNOWN_SOURCE for m in members)
        snap = DistributionSnapshot(
            id=new_id(),
            org_id=org_id,
            snapshot_date=snapshot_date,
            category_id=category_id,
            transaction_count=len(members),
            total_transactions=total,
            percentage=len(members) / total * 100.0,
            avg_confidence=sum(confs) / len(confs) if confs else None,
            source_breakdown=dict(breakdown),
        )
        record = snap.to_record()
        record.pop("id")
        row = store.upsert("distribution_snapshots", record, key=("org_id", "snapshot_date", "category_id"))
        out.append(DistributionSnapshot.from_record(row))
    return out


def _confidence_stats(org_id: str, snapshot_date: date, source: str, confs: list[float]) -> ConfidenceSnapshot:
    return ConfidenceSnapshot(
        id=new_id(),
        org_id=org_id,
        snapshot_date=snapshot_date,
        source=source,
        avg_confidence=sum(confs) / len(confs),
        median_confidence=percentile_cont(confs, 0.5),
        p25_confidence=percentile_cont(confs, 0.25),
        p75_confidence=percentile_cont(confs, 0.75),
        p90_confidence=percentile_cont(confs, 0.90),
        transaction_count=len(confs),
        low_confidence_count=sum(1 for c in confs if c < _LOW_CONFIDENCE),
        medium_confidence_count=sum(1 for c in confs if _LOW_CONFIDENCE <= c <= _HIGH_CONFIDENCE),
        high_confidence_count=sum(1 for c in confs if c > _HIGH_CONFIDENCE),
    )


def create_confidence_snapshot(
    store: Store, org_id: str, snapshot_date: date
) -> list[ConfidenceSnapshot]:
    start, end = _week(snapshot_date)
    rows = [
        r
        for r in store.query("transactions", {"org_id": org_id}, date_field="date", since=start, until=end)
        if r.get("confidence") is not None
    ]
    groups: dict[str, list[float]] = defaultdict(list)
    for r in rows:
        groups[r.get("decision_source") or _UNKNOWN_SOURCE].append(float(r["confidence"]))
    if rows:
        groups[OVERALL] = [float(r["confidence"]) for r in rows]
    _drop_stale(store, "confidence_snapshots", org_id, snapshot_date, "source", set(groups))
    if not rows:
        return []

    out: list[ConfidenceSnapshot] = []
    for source, confs in sorted(groups.items()):
        record = _confidence_stats(org_id, snapshot_date, source, confs).to_record()
        record.pop("id")
        row = store.upsert("confidence_snapshots", record, key=("org_id", "snapshot_date", "source"))
        out.append(ConfidenceSnapshot.from_record(row))
    return out


# ---- Detection --------------------------------------------------------------


def _record_alert(store: Store, alert: DriftAlert) -> tuple[DriftAlert, bool]:
    existing = store.query(
        "drift_alerts",
        {"org_id": alert.org_id, "metric_name": alert.metric_name, "detection_date": alert.detection_date},
        limit=1,
    )
    record = alert.to_record()
    record.pop("id")
    record.pop("created_at")
    if existing:
        for k in _ACK_FIELDS:
            record.pop(k)
    row = store.upsert("drift_alerts", record, key=("org_id", "metric_name", "detection_date"))
    return DriftAlert.from_record(row), not existing


def detect_drift(
    store: Store,
    org_id: str,
    detection_date: date,
    *,
    config: DriftConfig | None = None,
) -> list[tuple[DriftAlert, bool]]:
    """Compare ``detection_date`` snapshots with those one week earlier.

    Returns ``(alert, created)`` pairs; ``created`` is False when the alert
    already existed for that day.
    """

    cfg = config or DriftConfig()
    previous_date = detection_date - timedelta(days=7)
    out: list[tuple[DriftAlert, bool]] = []

    cur_dist = {
        r["category_id"]: float(r["percentage"])
        for r in store.query("distribution_snapshots", {"org_id": org_id, "snapshot_date": detection_date})
    }
    prev_dist = {
        r["category_id"]: float(r["percentage"])
        for r in store.query("distribution_snapshots", {"org_id": org_id, "snapshot_date": previous_date})
    }
    if cur_dist:
        for category_id in sorted(set(cur_dist) | set(prev_dist)):
            if category_id not in prev_dist:
                continue
            # A category missing this week counts as 0%.
            current = cur_dist.get(category_id, 0.0)
            pct = change_pct(current, prev_dist[category_id])
            if pct is None or pct < cfg.threshold_pct:
                continue
            out.append(
                _record_alert(
                    store,
                    DriftAlert(
                        id=new_id(),
                        org_id=org_id,
                        alert_type="distribution",
                        metric_name=f"category_{category_id}_distribution",
                        detection_date=detection_date,
                        current_value=current,
                        previous_value=prev_dist[category_id],
                        change_pct=pct,
                        threshold_pct=cfg.threshold_pct,
                        severity=distribution_severity(pct),
                    ),
                )
            )

    prev_conf = {
        r["source"]: float(r["avg_confidence"])
        for r in store.query("confidence_snapshots", {"org_id": org_id, "snapshot_date": previous_date})
    }
    for r in store.query(
        "confidence_snapshots", {"org_id": org_id, "snapshot_date": detection_date}, order_by="source"
    ):
        previous = prev_conf.get(r["source"])
        if previous is None:
            continue
        current = float(r["avg_confidence"])
        pct = change_pct(current, previous)
        if pct is None or pct < cfg.threshold_pct:
            continue
        out.append(
            _record_alert(
                store,
                DriftAlert(
                    id=new_id(),
                    org_id=org_id,
                    alert_type="confidence",
                    metric_name=f"{r['source']}_avg_confidence",
                    detection_date=detection_date,
                    current_value=current,
                    previous_value=previous,
                    change_pct=pct,
                    threshold_pct=cfg.threshold_pct,
                    severity=confidence_severity(pct),
                ),
            )
        )

    for alert, created in out:
        if created:
            _logger.warning(
                "drift:alert org_id=%s metric=%s change_pct=%.1f severity=%s",
                org_id,
                alert.metric_name,
                alert.change_pct,
                alert.severity,
            )
    return out


def _notify(notifier: Notifier, alert: DriftAlert) -> bool:
    try:
        notifier.notify(alert)
        return True
    except Exception as e:  # noqa: BLE001
        _logger.warning(
            "drift:notify_failed org_id=%s metric=%s error=%s", alert.org_id, alert.metric_name, e.__class__.__name__
        )
        return False


def run_weekly_drift_check(
    store: Store,
    org_id: str,
    *,
    as_of: date | None = None,
    config: DriftConfig | None = None,
    notifier: Notifier | None = None,
) -> DriftCheckReport:
    """Snapshot, compare and alert for one organization."""

    day = as_of or utcnow().date()
    with job_context("drift_check", org_id=org_id, date=day.isoformat()):
        dist = create_distribution_snapshot(store, org_id, day)
        conf = create_confidence_snapshot(store, org_id, day)
        results = detect_drift(store, org_id, day, config=config)

        notified = 0
        if notifier is not None:
            for alert, created in results:
                if created and alert.severity in ("critical", "high"):
                    notified += _notify(notifier, alert)
        _logger.info(
            "drift:check_done org_id=%s date=%s categories=%d sources=%d alerts=%d notified=%d",
            org_id,
            day.isoformat(),
            len(dist),
            len(conf),
            len(results),
            notified,
        )
    return DriftCheckReport(
        org_id=org_id,
        snapshot_date=day,
        distribution=tuple(dist),
        confidence=tuple(conf),
        alerts=tuple(a for a, _ in results),
        notified=notified,
    )


def acknowledge_alert(
    store: Store, alert_id: str, *, actor_id: str, notes: str | None = None
) -> DriftAlert:
    row = store.get("drift_alerts", alert_id)
    if row is None:
        raise RecordNotFoundError("drift_alerts", alert_id)
    if row.get("acknowledged"):
        raise PreconditionError(f"drift alert {alert_id} is already acknowledged")
    updated = store.update(
        "drift_alerts",
        alert_id,
        {"acknowledged": True, "acknowledged_by": actor_id, "acknowledged_at": utcnow(), "notes": notes},
    )
    return DriftAlert.from_record(updated)


def unacknowledged_alerts(store: Store, org_id: str) -> list[DriftAlert]:
    rows = store.query("drift_alerts", {"org_id": org_id, "acknowledged": False}, order_by="detection_date")
    return [DriftAlert.from_record(r) for r in rows]


__all__ = [
    "DriftCheckReport",
    "Notifier",
    "OVERALL",
    "acknowledge_alert",
    "change_pct",
    "confidence_severity",
    "create_confidence_snapshot",
    "create_distribution_snapshot",
    "detect_drift",
    "distribution_severity",
    "percentile_cont",
    "run_weekly_drift_check",
    "unacknowledged_alerts",
]
