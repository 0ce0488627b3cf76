"""Detection and resolution of back-and-forth corrections.

A transaction oscillates when, within the last ``window`` corrections, its
category sequence returns to a category it already held (A -> B -> A). The
entry per ``(org_id, tx_id)`` is upserted so repeated detections increment it
instead of duplicating it. Resolution pins a final category.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any

from .config import OscillationConfig
from .errors import PreconditionError, RecordNotFoundError
from .logging_setup import get_logger
from .models import Oscillation, OscillationEvent
from .store import Store, new_id, utcnow
from .taxonomy import is_valid_leaf

_logger = get_logger(__name__)


def _category_sequence(window: Sequence[dict[str, Any]]) -> list[OscillationEvent]:
    events: list[OscillationEvent] = []
    first = window[0]
    if first.get("old_category_id") is not None:
        events.append(OscillationEvent(first["old_category_id"], first["created_at"], None))
    for c in window:
        events.append(OscillationEvent(c["new_category_id"], c["created_at"], c.get("actor_id")))
    return events


def revisit_span(categories: Sequence[str | None]) -> int:
    """Transitions from the first revisited category to the end; 0 if none.

    ``["a", "b", "a"]`` gives 2, ``["a", "b", "c", "b"]`` gives 2,
    ``["a", "b", "c"]`` gives 0.
    """

    last_seen: dict[str | None, int] = {}
    start: int | None = None
    for i, cat in enumerate(categories):
        prev = last_seen.get(cat)
        if prev is not None and prev < i - 1 and (start is None or prev < start):
            start = prev
        last_seen[cat] = i
    return 0 if start is None else len(categories) - 1 - start


def detect_oscillation(
    store: Store, org_id: str, tx_id: str, *, config: OscillationConfig | None = None
) -> Oscillation | None:
    """Inspect the transaction's recent corrections; record an oscillation if any."""

    cfg = config or OscillationConfig()
    history = store.query("corrections", {"org_id": org_id, "tx_id": tx_id}, order_by="created_at")
    if len(history) < 2:
        return None
    window = history[-cfg.window :]
    events = _category_sequence(window)
    span = revisit_span([e.category_id for e in events])
    if span < 2:
        return None

    existing = store.query("oscillations", {"org_id": org_id, "tx_id": tx_id}, limit=1)
    count = span
    if existing and not existing[0].get("is_resolved"):
        count = max(span, int(existing[0]["oscillation_count"]) + 1)
    record = Oscillation(
        id=existing[0]["id"] if existing else new_id(),
        org_id=org_id,
        tx_id=tx_id,
        sequence=tuple(events),
        oscillation_count=count,
    ).to_record()
    # Reopens a previously resolved entry.
    record.update({"final_category_id": None, "resolved_by": None, "resolved_at": None})
    for k in ("created_at", "updated_at"):
        record.pop(k, None)
    row = store.upsert("oscillations", record, key=("org_id", "tx_id"))
    _logger.warning(
        "oscillation:detected org_id=%s tx_id=%s count=%d categories=%s",
        org_id,
        tx_id,
        count,
        "->".join(str(e.category_id) for e in events),
    )
    return Oscillation.from_record(row)


def get_unresolved_oscillations(store: Store, org_id: str) -> list[Oscillation]:
    rows = store.query(
        "oscillations", {"org_id": org_id, "is_resolved": False}, order_by="oscillation_count", descending=True
    )
    return [Oscillation.from_record(r) for r in rows]


def resolve_oscillation(
    store: Store, oscillation_id: str, *, final_category_id: str, actor_id: str
) -> Oscillation:
    """Pin ``final_category_id`` on the transaction and close the entry.

    Raises
    ------
    PreconditionError
        The entry is already resolved.
    """

    if not is_valid_leaf(final_category_id):
        raise ValueError(f"not an assignable category: {final_category_id!r}")
    row = store.get("oscillations", oscillation_id)
    if row is None:
        raise RecordNotFoundError("oscillations", oscillation_id)
    if row.get("is_resolved"):
        raise PreconditionError(f"oscillation {oscillation_id} is already resolved")

    now = utcnow()
    store.update(
        "transactions",
        row["tx_id"],
        {
            "category_id": final_category_id,
            "confidence": 1.0,
            "decision_source": "manual",
            "needs_review": False,
            "reviewed": True,
            "updated_at": now,
        },
    )
    updated = store.update(
        "oscillations",
        oscillation_id,
        {
            "is_resolved": True,
            "final_category_id": final_category_id,
            "resolved_by": actor_id,
            "resolved_at": now,
            "updated_at": now,
        },
    )
    _logger.info(
        "oscillation:resolved id=%s tx_id=%s final=%s actor=%s", oscillation_id, row["tx_id"], final_category_id, actor_id
    )
    return Oscillation.from_record(updated)


__all__ = ["detect_oscillation", "get_unresolved_oscillations", "resolve_oscillation", "revisit_span"]
