"""Storage capability interface and an in-memory implementation.

The engine talks to storage only through :class:`Store`: record-level CRUD,
simple filtered queries, atomic upsert by key and a per-lineage writer lock.
Records are plain ``dict`` rows (see ``models._Record.to_record``).

:class:`InMemoryStore` backs the tests and the CLI when no ``DATABASE_URL`` is
configured; :class:`persistence.SqlStore` is the SQLAlchemy implementation.
"""

from __future__ import annotations

import copy
import threading
import uuid
from collections.abc import Iterator, Mapping, Sequence
from contextlib import AbstractContextManager, contextmanager
from datetime import UTC, date, datetime
from typing import Any, Protocol

from .errors import RecordNotFoundError

TABLES: tuple[str, ...] = (
    "transactions",
    "rule_versions",
    "canary_results",
    "corrections",
    "oscillations",
    "rule_effectiveness",
    "distribution_snapshots",
    "confidence_snapshots",
    "drift_alerts",
    "audit_log",
)

type Row = dict[str, Any]
type Where = Mapping[str, Any]


class Store(Protocol):
    """Narrow storage interface the engine depends on.

    ``where`` maps a column to a value; tuple/list/set/frozenset values mean
    membership. ``since``/``until`` bound ``date_field`` inclusively.
    """

    def get(self, table: str, record_id: str) -> Row | None: ...

    def insert(self, table: str, record: Mapping[str, Any]) -> Row: ...

    def update(self, table: str, record_id: str, changes: Mapping[str, Any]) -> Row: ...

    def upsert(self, table: str, record: Mapping[str, Any], *, key: Sequence[str]) -> Row: ...

    def delete(self, table: str, where: Where) -> int: ...

    def query(
        self,
        table: str,
        where: Where | None = None,
        *,
        date_field: str | None = None,
        since: date | datetime | None = None,
        until: date | datetime | None = None,
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> list[Row]: ...

    def serialized(self, lock_key: str) -> AbstractContextManager[None]: ...


def new_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(UTC)


def _comparable(value: Any, like: date | datetime) -> Any:
    """Coerce ``value`` so it can be compared with the bound ``like``."""

    if isinstance(like, datetime):
        if isinstance(value, datetime):
            return value if value.tzinfo else value.replace(tzinfo=UTC)
        if isinstance(value, date):
            return datetime(value.year, value.month, value.day, tzinfo=UTC)
        return value
    if isinstance(value, datetime):
        return value.date()
    return value


def _as_aware(bound: date | datetime) -> date | datetime:
    if isinstance(bound, datetime) and bound.tzinfo is None:
        return bound.replace(tzinfo=UTC)
    return bound


def matches(row: Mapping[str, Any], where: Where | None) -> bool:
    if not where:
        return True
    for col, expected in where.items():
        actual = row.get(col)
        if isinstance(expected, (tuple, list, set, frozenset)):
            if actual not in expected:
                return False
        elif actual != expected:
            return False
    return True


def _sort_key(value: Any) -> tuple[int, Any]:
    # None sorts first; aware and naive datetimes are normalized.
    if value is None:
        return (0, 0)
    if isinstance(value, datetime) and value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return (1, value)


class InMemoryStore:
    """Thread-safe dict-of-tables store. Rows are copied in and out."""

    def __init__(self) -> None:
        self._tables: dict[str, dict[str, Row]] = {t: {} for t in TABLES}
        self._mutex = threading.RLock()
        self._locks: dict[str, threading.RLock] = {}

    def _table(self, table: str) -> dict[str, Row]:
        try:
            return self._tables[table]
        except KeyError:
            raise ValueError(f"unknown table: {table}") from None

    def get(self, table: str, record_id: str) -> Row | None:
        with self._mutex:
            row = self._table(table).get(record_id)
            return copy.deepcopy(row) if row is not None else None

    def insert(self, table: str, record: Mapping[str, Any]) -> Row:
        row = copy.deepcopy(dict(record))
        row["id"] = row.get("id") or new_id()
        if row.get("created_at") is None:
            row["created_at"] = utcnow()
        with self._mutex:
            rows = self._table(table)
            if row["id"] in rows:
                raise ValueError(f"duplicate id in {table}: {row['id']}")
            rows[row["id"]] = row
            return copy.deepcopy(row)

    def update(self, table: str, record_id: str, changes: Mapping[str, Any]) -> Row:
        with self._mutex:
            rows = self._table(table)
            if record_id not in rows:
                raise RecordNotFoundError(table, record_id)
            rows[record_id].update(copy.deepcopy(dict(changes)))
            rows[record_id]["id"] = record_id
            return copy.deepcopy(rows[record_id])

    def upsert(self, table: str, record: Mapping[str, Any], *, key: Sequence[str]) -> Row:
        if not key:
            raise ValueError("upsert requires at least one key column")
        key_values = {k: record.get(k) for k in key}
        with self._mutex:
            rows = self._table(table)
            for existing in rows.values():
                if matches(existing, key_values):
                    changes = {k: v for k, v in record.items() if k not in ("id", "created_at")}
                    existing.update(copy.deepcopy(changes))
                    existing["updated_at"] = utcnow()
                    return copy.deepcopy(existing)
            return self.insert(table, record)

    def delete(self, table: str, where: Where) -> int:
        """Remove matching rows; returns the number removed."""

        if not where:
            raise ValueError("delete requires a where clause")
        with self._mutex:
            rows = self._table(table)
            doomed = [rid for rid, r in rows.items() if matches(r, where)]
            for rid in doomed:
                del rows[rid]
            return len(doomed)

    def query(
        self,
        table: str,
        where: Where | None = None,
        *,
        date_field: str | None = None,
        since: date | datetime | None = None,
        until: date | datetime | None = None,
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> list[Row]:
        if (since is not None or until is not None) and date_field is None:
            raise ValueError("since/until require date_field")
        with self._mutex:
            out = [r for r in self._table(table).values() if matches(r, where)]
            if date_field is not None:
                if since is not None:
                    lo = _as_aware(since)
                    out = [r for r in out if r.get(date_field) is not None and _comparable(r[date_field], lo) >= lo]
                if until is not None:
                    hi = _as_aware(until)
                    out = [r for r in out if r.get(date_field) is not None and _comparable(r[date_field], hi) <= hi]
            if order_by is not None:
                out.sort(key=lambda r: _sort_key(r.get(order_by)), reverse=descending)
            if limit is not None:
                out = out[:limit]
            return copy.deepcopy(out)

    @contextmanager
    def serialized(self, lock_key: str) -> Iterator[None]:
        with self._mutex:
            lock = self._locks.setdefault(lock_key, threading.RLock())
        with lock:
            yield


__all__ = ["InMemoryStore", "Row", "Store", "TABLES", "matches", "new_id", "utcnow"]
