"""SQLAlchemy-backed :class:`store.Store`.

Rows map one-to-one onto the ``lc_*`` tables declared in
``db.models.categorizer``; store table names are translated through
``db.STORE_TABLES``. Every operation runs in its own
``db.client.session_scope`` transaction.

Scope:
- Record CRUD and filtered queries with SQLAlchemy Core statements.
- Atomic upsert via ``INSERT ... ON CONFLICT DO UPDATE`` on PostgreSQL and
  SQLite (the key columns must carry a unique constraint).
- Lineage serialization: a process-local lock, plus a session-level advisory
  lock on PostgreSQL so concurrent workers agree.
"""

from __future__ import annotations

import threading
import zlib
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from datetime import UTC, date, datetime
from typing import Any

from sqlalchemy import Column, Date, DateTime, Table, and_, insert, select, text, update
from sqlalchemy import delete as sa_delete
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from db import STORE_TABLES
from db.client import get_engine, session_scope

from .errors import RecordNotFoundError
from .logging_setup import get_logger
from .store import Row, Where, new_id, utcnow

_logger = get_logger(__name__)

_PROTECTED_ON_UPSERT: frozenset[str] = frozenset({"id", "created_at"})


def _table(name: str) -> Table:
    try:
        return STORE_TABLES[name].__table__  # type: ignore[return-value]
    except KeyError:
        raise ValueError(f"unknown table: {name}") from None


def _columns(table: Table) -> dict[str, Column[Any]]:
    return {c.name: c for c in table.columns}


def _restrict(table: Table, record: Mapping[str, Any]) -> dict[str, Any]:
    cols = _columns(table)
    return {k: v for k, v in record.items() if k in cols}


def _to_row(mapping: Mapping[str, Any]) -> Row:
    row = dict(mapping)
    for k, v in row.items():
        # SQLite returns naive datetimes; everything is stored as UTC.
        if isinstance(v, datetime) and v.tzinfo is None:
            row[k] = v.replace(tzinfo=UTC)
    return row


def _bound_for(col: Column[Any], value: date | datetime) -> date | datetime:
    if isinstance(col.type, DateTime):
        if isinstance(value, datetime):
            return value if value.tzinfo else value.replace(tzinfo=UTC)
        return datetime(value.year, value.month, value.day, tzinfo=UTC)
    if isinstance(col.type, Date) and isinstance(value, datetime):
        return value.date()
    return value


def _where_clause(table: Table, where: Where | None) -> list[Any]:
    cols = _columns(table)
    clauses: list[Any] = []
    for name, expected in (where or {}).items():
        if name not in cols:
            raise ValueError(f"unknown column {table.name}.{name}")
        col = cols[name]
        if isinstance(expected, (tuple, list, set, frozenset)):
            clauses.append(col.in_(list(expected)))
        elif expected is None:
            clauses.append(col.is_(None))
        else:
            clauses.append(col == expected)
    return clauses


class SqlStore:
    """Store implementation over the shared engine in ``db.client``.

    Parameters
    ----------
    database_url:
        Optional explicit URL; defaults to ``DATABASE_URL``.
    """

    def __init__(self, *, database_url: str | None = None) -> None:
        self._database_url = database_url
        self._mutex = threading.Lock()
        self._locks: dict[str, threading.RLock] = {}

    @contextmanager
    def _session(self) -> Iterator[Session]:
        with session_scope(database_url=self._database_url) as session:
            yield session

    def _select_one(self, session: Session, table: Table, clauses: list[Any]) -> Row | None:
        res = session.execute(select(table).where(and_(*clauses))).mappings().first()
        return _to_row(res) if res is not None else None

    def _require_one(self, session: Session, name: str, clauses: list[Any], record_id: str) -> Row:
        # A concurrent delete between the write and the read-back lands here.
        row = self._select_one(session, _table(name), clauses)
        if row is None:
            raise RecordNotFoundError(name, record_id)
        return row

    def get(self, table: str, record_id: str) -> Row | None:
        t = _table(table)
        with self._session() as s:
            return self._select_one(s, t, [t.c.id == record_id])

    def insert(self, table: str, record: Mapping[str, Any]) -> Row:
        t = _table(table)
        values = _restrict(t, record)
        values["id"] = values.get("id") or new_id()
        if values.get("created_at") is None:
            values["created_at"] = utcnow()
        with self._session() as s:
            s.execute(insert(t).values(**values))
            return self._require_one(s, table, [t.c.id == values["id"]], values["id"])

    def update(self, table: str, record_id: str, changes: Mapping[str, Any]) -> Row:
        t = _table(table)
        values = {k: v for k, v in _restrict(t, changes).items() if k != "id"}
        with self._session() as s:
            if values:
                res = s.execute(update(t).where(t.c.id == record_id).values(**values))
                missing = res.rowcount == 0
            else:
                missing = self._select_one(s, t, [t.c.id == record_id]) is None
            if missing:
                raise RecordNotFoundError(table, record_id)
            return self._require_one(s, table, [t.c.id == record_id], record_id)

    def upsert(self, table: str, record: Mapping[str, Any], *, key: Sequence[str]) -> Row:
        if not key:
            raise ValueError("upsert requires at least one key column")
        t = _table(table)
        cols = _columns(t)
        values = _restrict(t, record)
        values["id"] = values.get("id") or new_id()
        if values.get("created_at") is None:
            values["created_at"] = utcnow()
        key_clauses = [cols[k] == values.get(k) for k in key]

        with self._session() as s:
            dialect = s.get_bind().dialect.name
            if dialect in ("postgresql", "sqlite"):
                ins = pg_insert(t) if dialect == "postgresql" else sqlite_insert(t)
                stmt = ins.values(**values)
                set_ = {
                    k: stmt.excluded[k]
                    for k in values
                    if k not in _PROTECTED_ON_UPSERT and k not in key
                }
                if "updated_at" in cols:
                    set_["updated_at"] = utcnow()
                if set_:
                    stmt = stmt.on_conflict_do_update(index_elements=[cols[k] for k in key], set_=set_)
                else:
                    stmt = stmt.on_conflict_do_nothing(index_elements=[cols[k] for k in key])
                s.execute(stmt)
            else:
                existing = self._select_one(s, t, key_clauses)
                if existing is None:
                    s.execute(insert(t).values(**values))
                else:
                    changes = {k: v for k, v in values.items() if k not in _PROTECTED_ON_UPSERT}
                    if "updated_at" in cols:
                        changes["updated_at"] = utcnow()
                    s.execute(update(t).where(t.c.id == existing["id"]).values(**changes))
            key_desc = ",".join(f"{k}={values.get(k)}" for k in key)
            return self._require_one(s, table, key_clauses, key_desc)

    def delete(self, table: str, where: Where) -> int:
        if not where:
            raise ValueError("delete requires a where clause")
        t = _table(table)
        with self._session() as s:
            res = s.execute(sa_delete(t).where(and_(*_where_clause(t, where))))
            return res.rowcount

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
        t = _table(table)
        cols = _columns(t)
        clauses = _where_clause(t, where)
        if since is not None or until is not None:
            if date_field is None or date_field not in cols:
                raise ValueError("since/until require a valid date_field")
            dcol = cols[date_field]
            if since is not None:
                clauses.append(dcol >= _bound_for(dcol, since))
            if until is not None:
                clauses.append(dcol <= _bound_for(dcol, until))
        stmt = select(t)
        if clauses:
            stmt = stmt.where(and_(*clauses))
        if order_by is not None:
            if order_by not in cols:
                raise ValueError(f"unknown column {t.name}.{order_by}")
            ocol = cols[order_by]
            stmt = stmt.order_by(ocol.desc() if descending else ocol.asc())
        if limit is not None:
            stmt = stmt.limit(limit)
        with self._session() as s:
            return [_to_row(m) for m in s.execute(stmt).mappings().all()]

    @contextmanager
    def serialized(self, lock_key: str) -> Iterator[None]:
        with self._mutex:
            local = self._locks.setdefault(lock_key, threading.RLock())
        with local:
            engine = get_engine(database_url=self._database_url)
            if engine.dialect.name != "postgresql":
                yield
                return
            lock_id = zlib.crc32(lock_key.encode("utf-8"))
            with engine.connect() as conn:
                conn.execute(text("SELECT pg_advisory_lock(:k)"), {"k": lock_id})
                _logger.debug("persistence:lineage_locked key=%s", lock_key)
                try:
                    yield
                finally:
                    conn.execute(text("SELECT pg_advisory_unlock(:k)"), {"k": lock_id})
                    conn.commit()


__all__ = ["SqlStore"]
