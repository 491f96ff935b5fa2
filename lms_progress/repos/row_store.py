"""Row-oriented data store: the only contract this layer has with storage.

Three operations, all on plain dict rows:

  upsert(table, row, conflict_key, merge=None) -> row
      Insert, or update the supplied columns of the row whose
      conflict_key columns match.  Columns not supplied are left alone.
      ``merge`` lets selected columns resist overwrite:
          "first"  keep the existing value when it is not null
          "max"    keep the larger of existing and incoming
      Re-sending the same upsert is always a no-op in effect.

  select(table, filter) -> rows
  delete(table, filter) -> number of rows removed

Filters are flat dicts.  A bare column name means equality, or
membership when the value is a list/tuple/set.  A ``__gt``, ``__gte``,
``__lt``, ``__lte`` or ``__ne`` suffix selects a comparison.

Both implementations raise TransientStoreError for failures that are
worth retrying; anything else propagates unchanged.
"""

from __future__ import annotations

import asyncio
import copy
import logging
from collections.abc import Mapping, Sequence
from contextlib import asynccontextmanager
from typing import Any, Literal, Protocol, runtime_checkable

from sqlalchemy import delete as sa_delete
from sqlalchemy import func
from sqlalchemy import select as sa_select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import DBAPIError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from lms_progress.db.engine import async_session_factory
from lms_progress.db.tables import TABLES
from lms_progress.errors import TransientStoreError

logger = logging.getLogger(__name__)

MergeRule = Literal["first", "max"]
Row = dict[str, Any]

_OPS = ("gte", "lte", "gt", "lt", "ne")


def parse_filter(filter: Mapping[str, Any] | None) -> list[tuple[str, str, Any]]:
    """Split a filter dict into (column, op, value) triples."""
    clauses: list[tuple[str, str, Any]] = []
    for key, value in (filter or {}).items():
        column, _, op = key.partition("__")
        if op and op not in _OPS:
            raise ValueError(f"unsupported filter operator {op!r} in {key!r}")
        if not op:
            op = "in" if isinstance(value, (list, tuple, set, frozenset)) else "eq"
        clauses.append((column, op, value))
    return clauses


def _matches(row: Mapping[str, Any], clauses: list[tuple[str, str, Any]]) -> bool:
    for column, op, value in clauses:
        actual = row.get(column)
        if op == "eq" and actual != value:
            return False
        if op == "in" and actual not in value:
            return False
        if op == "ne" and actual == value:
            return False
        if op in ("gt", "gte", "lt", "lte"):
            if actual is None:
                return False
            if op == "gt" and not actual > value:
                return False
            if op == "gte" and not actual >= value:
                return False
            if op == "lt" and not actual < value:
                return False
            if op == "lte" and not actual <= value:
                return False
    return True


def _merge_value(rule: MergeRule | None, existing: Any, incoming: Any) -> Any:
    if rule == "first" and existing is not None:
        return existing
    if rule == "max" and existing is not None and incoming is not None:
        return max(existing, incoming)
    if rule == "max" and incoming is None:
        return existing
    return incoming


@runtime_checkable
class RowStore(Protocol):
    async def upsert(
        self,
        table: str,
        row: Mapping[str, Any],
        conflict_key: Sequence[str],
        merge: Mapping[str, MergeRule] | None = None,
    ) -> Row: ...

    async def select(
        self, table: str, filter: Mapping[str, Any] | None = None
    ) -> list[Row]: ...

    async def delete(self, table: str, filter: Mapping[str, Any]) -> int: ...


class InMemoryRowStore:
    """Dict-backed row store for tests and local dev."""

    def __init__(self) -> None:
        self._tables: dict[str, list[Row]] = {}

    async def upsert(
        self,
        table: str,
        row: Mapping[str, Any],
        conflict_key: Sequence[str],
        merge: Mapping[str, MergeRule] | None = None,
    ) -> Row:
        missing = [c for c in conflict_key if row.get(c) is None]
        if missing:
            raise ValueError(f"upsert into {table} missing key columns {missing}")

        rows = self._tables.setdefault(table, [])
        key = tuple(row[c] for c in conflict_key)
        for existing in rows:
            if tuple(existing.get(c) for c in conflict_key) == key:
                for column, value in row.items():
                    rule = (merge or {}).get(column)
                    existing[column] = _merge_value(rule, existing.get(column), value)
                return copy.deepcopy(existing)

        stored = copy.deepcopy(dict(row))
        rows.append(stored)
        return copy.deepcopy(stored)

    async def select(
        self, table: str, filter: Mapping[str, Any] | None = None
    ) -> list[Row]:
        clauses = parse_filter(filter)
        return [
            copy.deepcopy(r) for r in self._tables.get(table, []) if _matches(r, clauses)
        ]

    async def delete(self, table: str, filter: Mapping[str, Any]) -> int:
        clauses = parse_filter(filter)
        rows = self._tables.get(table, [])
        kept = [r for r in rows if not _matches(r, clauses)]
        removed = len(rows) - len(kept)
        self._tables[table] = kept
        return removed

    def clear(self) -> None:
        self._tables.clear()


class PgRowStore:
    """Satisfies the RowStore Protocol using PostgreSQL via SQLAlchemy.

    Each call runs in its own short transaction; no transaction ever
    spans multiple rows of different calls.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    @staticmethod
    def _table(name: str):
        try:
            return TABLES[name].__table__
        except KeyError:
            raise ValueError(f"unknown table {name!r}") from None

    @staticmethod
    def _where(table, filter: Mapping[str, Any] | None) -> list:
        conditions = []
        for column, op, value in parse_filter(filter):
            col = table.c[column]
            if op == "eq":
                conditions.append(col.is_(None) if value is None else col == value)
            elif op == "in":
                conditions.append(col.in_(list(value)))
            elif op == "ne":
                conditions.append(col != value)
            elif op == "gt":
                conditions.append(col > value)
            elif op == "gte":
                conditions.append(col >= value)
            elif op == "lt":
                conditions.append(col < value)
            elif op == "lte":
                conditions.append(col <= value)
        return conditions

    async def upsert(
        self,
        table: str,
        row: Mapping[str, Any],
        conflict_key: Sequence[str],
        merge: Mapping[str, MergeRule] | None = None,
    ) -> Row:
        t = self._table(table)
        stmt = pg_insert(t).values(**row)
        set_ = {}
        for column in row:
            if column in conflict_key:
                continue
            rule = (merge or {}).get(column)
            if rule == "first":
                set_[column] = func.coalesce(t.c[column], stmt.excluded[column])
            elif rule == "max":
                set_[column] = func.greatest(t.c[column], stmt.excluded[column])
            else:
                set_[column] = stmt.excluded[column]

        if set_:
            stmt = stmt.on_conflict_do_update(index_elements=list(conflict_key), set_=set_)
        else:
            stmt = stmt.on_conflict_do_nothing(index_elements=list(conflict_key))
        stmt = stmt.returning(*t.c)

        async with _transient_errors(f"upsert {table}"):
            async with self._session_factory() as session, session.begin():
                result = await session.execute(stmt)
                returned = result.mappings().first()
        if returned is None:
            # do_nothing path: the row already existed unchanged
            rows = await self.select(table, {c: row[c] for c in conflict_key})
            return rows[0] if rows else dict(row)
        return dict(returned)

    async def select(
        self, table: str, filter: Mapping[str, Any] | None = None
    ) -> list[Row]:
        t = self._table(table)
        stmt = sa_select(t).where(*self._where(t, filter))
        async with _transient_errors(f"select {table}"):
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                return [dict(m) for m in result.mappings().all()]

    async def delete(self, table: str, filter: Mapping[str, Any]) -> int:
        t = self._table(table)
        stmt = sa_delete(t).where(*self._where(t, filter))
        async with _transient_errors(f"delete {table}"):
            async with self._session_factory() as session, session.begin():
                result = await session.execute(stmt)
                return result.rowcount or 0


@asynccontextmanager
async def _transient_errors(what: str):
    """Turn connection-level failures into TransientStoreError."""
    try:
        yield
    except (OperationalError, InterfaceError, asyncio.TimeoutError, OSError) as exc:
        logger.warning("Transient store failure during %s: %s", what, exc)
        raise TransientStoreError(f"{what} failed: {exc}") from exc
    except DBAPIError as exc:
        if not exc.connection_invalidated:
            raise
        logger.warning("Connection invalidated during %s: %s", what, exc)
        raise TransientStoreError(f"{what} failed: {exc}") from exc


# ---------------------------------------------------------------------------
# Module-level singleton
# ---------------------------------------------------------------------------

if async_session_factory is not None:
    row_store: RowStore = PgRowStore(async_session_factory)
else:
    row_store = InMemoryRowStore()
