from __future__ import annotations

import copy
import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterable, Mapping, Optional, Protocol, Sequence, Union
from uuid import uuid4

from sqlalchemy import MetaData, column, delete, insert, inspect, select, table, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import DBAPIError, NoSuchTableError, SQLAlchemyError

from eventcalc.errors import RemoteError, RequestAborted

logger = logging.getLogger(__name__)

Row = dict[str, Any]
Filters = Mapping[str, Any]
Order = Sequence[tuple[str, bool]]
Columns = Union[str, Sequence[str]]


def _now() -> datetime:
    return datetime.now(timezone.utc)


class AbortHandle:
    """Cancellation token for an in-flight read."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def abort(self) -> None:
        self._event.set()

    @property
    def aborted(self) -> bool:
        return self._event.is_set()

    def raise_if_aborted(self) -> None:
        if self._event.is_set():
            raise RequestAborted()


class RowStoreClient(Protocol):
    def select(
        self,
        table_name: str,
        columns: Columns = "*",
        filters: Optional[Filters] = None,
        order: Optional[Order] = None,
        limit: Optional[int] = None,
        abort: Optional[AbortHandle] = None,
    ) -> list[Row]: ...

    def insert(self, table_name: str, row: Mapping[str, Any]) -> Row: ...

    def update(self, table_name: str, patch: Mapping[str, Any], filters: Filters) -> list[Row]: ...

    def delete(self, table_name: str, filters: Filters) -> int: ...

    def upsert(self, table_name: str, row: Mapping[str, Any], on_conflict: str) -> Row: ...

    def rpc(self, name: str, params: Mapping[str, Any]) -> Any: ...


Procedure = Callable[["RowStoreClient", Mapping[str, Any]], Any]


def event_totals_set_total(client: RowStoreClient, params: Mapping[str, Any]) -> Row:
    event_id = params.get("p_event_id")
    if not event_id:
        raise RemoteError("p_event_id is required", code="22023")
    return client.upsert(
        "event_totals",
        {"event_id": str(event_id), "total_vnd": params.get("p_total"), "updated_at": _now()},
        on_conflict="event_id",
    )


DEFAULT_PROCEDURES: dict[str, Procedure] = {
    "event_totals_set_total": event_totals_set_total,
}


def _order_value(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.timestamp()
    return value


def _columns_list(columns: Columns) -> Optional[list[str]]:
    if columns == "*" or columns is None:
        return None
    if isinstance(columns, str):
        return [c.strip() for c in columns.split(",") if c.strip()]
    return list(columns)


class SqlRowStoreClient:
    """RowStoreClient on top of SQLAlchemy Core.

    Tables are addressed by name with lightweight ``table()`` clauses, so a
    column the database does not have is rejected by the database itself.
    Column types come from the declared metadata when known, otherwise from
    reflection.
    """

    def __init__(
        self,
        engine: Engine,
        metadata: Optional[MetaData] = None,
        procedures: Optional[Mapping[str, Procedure]] = None,
    ) -> None:
        self.engine = engine
        self.metadata = metadata
        self.procedures: dict[str, Procedure] = dict(DEFAULT_PROCEDURES)
        if procedures:
            self.procedures.update(procedures)
        self._reflected: dict[str, dict[str, Any]] = {}

    def _reflect(self, table_name: str) -> dict[str, Any]:
        if table_name not in self._reflected:
            try:
                cols = inspect(self.engine).get_columns(table_name)
            except NoSuchTableError as exc:
                raise RemoteError(f'relation "{table_name}" does not exist', code="42P01") from exc
            except SQLAlchemyError as exc:
                raise self._wrap(exc) from exc
            self._reflected[table_name] = {c["name"]: c["type"] for c in cols}
        return self._reflected[table_name]

    def _table(self, table_name: str, names: Iterable[str]):
        declared = self.metadata.tables.get(table_name) if self.metadata is not None else None
        reflected = self._reflected.get(table_name, {})
        cols = []
        for name in names:
            if declared is not None and name in declared.c:
                cols.append(column(name, declared.c[name].type))
            elif name in reflected:
                cols.append(column(name, reflected[name]))
            else:
                cols.append(column(name))
        return table(table_name, *cols)

    @staticmethod
    def _wrap(exc: SQLAlchemyError) -> RemoteError:
        if isinstance(exc, DBAPIError) and exc.orig is not None:
            return RemoteError(str(exc.orig), code=getattr(exc.orig, "pgcode", None))
        return RemoteError(str(exc))

    @staticmethod
    def _where(stmt, tbl, filters: Optional[Filters]):
        for key, value in (filters or {}).items():
            col = tbl.c[key]
            if isinstance(value, (list, tuple, set, frozenset)):
                stmt = stmt.where(col.in_(list(value)))
            elif value is None:
                stmt = stmt.where(col.is_(None))
            else:
                stmt = stmt.where(col == value)
        return stmt

    def select(
        self,
        table_name: str,
        columns: Columns = "*",
        filters: Optional[Filters] = None,
        order: Optional[Order] = None,
        limit: Optional[int] = None,
        abort: Optional[AbortHandle] = None,
    ) -> list[Row]:
        if abort is not None:
            abort.raise_if_aborted()
        names = _columns_list(columns)
        if names is None:
            names = list(self._reflect(table_name))
        extra = [k for k in (filters or {}) if k not in names]
        extra += [k for k, _ in (order or []) if k not in names and k not in extra]
        tbl = self._table(table_name, names + extra)
        stmt = self._where(select(*[tbl.c[n] for n in names]), tbl, filters)
        for key, ascending in order or []:
            stmt = stmt.order_by(tbl.c[key].asc() if ascending else tbl.c[key].desc())
        if limit is not None:
            stmt = stmt.limit(limit)
        try:
            with self.engine.connect() as conn:
                rows = [dict(r._mapping) for r in conn.execute(stmt)]
        except SQLAlchemyError as exc:
            raise self._wrap(exc) from exc
        if abort is not None:
            abort.raise_if_aborted()
        return rows

    def _stamp(self, table_name: str, row: Mapping[str, Any]) -> Row:
        values = dict(row)
        try:
            present = self._reflect(table_name)
        except RemoteError:
            present = {}
        now = _now()
        if "id" in present and values.get("id") is None:
            values["id"] = uuid4().hex
        if "created_at" in present and values.get("created_at") is None:
            values["created_at"] = now
        if "updated_at" in present and values.get("updated_at") is None:
            values["updated_at"] = now
        return values

    def insert(self, table_name: str, row: Mapping[str, Any]) -> Row:
        values = self._stamp(table_name, row)
        tbl = self._table(table_name, values)
        try:
            with self.engine.begin() as conn:
                conn.execute(insert(tbl).values(**values))
        except SQLAlchemyError as exc:
            raise self._wrap(exc) from exc
        if "id" in values:
            echo = self.select(table_name, filters={"id": values["id"]})
            if echo:
                return echo[0]
        return values

    def update(self, table_name: str, patch: Mapping[str, Any], filters: Filters) -> list[Row]:
        values = dict(patch)
        if "updated_at" in self._reflect(table_name) and "updated_at" not in values:
            values["updated_at"] = _now()
        tbl = self._table(table_name, list(values) + [k for k in filters if k not in values])
        stmt = self._where(update(tbl), tbl, filters).values(**values)
        try:
            with self.engine.begin() as conn:
                conn.execute(stmt)
        except SQLAlchemyError as exc:
            raise self._wrap(exc) from exc
        return self.select(table_name, filters=filters)

    def delete(self, table_name: str, filters: Filters) -> int:
        tbl = self._table(table_name, filters)
        stmt = self._where(delete(tbl), tbl, filters)
        try:
            with self.engine.begin() as conn:
                return conn.execute(stmt).rowcount
        except SQLAlchemyError as exc:
            raise self._wrap(exc) from exc

    def upsert(self, table_name: str, row: Mapping[str, Any], on_conflict: str) -> Row:
        """Update-then-insert on ``on_conflict``; works without a unique index."""
        key = row.get(on_conflict)
        patch = {k: v for k, v in row.items() if k != on_conflict}
        if self.select(table_name, columns=[on_conflict], filters={on_conflict: key}):
            if patch:
                echo = self.update(table_name, patch, {on_conflict: key})
            else:
                echo = self.select(table_name, filters={on_conflict: key})
        else:
            self.insert(table_name, row)
            echo = self.select(table_name, filters={on_conflict: key})
        return echo[0] if echo else dict(row)

    def rpc(self, name: str, params: Mapping[str, Any]) -> Any:
        procedure = self.procedures.get(name)
        if procedure is None:
            raise RemoteError(f"function {name} does not exist", code="42883")
        return procedure(self, params)


class MemoryRowStoreClient:
    """In-memory RowStoreClient used as a test double and for local demos.

    ``columns`` restricts the column names a table accepts, ``integer_columns``
    makes the client reject non-integral values the way a strict integer
    column does, and ``fail_next`` queues one-shot failures.
    """

    def __init__(
        self,
        columns: Optional[Mapping[str, Iterable[str]]] = None,
        integer_columns: Optional[Mapping[str, Iterable[str]]] = None,
        procedures: Optional[Mapping[str, Procedure]] = None,
    ) -> None:
        self.tables: dict[str, list[Row]] = {}
        self.columns = {k: set(v) for k, v in (columns or {}).items()}
        self.integer_columns = {k: set(v) for k, v in (integer_columns or {}).items()}
        self.procedures: dict[str, Procedure] = dict(DEFAULT_PROCEDURES)
        if procedures:
            self.procedures.update(procedures)
        self.calls: list[tuple[str, str]] = []
        self._failures: list[tuple[str, str, RemoteError]] = []
        self._lock = threading.RLock()
        self._tick = 0
        self._epoch = datetime(2024, 1, 1, tzinfo=timezone.utc)

    def fail_next(self, op: str, table_name: str, message: str, code: Optional[str] = None) -> None:
        self._failures.append((op, table_name, RemoteError(message, code=code)))

    def seed(self, table_name: str, rows: Iterable[Mapping[str, Any]]) -> None:
        with self._lock:
            for row in rows:
                self.tables.setdefault(table_name, []).append(self._stamp(table_name, row))

    def _next_ts(self) -> datetime:
        self._tick += 1
        return self._epoch + timedelta(seconds=self._tick)

    def _stamp(self, table_name: str, row: Mapping[str, Any]) -> Row:
        values = copy.deepcopy(dict(row))
        allowed = self.columns.get(table_name)
        ts = self._next_ts()
        for key in ("id", "created_at", "updated_at"):
            if values.get(key) is None and (allowed is None or key in allowed):
                values[key] = uuid4().hex if key == "id" else ts
        return values

    def _check(self, op: str, table_name: str, names: Iterable[str] = (), values: Optional[Mapping[str, Any]] = None) -> None:
        self.calls.append((op, table_name))
        for index, (f_op, f_table, error) in enumerate(self._failures):
            if f_op == op and f_table == table_name:
                del self._failures[index]
                raise error
        allowed = self.columns.get(table_name)
        if allowed is not None:
            for name in names:
                if name not in allowed:
                    raise RemoteError(f"column {table_name}.{name} does not exist", code="42703")
        for name in self.integer_columns.get(table_name, ()):
            value = (values or {}).get(name)
            if isinstance(value, float) and not value.is_integer():
                raise RemoteError(f'invalid input syntax for type integer: "{value}"', code="22P02")

    @staticmethod
    def _matches(row: Row, filters: Optional[Filters]) -> bool:
        for key, value in (filters or {}).items():
            if isinstance(value, (list, tuple, set, frozenset)):
                if row.get(key) not in value:
                    return False
            elif row.get(key) != value:
                return False
        return True

    def select(
        self,
        table_name: str,
        columns: Columns = "*",
        filters: Optional[Filters] = None,
        order: Optional[Order] = None,
        limit: Optional[int] = None,
        abort: Optional[AbortHandle] = None,
    ) -> list[Row]:
        if abort is not None:
            abort.raise_if_aborted()
        names = _columns_list(columns)
        with self._lock:
            self._check("select", table_name, list(names or []) + list(filters or {}))
            rows = [r for r in self.tables.get(table_name, []) if self._matches(r, filters)]
            for key, ascending in reversed(list(order or [])):
                present = [r for r in rows if r.get(key) is not None]
                missing = [r for r in rows if r.get(key) is None]
                present.sort(key=lambda r: _order_value(r[key]), reverse=not ascending)
                rows = present + missing
            if limit is not None:
                rows = rows[:limit]
            if names is not None:
                rows = [{n: r.get(n) for n in names} for r in rows]
            result = copy.deepcopy(rows)
        if abort is not None:
            abort.raise_if_aborted()
        return result

    def insert(self, table_name: str, row: Mapping[str, Any]) -> Row:
        with self._lock:
            self._check("insert", table_name, row, row)
            stored = self._stamp(table_name, row)
            self.tables.setdefault(table_name, []).append(stored)
            return copy.deepcopy(stored)

    def update(self, table_name: str, patch: Mapping[str, Any], filters: Filters) -> list[Row]:
        with self._lock:
            self._check("update", table_name, list(patch) + list(filters), patch)
            touched = []
            for stored in self.tables.get(table_name, []):
                if self._matches(stored, filters):
                    stored.update(copy.deepcopy(dict(patch)))
                    if "updated_at" in stored and "updated_at" not in patch:
                        stored["updated_at"] = self._next_ts()
                    touched.append(copy.deepcopy(stored))
            return touched

    def delete(self, table_name: str, filters: Filters) -> int:
        with self._lock:
            self._check("delete", table_name, filters)
            rows = self.tables.get(table_name, [])
            kept = [r for r in rows if not self._matches(r, filters)]
            self.tables[table_name] = kept
            return len(rows) - len(kept)

    def upsert(self, table_name: str, row: Mapping[str, Any], on_conflict: str) -> Row:
        with self._lock:
            self._check("upsert", table_name, row, row)
            for stored in self.tables.get(table_name, []):
                if stored.get(on_conflict) == row.get(on_conflict):
                    stored.update(copy.deepcopy(dict(row)))
                    if "updated_at" in stored and "updated_at" not in row:
                        stored["updated_at"] = self._next_ts()
                    return copy.deepcopy(stored)
            stored = self._stamp(table_name, row)
            self.tables.setdefault(table_name, []).append(stored)
            return copy.deepcopy(stored)

    def rpc(self, name: str, params: Mapping[str, Any]) -> Any:
        self.calls.append(("rpc", name))
        procedure = self.procedures.get(name)
        if procedure is None:
            raise RemoteError(f"function {name} does not exist", code="42883")
        return procedure(self, params)
