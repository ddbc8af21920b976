"""
In-memory stand-in for DBQuery so DBObject can be tested without Postgres.

FakeStore keeps rows per table and records every statement in `calls`;
bind_store() returns a DBQuery-compatible class wired to one store.
"""

from __future__ import annotations

from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

from db_schema import TableSchema, schema_of


def _matches(row: Mapping[str, Any], conditions: Mapping[str, Any]) -> bool:
    for col, val in conditions.items():
        if isinstance(val, (list, tuple, set)):
            if row.get(col) not in val:
                return False
        elif row.get(col) != val:
            return False
    return True


class FakeStore:
    def __init__(self) -> None:
        self.tables: Dict[str, List[Dict[str, Any]]] = {}
        self.sequences: Dict[str, int] = {}
        self.calls: List[tuple] = []
        # table -> {column: default value}
        self.defaults: Dict[str, Dict[str, Any]] = {}
        # table -> fn(row), runs on insert and update like a BEFORE trigger
        self.triggers: Dict[str, Callable[[Dict[str, Any]], None]] = {}
        # runs after every update; simulates another writer
        self.after_update: Optional[Callable[[str, Dict[str, Any]], None]] = None
        self.reject_inserts = False
        # inserted rows are not visible to get_last_row (e.g. row-level security)
        self.hide_inserted_rows = False

    def rows(self, table: str) -> List[Dict[str, Any]]:
        return self.tables.setdefault(table, [])

    def seed(self, schema: TableSchema, **values: Any) -> Dict[str, Any]:
        row = self._new_row(schema, values)
        self.rows(schema.table).append(row)
        return row

    def _new_row(self, schema: TableSchema, values: Mapping[str, Any]) -> Dict[str, Any]:
        row = {col: None for col in schema.columns}
        row.update(self.defaults.get(schema.table, {}))
        row.update(values)
        for pk in schema.primary_key:
            if row[pk] is None:
                seq = self.sequences.get(schema.table, 0) + 1
                self.sequences[schema.table] = seq
                row[pk] = seq
        trigger = self.triggers.get(schema.table)
        if trigger:
            trigger(row)
        return row

    def select(self, table: str, conditions: Mapping[str, Any]) -> List[Dict[str, Any]]:
        return [row for row in self.rows(table) if _matches(row, conditions)]

    def statements(self, kind: str) -> List[tuple]:
        return [c for c in self.calls if c[0] == kind]


class FakeQuery:
    store: FakeStore

    def __init__(self, model: type):
        self._model = model
        self._schema = schema_of(model)
        self._mode: Optional[str] = None
        self._values: Dict[str, Any] = {}
        self._columns: List[str] = []
        self._where: Dict[str, Any] = {}
        self._last_pk: Optional[Dict[str, Any]] = None

    @property
    def table(self) -> str:
        return self._schema.table

    def _start(self, mode, values=None, columns=None) -> "FakeQuery":
        self._mode = mode
        self._values = dict(values or {})
        self._columns = list(columns or [])
        self._where = {}
        return self

    def insert(self, values):
        return self._start("insert", values=values)

    def update(self, values):
        return self._start("update", values=values)

    def select_one(self, columns: Iterable[str] = ()):
        return self._start("select_one", columns=columns)

    def find(self):
        return self._start("find")

    def count(self):
        return self._start("count")

    def delete(self):
        return self._start("delete")

    def where(self, predicate):
        self._where.update(predicate)
        return self

    def _project(self, row, columns):
        columns = columns or self._schema.columns
        return {col: row.get(col) for col in columns}

    def exec(self):
        store = self.store
        store.calls.append((self._mode, self.table, dict(self._values), dict(self._where)))
        if self._mode == "insert":
            if store.reject_inserts:
                return 0
            row = store._new_row(self._schema, self._values)
            store.rows(self.table).append(row)
            self._last_pk = {pk: row[pk] for pk in self._schema.primary_key}
            return 1
        if self._mode == "update":
            rows = store.select(self.table, self._where)
            trigger = store.triggers.get(self.table)
            for row in rows:
                row.update(self._values)
                if trigger:
                    trigger(row)
                if store.after_update:
                    store.after_update(self.table, row)
            return len(rows)
        if self._mode == "select_one":
            rows = store.select(self.table, self._where)
            return self._project(rows[0], self._columns) if rows else None
        if self._mode == "find":
            rows = sorted(
                store.select(self.table, self._where),
                key=lambda r: tuple(r[pk] for pk in self._schema.primary_key),
            )
            return [self._model().inflate(self._project(r, ())) for r in rows]
        if self._mode == "count":
            return len(store.select(self.table, self._where))
        if self._mode == "delete":
            rows = store.select(self.table, self._where)
            store.tables[self.table] = [r for r in store.rows(self.table) if r not in rows]
            return len(rows)
        raise RuntimeError("no statement")

    def get_last_row(self, columns):
        columns = list(columns)
        self.store.calls.append(("get_last_row", self.table, columns))
        if self._last_pk is None or self.store.hide_inserted_rows:
            return None
        rows = self.store.select(self.table, self._last_pk)
        return self._project(rows[0], columns) if rows else None

    def find_by_pk(self, pk_values):
        pk = list(self._schema.primary_key)
        if isinstance(pk_values, Mapping):
            conditions = {col: pk_values[col] for col in pk}
        elif isinstance(pk_values, (list, tuple)):
            conditions = dict(zip(pk, pk_values))
        else:
            conditions = {pk[0]: pk_values}
        self.store.calls.append(("find_by_pk", self.table, conditions))
        rows = self.store.select(self.table, conditions)
        return self._model().inflate(self._project(rows[0], ())) if rows else None


def bind_store(store: FakeStore) -> type:
    return type("BoundFakeQuery", (FakeQuery,), {"store": store})
