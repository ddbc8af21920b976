from __future__ import annotations

import datetime
import decimal
import uuid
from typing import (
    Any,
    Dict,
    Iterable,
    List,
    Mapping,
    Optional,
    Sequence,
    Tuple,
    Union,
)


class Column:
    """
    Beschreibung einer gemappten Spalte: semantischer Python-Typ plus
    optional expliziter SQL-Typ und SQL-Default (nur für create_table()).
    """

    def __init__(
        self,
        py_type: type = str,
        sql_type: Optional[str] = None,
        default: Optional[str] = None,
        nullable: bool = True,
    ):
        self.py_type = py_type
        self.sql_type = sql_type
        self.default = default
        self.nullable = nullable

    def accepts(self, value: Any) -> bool:
        if value is None:
            return self.nullable
        if isinstance(value, self.py_type):
            return True
        # int ist für float/Decimal-Spalten erlaubt, bool aber nicht
        if self.py_type in (float, decimal.Decimal):
            return isinstance(value, int) and not isinstance(value, bool)
        return False

    def ddl_type(self) -> str:
        return self.sql_type or pg_type(self.py_type)

    def __repr__(self) -> str:
        return f"Column({self.py_type.__name__}, sql_type={self.sql_type!r})"


ColumnSpec = Union[type, Column]


# -------------------- Typ-Mapping -------------------------------------

def pg_type(py_type: type) -> str:
    """
    Semantischer Python-Typ -> Postgres-Typ.
    """
    if py_type is bool:
        return "BOOLEAN"
    if py_type is int:
        return "BIGINT"
    if py_type is float:
        return "DOUBLE PRECISION"
    if py_type is decimal.Decimal:
        return "NUMERIC"
    # datetime ist Unterklasse von date, daher zuerst
    if py_type is datetime.datetime:
        return "TIMESTAMPTZ"
    if py_type is datetime.date:
        return "DATE"
    if py_type is uuid.UUID:
        return "UUID"
    if py_type in (dict, list):
        return "JSONB"
    if py_type in (bytes, bytearray, memoryview):
        return "BYTEA"
    return "TEXT"


# -------------------- Schema pro Typ ----------------------------------

class TableSchema:
    """
    Explizite Schema-Beschreibung eines gemappten Typs.

    - table: Tabellenname
    - columns: geordnetes Dict Spaltenname -> Typ oder Column
    - primary_key: geordnete PK-Spalten (müssen in columns stehen)
    - nested: Schlüssel -> DBObject-Klasse für verschachtelte Datensätze
    - foreign_keys: Eltern-Tabelle -> {Eltern-PK-Spalte: FK-Spalte hier}.
      Ohne Eintrag gilt die Konvention '<eltern_tabelle>_<pk_spalte>'.
    """

    def __init__(
        self,
        table: str,
        columns: Mapping[str, ColumnSpec],
        primary_key: Sequence[str] = ("id",),
        nested: Optional[Mapping[str, type]] = None,
        foreign_keys: Optional[Mapping[str, Mapping[str, str]]] = None,
    ):
        if not table:
            raise ValueError("TableSchema braucht einen Tabellennamen.")
        self.table = table
        self.column_types: Dict[str, Column] = {
            name: spec if isinstance(spec, Column) else Column(spec)
            for name, spec in columns.items()
        }
        self.columns: Tuple[str, ...] = tuple(self.column_types)
        self.primary_key: Tuple[str, ...] = tuple(primary_key)
        if not self.primary_key:
            raise ValueError(f"Tabelle '{table}' hat keinen Primary Key.")
        for pk in self.primary_key:
            if pk not in self.column_types:
                raise ValueError(f"PK-Spalte '{pk}' ist keine Spalte von '{table}'.")

        self.nested: Dict[str, type] = {}
        for key, nested_cls in (nested or {}).items():
            self.register_nested(key, nested_cls)

        self.foreign_keys: Dict[str, Dict[str, str]] = {
            parent: dict(mapping) for parent, mapping in (foreign_keys or {}).items()
        }

    def register_nested(self, key: str, nested_cls: type) -> None:
        """
        Registriert einen Schlüssel, dessen Mapping-Werte beim inflate() als
        Instanz von nested_cls hydriert werden.
        """
        if key in self.column_types:
            raise ValueError(f"'{key}' ist bereits eine Spalte von '{self.table}'.")
        if not isinstance(nested_cls, type):
            raise TypeError(f"Nested-Typ für '{key}' muss eine Klasse sein.")
        self.nested[key] = nested_cls

    def column(self, name: str) -> Optional[Column]:
        return self.column_types.get(name)

    def has_column(self, name: str) -> bool:
        return name in self.column_types

    def foreign_key_columns(self, parent: "TableSchema") -> Dict[str, str]:
        """
        Eltern-PK-Spalte -> FK-Spalte in dieser Tabelle, in PK-Reihenfolge.
        """
        declared = self.foreign_keys.get(parent.table, {})
        return {
            pk: declared.get(pk, f"{parent.table}_{pk}")
            for pk in parent.primary_key
        }

    def __repr__(self) -> str:
        return f"TableSchema({self.table!r}, columns={list(self.columns)!r}, pk={list(self.primary_key)!r})"


# -------------------- Metadaten-Zugriff -------------------------------

def schema_of(cls: type) -> TableSchema:
    schema = getattr(cls, "__schema__", None)
    if not isinstance(schema, TableSchema):
        raise TypeError(f"{getattr(cls, '__name__', cls)!r} hat kein __schema__ (TableSchema).")
    return schema


def table_name(cls: type) -> str:
    return schema_of(cls).table


def columns(cls: type) -> List[str]:
    return list(schema_of(cls).columns)


def primary_key(cls: type) -> List[str]:
    return list(schema_of(cls).primary_key)


def add_pk_columns(column_list: Iterable[str], cls: type) -> List[str]:
    """
    column_list ∪ PK-Spalten, ohne Duplikate, Reihenfolge bleibt erhalten.
    """
    result: List[str] = []
    for col in list(column_list) + primary_key(cls):
        if col not in result:
            result.append(col)
    return result
