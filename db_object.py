from __future__ import annotations

import enum
import logging
from typing import Any, ClassVar, Dict, List, Mapping, Optional, Type, TypeVar, Union

from db_query import DBQuery
from db_schema import TableSchema, add_pk_columns, columns, primary_key, schema_of

log = logging.getLogger(__name__)

T = TypeVar("T", bound="DBObject")

NOT_INSERTED_MSG = "The new record was not inserted."


# -------------------- Fehler / Ergebnis -------------------------------

class DBObjectError(Exception):
    """Basisklasse für Mapping-Fehler von DBObject."""


class MissingPropertyError(DBObjectError):
    """
    Eine für get_parent() nötige FK-Spalte fehlt im Mapping der Kind-Klasse.
    Programmierfehler, wird deshalb geworfen und nicht als Result gemeldet.
    """

    def __init__(self, message: str, column: str):
        super().__init__(message)
        self.column = column


class ResultKind(enum.Enum):
    SUCCESS = "success"
    VALIDATION_FAILED = "validation_failed"
    NOT_INSERTED = "not_inserted"


class Result:
    """
    Ergebnis von save()/validate(): truthy bei Erfolg, sonst falsy mit
    kind und message.
    """

    __slots__ = ("kind", "message")

    def __init__(self, kind: ResultKind = ResultKind.SUCCESS, message: Optional[str] = None):
        self.kind = kind
        self.message = message

    @classmethod
    def success(cls) -> "Result":
        return cls()

    @classmethod
    def failure(cls, message: Optional[str], kind: ResultKind = ResultKind.VALIDATION_FAILED) -> "Result":
        return cls(kind, message)

    @property
    def ok(self) -> bool:
        return self.kind is ResultKind.SUCCESS

    def __bool__(self) -> bool:
        return self.ok

    def __repr__(self) -> str:
        if self.ok:
            return "Result(success)"
        return f"Result({self.kind.value}, {self.message!r})"


# -------------------- DBObject ----------------------------------------

class DBObject:
    """
    Basisklasse für gemappte Datensätze.

    Unterklassen beschreiben ihre Tabelle explizit:

        class Order(DBObject):
            __schema__ = TableSchema("order", {"id": Column(int, "SERIAL"),
                                               "customer_id": int,
                                               "total": Decimal})

    Felder liegen in einem instanz-eigenen Dict; gespeichert werden nur
    Spalten aus dem Schema, die auf der Instanz gesetzt sind.
    """

    __schema__: ClassVar[TableSchema]

    # Query-Klasse für diese Klasse, Tests setzen hier einen Fake ein
    query_class: ClassVar[type] = DBQuery

    def __init_subclass__(cls, **kwargs: Any):
        super().__init_subclass__(**kwargs)
        schema = cls.__dict__.get("__schema__")
        if schema is None:
            return
        # order.count wäre sonst die Methode, nie das Feld
        shadowed = [name for name in (*schema.columns, *schema.nested) if hasattr(cls, name)]
        if shadowed:
            raise ValueError(
                f"{cls.__name__}: Spalten/verschachtelte Schlüssel überdecken "
                f"Klassen-Attribute: {', '.join(shadowed)}"
            )

    def __init__(self, **fields: Any):
        object.__setattr__(self, "_fields", {})
        object.__setattr__(self, "_error_msg", None)
        for name, value in fields.items():
            self.set(name, value)

    # ---------------------- Feld-Zugriff ---------------------------------

    def get(self, name: str, default: Any = None) -> Any:
        return self._fields.get(name, default)

    def set(self, name: str, value: Any) -> None:
        """
        Setzt ein Feld; bei Schema-Spalten wird der Typ geprüft.
        """
        schema = getattr(type(self), "__schema__", None)
        column = schema.column(name) if schema is not None else None
        if column is not None and not column.accepts(value):
            raise TypeError(
                f"{type(self).__name__}.{name} erwartet {column.py_type.__name__}, "
                f"nicht {type(value).__name__}"
            )
        self._fields[name] = value

    def has(self, name: str) -> bool:
        return name in self._fields

    def unset(self, name: str) -> None:
        self._fields.pop(name, None)

    def to_dict(self) -> Dict[str, Any]:
        return dict(self._fields)

    def __getattr__(self, name: str) -> Any:
        if name.startswith("_"):
            raise AttributeError(name)
        fields = self.__dict__.get("_fields", {})
        if name in fields:
            return fields[name]
        schema = getattr(type(self), "__schema__", None)
        if schema is not None and schema.has_column(name):
            return None
        raise AttributeError(f"'{type(self).__name__}' hat kein Attribut '{name}'")

    def __setattr__(self, name: str, value: Any):
        schema = getattr(type(self), "__schema__", None)
        is_column = schema is not None and schema.has_column(name)
        if name.startswith("_") or (not is_column and hasattr(type(self), name)):
            return super().__setattr__(name, value)
        self.set(name, value)

    def __repr__(self) -> str:
        pk = ", ".join(f"{k}={v!r}" for k, v in self.primary_key_values().items())
        return f"<{type(self).__name__} {pk}>"

    # ---------------------- Fehlermeldung --------------------------------

    def set_error_msg(self, error_msg: Optional[str]) -> None:
        """
        Definiert die Fehlermeldung, die mit get_error_msg() abrufbar ist.
        """
        self._error_msg = error_msg

    def get_error_msg(self) -> Optional[str]:
        return self._error_msg

    def _fail(self, message: Optional[str], kind: ResultKind) -> Result:
        self.set_error_msg(message)
        log.warning("%s not saved (%s): %s", type(self).__name__, kind.value, message)
        return Result.failure(message, kind)

    # ---------------------- Persistenz -----------------------------------

    @classmethod
    def query(cls) -> DBQuery:
        return cls.query_class(cls)

    @classmethod
    def find_by_pk(cls: Type[T], pk_values: Any) -> Optional[T]:
        return cls.query().find_by_pk(pk_values)

    @classmethod
    def find(cls: Type[T], **conditions: Any) -> List[T]:
        return cls.query().find().where(conditions).exec()

    def validate(self) -> Union[Result, bool]:
        """
        Wird in save() aufgerufen; nur bei Erfolg wird gespeichert.
        Unterklassen überschreiben diese Methode und setzen im Fehlerfall
        set_error_msg() oder geben Result.failure(...) zurück.
        """
        return Result.success()

    def _run_validate(self) -> Result:
        outcome = self.validate()
        if isinstance(outcome, Result):
            if not outcome:
                self.set_error_msg(outcome.message)
            return outcome
        if outcome:
            return Result.success()
        return Result.failure(self._error_msg, ResultKind.VALIDATION_FAILED)

    def is_new(self) -> bool:
        """
        True, solange eine PK-Spalte fehlt oder None ist.
        """
        return any(self._fields.get(pk) is None for pk in primary_key(type(self)))

    def primary_key_values(self) -> Dict[str, Any]:
        return {pk: self._fields.get(pk) for pk in primary_key(type(self))}

    def save(self) -> Result:
        """
        INSERT bei neuen, sonst UPDATE per PK. Danach werden die Felder
        immer aus der Tabelle neu geladen (Defaults, Trigger, Typ-Umwandlung).
        """
        result = self._run_validate()
        if not result:
            log.debug("%s validation failed: %s", type(self).__name__, result.message)
            return result

        cls = type(self)
        query = cls.query()
        values = {col: self._fields[col] for col in columns(cls) if col in self._fields}

        if self.is_new():
            if query.insert(values).exec() == 0:
                return self._fail(NOT_INSERTED_MSG, ResultKind.NOT_INSERTED)
            # PK immer mitladen
            row = query.get_last_row(add_pk_columns(values, cls))
            if row is not None:
                self.inflate(row)
            log.debug("inserted %r (read-back %s)", self, "ok" if row is not None else "missing")
        else:
            pk = self.primary_key_values()
            query.update(values).where(pk).exec()
            row = query.select_one(list(values)).where(pk).exec()
            if row is not None:
                self.inflate(row)
            log.debug("updated %r (read-back %s)", self, "ok" if row is not None else "missing")

        return Result.success()

    def refresh(self) -> bool:
        """
        Lädt alle Spalten neu; False, wenn neu oder die Zeile fehlt.
        """
        if self.is_new():
            return False
        row = self.query().select_one(columns(type(self))).where(self.primary_key_values()).exec()
        if row is None:
            return False
        self.inflate(row)
        return True

    def delete(self) -> int:
        """
        Physisches Löschen per PK; gibt die Anzahl gelöschter Zeilen zurück.
        """
        if self.is_new():
            return 0
        return self.query().delete().where(self.primary_key_values()).exec()

    # ---------------------- Hydration ------------------------------------

    def inflate(self: T, data: Any) -> T:
        """
        Erstellt/überschreibt die Felder aus einem Mapping (oder Objekt).

        Werte unter im Schema registrierten nested-Schlüsseln werden als
        Instanz der registrierten Klasse hydriert (Listen von Mappings als
        Liste von Instanzen). Alle anderen Werte werden direkt übernommen.
        Unterklassen, die nach dem Laden etwas tun müssen, überschreiben
        diese Methode statt __init__().
        """
        if isinstance(data, DBObject):
            items = data.to_dict().items()
        elif isinstance(data, Mapping):
            items = data.items()
        else:
            items = vars(data).items()

        schema = getattr(type(self), "__schema__", None)
        nested = schema.nested if schema is not None else {}

        for column, value in items:
            nested_cls = nested.get(column)
            if nested_cls is not None:
                if isinstance(value, Mapping):
                    value = nested_cls().inflate(value)
                elif isinstance(value, (list, tuple)) and all(isinstance(v, Mapping) for v in value):
                    value = [nested_cls().inflate(v) for v in value]
            self._fields[column] = value
        return self

    def nested_objects(self) -> List["DBObject"]:
        """
        Alle per inflate() verschachtelten DBObject-Felder (auch in Listen).
        """
        found: List[DBObject] = []
        for value in self._fields.values():
            if isinstance(value, DBObject):
                found.append(value)
            elif isinstance(value, list):
                found.extend(v for v in value if isinstance(v, DBObject))
        return found

    def save_nested(self) -> Result:
        """
        Speichert zuerst alle verschachtelten Objekte (rekursiv), dann sich
        selbst. save() allein speichert nie verschachtelte Objekte.
        FK-Werte werden dabei nicht automatisch gesetzt.
        """
        for obj in self.nested_objects():
            result = obj.save_nested()
            if not result:
                self.set_error_msg(result.message)
                return result
        return self.save()

    # -------------------- Beziehungen -------------------------------------

    def _child_conditions(self, child_cls: type) -> Dict[str, Any]:
        fk_columns = schema_of(child_cls).foreign_key_columns(schema_of(type(self)))
        return {fk: self._fields.get(pk) for pk, fk in fk_columns.items()}

    def get_children(self, child_cls: Type[T]) -> List[T]:
        """
        Alle Instanzen von child_cls, deren FK-Spalten auf diesen Datensatz zeigen.
        """
        if self.is_new():
            return []
        return child_cls.query().find().where(self._child_conditions(child_cls)).exec()

    def count_children(self, child_cls: type) -> int:
        if self.is_new():
            return 0
        return child_cls.query().count().where(self._child_conditions(child_cls)).exec()

    def get_parent(self, parent_cls: Type[T]) -> Optional[T]:
        """
        Instanz von parent_cls, auf die dieser Datensatz zeigt, oder None.

        Raises MissingPropertyError, wenn eine FK-Spalte weder im Schema
        dieser Klasse steht noch als Feld gesetzt ist.
        """
        own_schema = schema_of(type(self))
        fk_columns = own_schema.foreign_key_columns(schema_of(parent_cls))
        parent_pk: Dict[str, Any] = {}
        for pk, related_column in fk_columns.items():
            if not (own_schema.has_column(related_column) or related_column in self._fields):
                raise MissingPropertyError(
                    f"{type(self).__name__}.get_parent() Column property {related_column} is missing.",
                    column=related_column,
                )
            parent_pk[pk] = self._fields.get(related_column)
        return parent_cls.query().find_by_pk(parent_pk)
