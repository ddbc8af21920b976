from __future__ import annotations

import contextlib
import logging
import threading
from typing import (
    Any,
    Callable,
    Dict,
    Iterable,
    List,
    Mapping,
    Optional,
    Sequence,
    Tuple,
)

import psycopg2
from psycopg2 import sql
import psycopg2.extras
from psycopg2.extras import Json
from psycopg2.pool import SimpleConnectionPool

from db_schema import TableSchema, primary_key, schema_of

log = logging.getLogger(__name__)
sql_log = logging.getLogger(f"{__name__}.sql")


class Database:
    """
    Verbindungs-Verwaltung für alle DBQuery-Objekte:
    Einzelverbindung oder Pool, Transaktionen (mit Savepoints), SQL-Logger.
    """

    # --- Klassenattribute / State ---
    _connection: Optional[psycopg2.extensions.connection] = None
    _pool: Optional[SimpleConnectionPool] = None

    # Logger: fn(sql_text, params)
    _logger: Optional[Callable[[str, Sequence[Any]], None]] = None

    # Thread-Local für Transaktionen
    _local = threading.local()

    # ---------------------- Verbindungs-Setup ----------------------------

    @classmethod
    def connect(cls, **db_params):
        """
        Einfache Einzelverbindung (kein Pool).
        """
        cls._connection = psycopg2.connect(**db_params)
        cls._connection.autocommit = False
        cls._pool = None
        log.info("connected to %s", db_params.get("dbname", "<default>"))

    @classmethod
    def connect_pool(cls, minconn: int = 1, maxconn: int = 5, **db_params):
        """
        Verbindungs-Pooling via psycopg2.pool.SimpleConnectionPool.
        """
        cls._pool = SimpleConnectionPool(minconn, maxconn, **db_params)
        cls._connection = None
        log.info("connection pool %d..%d for %s", minconn, maxconn, db_params.get("dbname", "<default>"))

    @classmethod
    def connect_from_settings(cls, settings=None):
        """
        Verbindet mit den Werten aus db_settings (Umgebung / .env).
        """
        from db_settings import get_settings

        settings = settings or get_settings()
        params = settings.connect_params()
        if settings.pool_max > 1:
            cls.connect_pool(settings.pool_min, settings.pool_max, **params)
        else:
            cls.connect(**params)
        if settings.log_sql:
            cls.set_logger(lambda q, p: sql_log.debug("%s %r", q, list(p)))

    @classmethod
    def is_connected(cls) -> bool:
        return cls._connection is not None or cls._pool is not None

    @classmethod
    def close(cls) -> None:
        """
        Schließt Einzelverbindung oder Pool (falls vorhanden).
        """
        if cls._pool is not None:
            try:
                cls._pool.closeall()
            finally:
                cls._pool = None
        if cls._connection is not None:
            try:
                cls._connection.close()
            finally:
                cls._connection = None
        log.info("database connection closed")

    # ---------------------- Logger ---------------------------------------

    @classmethod
    def set_logger(cls, fn: Optional[Callable[[str, Sequence[Any]], None]]):
        """
        Setzt/entfernt einen Query-Logger: fn(sql_text, params).
        """
        cls._logger = fn

    @classmethod
    def _log_sql(cls, conn, query: Any, params: Optional[Sequence[Any]]) -> None:
        if not cls._logger:
            return
        try:
            if isinstance(query, sql.Composable):
                q = query.as_string(conn)
            else:
                q = str(query)
        except Exception:
            q = str(query)
        try:
            cls._logger(q, params or [])
        except Exception:
            # Logger darf niemals stören
            log.debug("sql logger failed", exc_info=True)

    # ---------------------- Helpers für Connection / Cursor ---------------

    @classmethod
    def _in_transaction(cls) -> bool:
        return getattr(cls._local, "conn", None) is not None

    @classmethod
    def _current_connection(cls) -> psycopg2.extensions.connection:
        if cls._in_transaction():
            return cls._local.conn  # type: ignore[attr-defined]
        if not cls.is_connected():
            raise RuntimeError("Bitte erst Database.connect() oder connect_pool() aufrufen.")
        if cls._pool:
            return cls._pool.getconn()
        assert cls._connection is not None
        return cls._connection

    @classmethod
    def _release_connection(cls, conn: psycopg2.extensions.connection):
        if cls._pool and not cls._in_transaction():
            cls._pool.putconn(conn)

    @classmethod
    @contextlib.contextmanager
    def _get_cursor(cls, dict_cursor: bool = False):
        """
        Interner Context-Manager, der je nach Setup aus Pool/EZ-Verbindung greift.
        Er commit/rollback nur, wenn NICHT in einer (äußeren) transaction().
        """
        conn = cls._current_connection()
        cur_cls = psycopg2.extras.RealDictCursor if dict_cursor else None
        cur = conn.cursor(cursor_factory=cur_cls)
        try:
            yield conn, cur
            if not cls._in_transaction():
                conn.commit()
        except Exception:
            try:
                if not cls._in_transaction():
                    conn.rollback()
            finally:
                raise
        finally:
            try:
                cur.close()
            finally:
                if not cls._in_transaction():
                    cls._release_connection(conn)

    # -------------------- Transaction-Context -----------------------------

    @classmethod
    @contextlib.contextmanager
    def transaction(cls):
        """
        with Database.transaction():
            … mehrere save()-Aufrufe …
        commit/rollback automatisch; Verschachtelung via Savepoints.
        """
        if cls._in_transaction():
            with cls._savepoint_scope():
                yield
            return

        # eigene Verbindung reservieren
        conn = cls._current_connection()
        cls._local.conn = conn
        cls._local.depth = 1
        try:
            yield
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            cls._local.conn = None
            cls._local.depth = 0
            if cls._pool:
                cls._pool.putconn(conn)

    @classmethod
    @contextlib.contextmanager
    def _savepoint_scope(cls):
        """
        Innere Transaktion. Der Savepoint wird vor dem try gesetzt: schlägt
        schon SAVEPOINT fehl, gibt es nichts zurückzurollen.
        """
        conn = cls._local.conn
        depth = cls._local.depth + 1
        name = f"dbobject_sp_{depth}"
        cls._savepoint(conn, "SAVEPOINT", name)
        cls._local.depth = depth
        try:
            yield
        except Exception:
            cls._savepoint(conn, "ROLLBACK TO SAVEPOINT", name)
            raise
        else:
            cls._savepoint(conn, "RELEASE SAVEPOINT", name)
        finally:
            cls._local.depth = depth - 1

    @classmethod
    def _savepoint(cls, conn, verb: str, name: str) -> None:
        stmt = sql.SQL(f"{verb} {{}}").format(sql.Identifier(name))
        cls._log_sql(conn, stmt, None)
        with conn.cursor() as cur:
            cur.execute(stmt)

    @classmethod
    def healthcheck(cls) -> bool:
        try:
            with cls._get_cursor() as (conn, cur):
                query = "SELECT 1"
                cls._log_sql(conn, query, None)
                cur.execute(query)
                cur.fetchone()
            return True
        except (RuntimeError, psycopg2.Error):
            return False

    # -------------------- DDL aus TableSchema -----------------------------

    @classmethod
    def create_table(cls, schema: TableSchema):
        """
        CREATE TABLE IF NOT EXISTS … aus einem TableSchema, inkl. PRIMARY KEY.
        """
        cols = []
        for name, column in schema.column_types.items():
            parts = [sql.Identifier(name), sql.SQL(column.ddl_type())]
            if column.default is not None:
                parts.append(sql.SQL("DEFAULT {}").format(sql.SQL(column.default)))
            if not column.nullable:
                parts.append(sql.SQL("NOT NULL"))
            cols.append(sql.SQL(" ").join(parts))
        cols.append(
            sql.SQL("PRIMARY KEY ({})").format(
                sql.SQL(", ").join(sql.Identifier(pk) for pk in schema.primary_key)
            )
        )
        cls._execute_ddl(
            sql.SQL("CREATE TABLE IF NOT EXISTS {} ({})").format(
                sql.Identifier(schema.table),
                sql.SQL(", ").join(cols),
            )
        )

    @classmethod
    def drop_table(cls, table: str, cascade: bool = False):
        stmt = sql.SQL("DROP TABLE IF EXISTS {} {}").format(
            sql.Identifier(table),
            sql.SQL("CASCADE" if cascade else "")
        )
        cls._execute_ddl(stmt)

    @classmethod
    def _execute_ddl(cls, stmt: sql.Composable) -> None:
        with cls._get_cursor() as (conn, cur):
            cls._log_sql(conn, stmt, None)
            cur.execute(stmt)

    # -------------------- Hilfsfunktionen für WHERE -----------------------

    @classmethod
    def _build_conditions(cls, conditions: Mapping[str, Any]) -> Tuple[sql.Composable, List[Any]]:
        if not conditions:
            return sql.SQL(""), []
        parts, vals = [], []
        for col, val in conditions.items():
            if isinstance(val, (list, tuple, set)):
                parts.append(sql.SQL("{} = ANY(%s)").format(sql.Identifier(col)))
                vals.append(list(val))
            else:
                parts.append(sql.SQL("{} = %s").format(sql.Identifier(col)))
                vals.append(val)
        return sql.SQL(" AND ").join(parts), vals


class DBQuery:
    """
    Query-Builder für genau eine gemappte Klasse.

        DBQuery(Order).insert({"total": 10}).exec()         -> betroffene Zeilen
        DBQuery(Order).update(values).where(pk).exec()      -> betroffene Zeilen
        DBQuery(Order).select_one(cols).where(pk).exec()    -> dict | None
        DBQuery(Order).find().where(cond).exec()            -> [Order, …]
        DBQuery(Order).count().where(cond).exec()           -> int
    """

    INSERT = "insert"
    UPDATE = "update"
    SELECT_ONE = "select_one"
    FIND = "find"
    COUNT = "count"
    DELETE = "delete"

    database = Database

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

    # -------------------- Statement-Aufbau --------------------------------

    def _start(self, mode: str, values=None, columns=None) -> "DBQuery":
        self._mode = mode
        self._values = dict(values or {})
        self._columns = list(columns or [])
        self._where = {}
        return self

    def insert(self, values: Mapping[str, Any]) -> "DBQuery":
        return self._start(self.INSERT, values=values)

    def update(self, values: Mapping[str, Any]) -> "DBQuery":
        return self._start(self.UPDATE, values=values)

    def select_one(self, columns: Iterable[str] = ()) -> "DBQuery":
        return self._start(self.SELECT_ONE, columns=columns)

    def find(self) -> "DBQuery":
        return self._start(self.FIND)

    def count(self) -> "DBQuery":
        return self._start(self.COUNT)

    def delete(self) -> "DBQuery":
        return self._start(self.DELETE)

    def where(self, predicate: Mapping[str, Any]) -> "DBQuery":
        if self._mode == self.INSERT:
            raise ValueError("WHERE ist bei INSERT nicht möglich.")
        self._where.update(predicate)
        return self

    def exec(self):
        if self._mode is None:
            raise RuntimeError("Kein Statement: erst insert()/update()/select_one()/find()/count() aufrufen.")
        return getattr(self, f"_exec_{self._mode}")()

    # -------------------- Ausführung --------------------------------------

    def _select_list(self, columns: Sequence[str]) -> sql.Composable:
        return sql.SQL(", ").join(map(sql.Identifier, columns or self._schema.columns))

    def _with_where(self, q: sql.Composable, conditions: Mapping[str, Any]) -> Tuple[sql.Composable, List[Any]]:
        cond_sql, cond_vals = self.database._build_conditions(conditions)
        if cond_vals:
            q += sql.SQL(" WHERE {}").format(cond_sql)
        return q, cond_vals

    def _params(self, values: Mapping[str, Any]) -> List[Any]:
        """dict/list-Werte für JSONB-Spalten als Json übergeben, sonst unverändert."""
        params = []
        for col, val in values.items():
            column = self._schema.column(col)
            if column is not None and column.py_type in (dict, list) and isinstance(val, (dict, list)):
                val = Json(val)
            params.append(val)
        return params

    def _exec_insert(self) -> int:
        pk_cols = sql.SQL(", ").join(map(sql.Identifier, self._schema.primary_key))
        if self._values:
            q = sql.SQL("INSERT INTO {} ({}) VALUES ({}) RETURNING {}").format(
                sql.Identifier(self.table),
                sql.SQL(", ").join(map(sql.Identifier, self._values)),
                sql.SQL(", ").join([sql.Placeholder()] * len(self._values)),
                pk_cols,
            )
        else:
            q = sql.SQL("INSERT INTO {} DEFAULT VALUES RETURNING {}").format(
                sql.Identifier(self.table), pk_cols
            )
        vals = self._params(self._values)
        with self.database._get_cursor() as (conn, cur):
            self.database._log_sql(conn, q, vals)
            cur.execute(q, vals)
            affected = cur.rowcount
            row = cur.fetchone() if affected else None
        self._last_pk = dict(zip(self._schema.primary_key, row)) if row else None
        return affected

    def _exec_update(self) -> int:
        if not self._values:
            return 0
        set_parts = [sql.SQL("{} = %s").format(sql.Identifier(col)) for col in self._values]
        set_vals = self._params(self._values)
        q = sql.SQL("UPDATE {} SET {}").format(
            sql.Identifier(self.table), sql.SQL(", ").join(set_parts)
        )
        q, cond_vals = self._with_where(q, self._where)
        vals = set_vals + cond_vals
        with self.database._get_cursor() as (conn, cur):
            self.database._log_sql(conn, q, vals)
            cur.execute(q, vals)
            return cur.rowcount

    def _fetch_one(self, columns: Sequence[str], conditions: Mapping[str, Any]) -> Optional[Dict[str, Any]]:
        q = sql.SQL("SELECT {} FROM {}").format(self._select_list(columns), sql.Identifier(self.table))
        q, vals = self._with_where(q, conditions)
        q += sql.SQL(" LIMIT 1")
        with self.database._get_cursor(dict_cursor=True) as (conn, cur):
            self.database._log_sql(conn, q, vals)
            cur.execute(q, vals)
            row = cur.fetchone()
            return dict(row) if row else None

    def _exec_select_one(self) -> Optional[Dict[str, Any]]:
        return self._fetch_one(self._columns, self._where)

    def _exec_find(self) -> List[Any]:
        q = sql.SQL("SELECT {} FROM {}").format(self._select_list(()), sql.Identifier(self.table))
        q, vals = self._with_where(q, self._where)
        q += sql.SQL(" ORDER BY {}").format(
            sql.SQL(", ").join(map(sql.Identifier, self._schema.primary_key))
        )
        with self.database._get_cursor(dict_cursor=True) as (conn, cur):
            self.database._log_sql(conn, q, vals)
            cur.execute(q, vals)
            rows = cur.fetchall()
        return [self._model().inflate(dict(r)) for r in rows]

    def _exec_count(self) -> int:
        q = sql.SQL("SELECT COUNT(*) FROM {}").format(sql.Identifier(self.table))
        q, vals = self._with_where(q, self._where)
        with self.database._get_cursor() as (conn, cur):
            self.database._log_sql(conn, q, vals)
            cur.execute(q, vals)
            return cur.fetchone()[0]

    def _exec_delete(self) -> int:
        if not self._where:
            raise ValueError("DELETE ohne WHERE wird nicht ausgeführt.")
        q = sql.SQL("DELETE FROM {}").format(sql.Identifier(self.table))
        q, vals = self._with_where(q, self._where)
        with self.database._get_cursor() as (conn, cur):
            self.database._log_sql(conn, q, vals)
            cur.execute(q, vals)
            return cur.rowcount

    # -------------------- Read-back / PK-Lookup ---------------------------

    def get_last_row(self, columns: Iterable[str]) -> Optional[Dict[str, Any]]:
        """
        Liest die Zeile, die das letzte insert().exec() dieses Objekts
        angelegt hat (per RETURNING gemerkter PK).
        """
        if self._last_pk is None:
            return None
        return self._fetch_one(list(columns), self._last_pk)

    def find_by_pk(self, pk_values: Any):
        """
        pk_values: Mapping {pk: wert}, Sequenz in PK-Reihenfolge oder
        Skalar bei einspaltigem PK. Gibt eine Instanz oder None zurück.
        """
        pk = primary_key(self._model)
        if isinstance(pk_values, Mapping):
            conditions = {col: pk_values[col] for col in pk}
        elif isinstance(pk_values, (list, tuple)):
            if len(pk_values) != len(pk):
                raise ValueError(f"{self.table}: {len(pk)} PK-Werte erwartet, {len(pk_values)} erhalten.")
            conditions = dict(zip(pk, pk_values))
        elif len(pk) == 1:
            conditions = {pk[0]: pk_values}
        else:
            raise ValueError(f"{self.table} hat einen zusammengesetzten PK {pk}.")
        row = self._fetch_one((), conditions)
        return self._model().inflate(row) if row else None
