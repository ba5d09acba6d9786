"""
Cliente Postgres com a mesma interface encadeada do supabase-py.

Permite que jobs e scripts falem direto com o banco (DATABASE_URL) usando
`client.table("x").select(...).eq(...).execute().data`, e serve como backend
de tabelas quando o Supabase não está configurado.
"""
from __future__ import annotations

import logging
import re
import threading
from types import SimpleNamespace
from typing import Any, Dict, List, NamedTuple, Optional, Sequence, Union

from psycopg2 import sql
from psycopg2.extras import Json, RealDictCursor

from db import get_pool, is_configured

logger = logging.getLogger(__name__)

_instance_lock = threading.Lock()
_client: Optional["PostgresLikeClient"] = None

_IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

Rows = Union[Dict[str, Any], Sequence[Dict[str, Any]]]

_OPERATORS = {
    "eq": "=",
    "neq": "<>",
    "gt": ">",
    "gte": ">=",
    "lt": "<",
    "lte": "<=",
}


class _Filter(NamedTuple):
    column: str
    kind: str
    value: Any


def _check_identifier(name: str) -> str:
    candidate = (name or "").strip()
    if not _IDENTIFIER_RE.match(candidate):
        raise ValueError(f"Invalid column name '{name}'.")
    return candidate


def _adapt(value: Any) -> Any:
    if isinstance(value, (dict, list)):
        return Json(value)
    return value


class PostgresLikeClient:
    def table(self, name: str) -> "TableQuery":
        return TableQuery(_check_identifier(name))


class TableQuery:
    def __init__(self, table_name: str):
        self.table_name = table_name
        self._action = "select"
        self._columns: List[str] = []
        self._filters: List[_Filter] = []
        self._orders: List[tuple] = []
        self._limit: Optional[int] = None
        self._rows: List[Dict[str, Any]] = []
        self._payload: Dict[str, Any] = {}
        self._conflict: List[str] = []

    # ----- leitura -----
    def select(self, columns: str = "*") -> "TableQuery":
        self._action = "select"
        raw = [part.strip() for part in (columns or "*").split(",") if part.strip()]
        self._columns = [] if raw in ([], ["*"]) else [_check_identifier(col) for col in raw]
        return self

    def _filter(self, column: str, kind: str, value: Any) -> "TableQuery":
        self._filters.append(_Filter(_check_identifier(column), kind, value))
        return self

    def eq(self, column: str, value: Any) -> "TableQuery":
        return self._filter(column, "eq", value)

    def neq(self, column: str, value: Any) -> "TableQuery":
        return self._filter(column, "neq", value)

    def gt(self, column: str, value: Any) -> "TableQuery":
        return self._filter(column, "gt", value)

    def gte(self, column: str, value: Any) -> "TableQuery":
        return self._filter(column, "gte", value)

    def lt(self, column: str, value: Any) -> "TableQuery":
        return self._filter(column, "lt", value)

    def lte(self, column: str, value: Any) -> "TableQuery":
        return self._filter(column, "lte", value)

    def in_(self, column: str, values: Sequence[Any]) -> "TableQuery":
        return self._filter(column, "in", list(values))

    def is_(self, column: str, value: Any) -> "TableQuery":
        if value not in (None, "null"):
            raise ValueError("is_ só aceita null.")
        return self._filter(column, "is_null", None)

    def order(self, column: str, desc: bool = False) -> "TableQuery":
        self._orders.append((_check_identifier(column), bool(desc)))
        return self

    def limit(self, count: int) -> "TableQuery":
        self._limit = max(0, int(count))
        return self

    # ----- escrita -----
    def insert(self, rows: Rows) -> "TableQuery":
        self._action = "insert"
        self._rows = [dict(rows)] if isinstance(rows, dict) else [dict(row) for row in rows]
        return self

    def upsert(self, rows: Rows, *, on_conflict: str) -> "TableQuery":
        self.insert(rows)
        self._action = "upsert"
        self._conflict = [_check_identifier(col) for col in on_conflict.split(",") if col.strip()]
        if not self._conflict:
            raise ValueError("on_conflict must define at least one column.")
        return self

    def update(self, payload: Dict[str, Any]) -> "TableQuery":
        self._action = "update"
        self._payload = {_check_identifier(key): value for key, value in payload.items()}
        if not self._payload:
            raise ValueError("Payload de update vazio.")
        return self

    def delete(self) -> "TableQuery":
        self._action = "delete"
        return self

    # ----- execução -----
    def build(self) -> tuple:
        builder = {
            "select": self._compile_select,
            "insert": self._compile_insert,
            "upsert": self._compile_insert,
            "update": self._compile_update,
            "delete": self._compile_delete,
        }.get(self._action)
        if builder is None:
            raise ValueError(f"Ação desconhecida: {self._action}")
        params: Dict[str, Any] = {}
        query = builder(params)
        return query, params

    def execute(self) -> SimpleNamespace:
        if self._action in ("insert", "upsert") and not self._rows:
            return SimpleNamespace(data=[], error=None)

        pool = get_pool()
        if pool is None:
            raise RuntimeError("Database connection is not configured.")

        query, params = self.build()
        with pool.connection() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(query, params)
                rows = [dict(row) for row in cur.fetchall()] if cur.description else []
            if self._action != "select":
                conn.commit()
        return SimpleNamespace(data=rows, error=None)

    # ----- compilação -----
    def _placeholder(self, params: Dict[str, Any], value: Any) -> sql.Placeholder:
        name = f"p{len(params)}"
        params[name] = _adapt(value)
        return sql.Placeholder(name)

    def _where(self, params: Dict[str, Any]) -> sql.Composable:
        if not self._filters:
            return sql.SQL("")
        clauses = []
        for item in self._filters:
            column = sql.Identifier(item.column)
            if item.kind == "is_null":
                clauses.append(sql.SQL("{} IS NULL").format(column))
            elif item.kind == "in":
                clauses.append(sql.SQL("{} = ANY({})").format(column, self._placeholder(params, item.value)))
            else:
                clauses.append(
                    sql.SQL("{} {} {}").format(
                        column,
                        sql.SQL(_OPERATORS[item.kind]),
                        self._placeholder(params, item.value),
                    )
                )
        return sql.SQL(" WHERE ") + sql.SQL(" AND ").join(clauses)

    def _compile_select(self, params: Dict[str, Any]) -> sql.Composable:
        if self._columns:
            columns = sql.SQL(", ").join(sql.Identifier(col) for col in self._columns)
        else:
            columns = sql.SQL("*")
        query = sql.SQL("SELECT {} FROM {}").format(columns, sql.Identifier(self.table_name))
        query += self._where(params)
        if self._orders:
            query += sql.SQL(" ORDER BY ") + sql.SQL(", ").join(
                sql.SQL("{} {}").format(sql.Identifier(col), sql.SQL("DESC" if desc else "ASC"))
                for col, desc in self._orders
            )
        if self._limit is not None:
            query += sql.SQL(" LIMIT {}").format(sql.Literal(self._limit))
        return query

    def _compile_insert(self, params: Dict[str, Any]) -> sql.Composable:
        columns: List[str] = []
        for row in self._rows:
            for key in row:
                if key not in columns:
                    columns.append(_check_identifier(key))

        values = sql.SQL(", ").join(
            sql.SQL("({})").format(
                sql.SQL(", ").join(self._placeholder(params, row.get(col)) for col in columns)
            )
            for row in self._rows
        )
        query = sql.SQL("INSERT INTO {} ({}) VALUES {}").format(
            sql.Identifier(self.table_name),
            sql.SQL(", ").join(sql.Identifier(col) for col in columns),
            values,
        )
        if self._action == "upsert":
            updates = [col for col in columns if col not in self._conflict] or columns
            query += sql.SQL(" ON CONFLICT ({}) DO UPDATE SET {}").format(
                sql.SQL(", ").join(sql.Identifier(col) for col in self._conflict),
                sql.SQL(", ").join(
                    sql.SQL("{0} = EXCLUDED.{0}").format(sql.Identifier(col)) for col in updates
                ),
            )
        return query + sql.SQL(" RETURNING *")

    def _compile_update(self, params: Dict[str, Any]) -> sql.Composable:
        assignments = sql.SQL(", ").join(
            sql.SQL("{} = {}").format(sql.Identifier(col), self._placeholder(params, value))
            for col, value in self._payload.items()
        )
        query = sql.SQL("UPDATE {} SET {}").format(sql.Identifier(self.table_name), assignments)
        return query + self._where(params) + sql.SQL(" RETURNING *")

    def _compile_delete(self, params: Dict[str, Any]) -> sql.Composable:
        query = sql.SQL("DELETE FROM {}").format(sql.Identifier(self.table_name))
        return query + self._where(params) + sql.SQL(" RETURNING *")


def get_postgres_client() -> Optional[PostgresLikeClient]:
    global _client

    if _client is not None:
        return _client

    if not is_configured():
        return None

    with _instance_lock:
        if _client is None:
            _client = PostgresLikeClient()
    return _client


def get_table_client():
    """
    Client de tabelas preferencial: Supabase quando configurado, senão Postgres direto.
    """
    from supabase_client import get_supabase_client

    client = get_supabase_client()
    if client is not None:
        return client
    return get_postgres_client()


def require_table_client():
    from errors import StorageNotConfigured

    client = get_table_client()
    if client is None:
        raise StorageNotConfigured()
    return client
