from __future__ import annotations

import logging
import os
import threading
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Mapping, Optional, Union

from psycopg2 import sql
from psycopg2 import pool as pg_pool
from psycopg2.extensions import parse_dsn
from psycopg2.extras import RealDictCursor

logger = logging.getLogger(__name__)

Query = Union[str, sql.Composable]


class ConnectionPool:
    """
    Pool fino sobre psycopg2.pool.ThreadedConnectionPool, compartilhado entre
    as threads do scheduler e dos jobs.
    """

    def __init__(self, min_size: int, max_size: int, conninfo: Mapping[str, Any]):
        self._pool = pg_pool.ThreadedConnectionPool(min_size, max_size, **conninfo)

    @contextmanager
    def connection(self):
        conn = self._pool.getconn()
        try:
            yield conn
        except Exception:
            conn.rollback()
            raise
        finally:
            self._pool.putconn(conn)

    def close(self) -> None:
        self._pool.closeall()


_pool: Optional[ConnectionPool] = None
_lock = threading.Lock()


def build_conninfo() -> Optional[Dict[str, str]]:
    dsn = os.getenv("DATABASE_URL")
    if dsn:
        try:
            return dict(parse_dsn(dsn))
        except Exception as err:  # noqa: BLE001
            logger.warning("DATABASE_URL não pôde ser interpretada (%s); usando como dsn bruto.", err)
            return {"dsn": dsn}

    host = os.getenv("DATABASE_HOST")
    user = os.getenv("DATABASE_USER")
    password = os.getenv("DATABASE_PASSWORD")
    name = os.getenv("DATABASE_NAME")
    if not host or not all([user, password, name]):
        return None

    params = {
        "host": host,
        "port": os.getenv("DATABASE_PORT", "5432"),
        "dbname": name,
        "user": user,
        "password": password,
    }
    sslmode = os.getenv("DATABASE_SSLMODE")
    if sslmode:
        params["sslmode"] = sslmode
    return params


def get_pool() -> Optional[ConnectionPool]:
    global _pool
    if _pool is not None:
        return _pool

    conninfo = build_conninfo()
    if not conninfo:
        return None

    with _lock:
        if _pool is None:
            _pool = ConnectionPool(
                min_size=int(os.getenv("DATABASE_POOL_MIN", "1") or "1"),
                max_size=int(os.getenv("DATABASE_POOL_MAX", "10") or "10"),
                conninfo=conninfo,
            )
    return _pool


def is_configured() -> bool:
    return build_conninfo() is not None


def _require_pool() -> ConnectionPool:
    pool = get_pool()
    if pool is None:
        raise RuntimeError("Database connection is not configured.")
    return pool


@contextmanager
def dict_cursor() -> Iterator[Any]:
    """
    Cursor com RealDictCursor e commit ao final do bloco.
    """
    with _require_pool().connection() as conn:
        with conn.cursor(cursor_factory=RealDictCursor) as cur:
            yield cur
        conn.commit()


def fetch_one(query: Query, params: Optional[Mapping[str, Any]] = None) -> Optional[Dict[str, Any]]:
    if get_pool() is None:
        return None
    with dict_cursor() as cur:
        cur.execute(query, params or {})
        row = cur.fetchone()
        return dict(row) if row else None


def execute(query: Query, params: Optional[Mapping[str, Any]] = None) -> int:
    with dict_cursor() as cur:
        cur.execute(query, params or {})
        return cur.rowcount
