"""Privileged Postgres access for the provisioning function."""

from __future__ import annotations

import logging
import os
import time
from contextlib import contextmanager
from typing import Any, Iterable

from psycopg2.pool import SimpleConnectionPool


_POOL: SimpleConnectionPool | None = None
_logger = logging.getLogger("flexcrm.db")
_SLOW_MS = float(os.getenv("CRM_QUERY_SLOW_MS", "200"))


def get_db_url() -> str:
    url = os.getenv("SUPABASE_DB_URL") or os.getenv("DATABASE_URL")
    if not url:
        raise RuntimeError("SUPABASE_DB_URL or DATABASE_URL is required for table provisioning")
    return url


def init_pool(minconn: int | None = None, maxconn: int | None = None) -> None:
    global _POOL
    if _POOL is None:
        if minconn is None:
            minconn = int(os.getenv("CRM_DB_POOL_MIN", "1"))
        if maxconn is None:
            maxconn = int(os.getenv("CRM_DB_POOL_MAX", "5"))
        _POOL = SimpleConnectionPool(minconn, maxconn, dsn=get_db_url())


def close_pool() -> None:
    global _POOL
    if _POOL is not None:
        _POOL.closeall()
        _POOL = None


def _get_pool() -> SimpleConnectionPool:
    if _POOL is None:
        init_pool()
    return _POOL


@contextmanager
def get_conn():
    pool = _get_pool()
    conn = pool.getconn()
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        pool.putconn(conn)


def execute(conn, sql: str, params: Iterable[Any] | None = None, query_name: str | None = None) -> int:
    start = time.perf_counter()
    with conn.cursor() as cur:
        cur.execute(sql, params or [])
        rowcount = cur.rowcount
    elapsed_ms = (time.perf_counter() - start) * 1000
    if elapsed_ms >= _SLOW_MS:
        _logger.warning("db_slow_query query=%s ms=%.2f", query_name or "unnamed", elapsed_ms)
    else:
        _logger.info("db_query query=%s ms=%.2f rowcount=%s", query_name or "unnamed", elapsed_ms, rowcount)
    return rowcount
