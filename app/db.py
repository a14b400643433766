"""Postgres access for the USE_DB=1 backend: pooled connections and named, timed queries."""

from __future__ import annotations

import contextvars
import logging
import os
import threading
import time
from contextlib import contextmanager
from typing import Any, Iterable

import psycopg2
import psycopg2.extras
from psycopg2.pool import ThreadedConnectionPool


_POOL: ThreadedConnectionPool | None = None
_POOL_LOCK = threading.Lock()
_logger = logging.getLogger("fieldflow.db")
_ACTIVE_CONN: contextvars.ContextVar[Any | None] = contextvars.ContextVar("fieldflow_db_active_conn", default=None)
_DB_STATS: contextvars.ContextVar[dict | None] = contextvars.ContextVar("fieldflow_db_stats", default=None)
_SLOW_MS = float(os.getenv("FIELDFLOW_QUERY_SLOW_MS", "200"))


def get_db_url() -> str:
    url = os.getenv("DATABASE_URL")
    if not url:
        raise RuntimeError("DATABASE_URL is required when USE_DB=1")
    return url


def init_pool(dsn: str | None = None, minconn: int | None = None, maxconn: int | None = None) -> None:
    global _POOL
    with _POOL_LOCK:
        if _POOL is not None:
            return
        if minconn is None:
            minconn = int(os.getenv("FIELDFLOW_DB_POOL_MIN", "1"))
        if maxconn is None:
            maxconn = int(os.getenv("FIELDFLOW_DB_POOL_MAX", "10"))
        _POOL = ThreadedConnectionPool(minconn, maxconn, dsn=dsn or get_db_url())
        _logger.info("db_pool_ready min=%s max=%s", minconn, maxconn)


def close_pool() -> None:
    global _POOL
    with _POOL_LOCK:
        if _POOL is not None:
            _POOL.closeall()
            _POOL = None


def _get_pool() -> ThreadedConnectionPool:
    if _POOL is None:
        init_pool()
    return _POOL


def reset_db_stats() -> None:
    _DB_STATS.set({"queries": 0, "acquire_ms": 0.0, "total_ms": 0.0})


def get_db_stats() -> dict:
    stats = _DB_STATS.get()
    if not isinstance(stats, dict):
        stats = {"queries": 0, "acquire_ms": 0.0, "total_ms": 0.0}
        _DB_STATS.set(stats)
    return stats


def _redact_params(params: Iterable[Any] | None) -> list[Any] | None:
    if params is None:
        return None
    redacted: list[Any] = []
    for val in params:
        if isinstance(val, (bytes, bytearray)):
            redacted.append(f"<bytes:{len(val)}>")
        elif isinstance(val, str) and len(val) > 80:
            redacted.append(f"{val[:40]}...{val[-10:]}")
        else:
            redacted.append(val)
    return redacted


def _record(query_name: str | None, params: Iterable[Any] | None, elapsed_ms: float, rowcount: int | None) -> None:
    stats = get_db_stats()
    stats["queries"] += 1
    stats["total_ms"] += elapsed_ms
    if elapsed_ms >= _SLOW_MS:
        _logger.warning(
            "db_slow_query query=%s ms=%.2f rowcount=%s params=%s",
            query_name or "unnamed",
            elapsed_ms,
            rowcount,
            _redact_params(params),
        )
    elif query_name:
        _logger.debug("db_query query=%s ms=%.2f rowcount=%s", query_name, elapsed_ms, rowcount)


@contextmanager
def get_conn():
    """Borrow a pooled connection; commit on success, roll back on error.

    Nested calls inside ``transaction()`` reuse the active connection and
    leave commit to the outermost block.
    """
    active = _ACTIVE_CONN.get()
    if active is not None:
        yield active
        return
    pool = _get_pool()
    acquire_start = time.perf_counter()
    conn = pool.getconn()
    get_db_stats()["acquire_ms"] += (time.perf_counter() - acquire_start) * 1000
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        pool.putconn(conn)


@contextmanager
def transaction():
    with get_conn() as conn:
        if _ACTIVE_CONN.get() is conn:
            yield conn
            return
        token = _ACTIVE_CONN.set(conn)
        try:
            yield conn
        finally:
            _ACTIVE_CONN.reset(token)


def fetch_one(conn, sql: str, params: Iterable[Any] | None = None, query_name: str | None = None) -> dict | None:
    start = time.perf_counter()
    with conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cur:
        cur.execute(sql, params or [])
        row = cur.fetchone()
        rowcount = cur.rowcount
    _record(query_name, params, (time.perf_counter() - start) * 1000, rowcount)
    return dict(row) if row else None


def fetch_all(conn, sql: str, params: Iterable[Any] | None = None, query_name: str | None = None) -> list[dict]:
    start = time.perf_counter()
    with conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cur:
        cur.execute(sql, params or [])
        rows = [dict(r) for r in cur.fetchall()]
        rowcount = cur.rowcount
    _record(query_name, params, (time.perf_counter() - start) * 1000, rowcount)
    return rows


def execute(conn, sql: str, params: Iterable[Any] | None = None, query_name: str | None = None) -> int:
    start = time.perf_counter()
    with conn.cursor() as cur:
        cur.execute(sql, params or [])
        rowcount = cur.rowcount
    _record(query_name, params, (time.perf_counter() - start) * 1000, rowcount)
    return rowcount


SCHEMA_SQL = """
create table if not exists records (
    kind text not null,
    id text not null,
    data jsonb not null,
    created_at timestamptz not null default now(),
    updated_at timestamptz not null default now(),
    primary key (kind, id)
);
create table if not exists job_state_transitions (
    id text primary key,
    job_id text not null,
    from_state text,
    to_state text not null,
    changed_by text,
    changed_by_role text,
    change_source text not null,
    reason text,
    notes text,
    created_at timestamptz not null default now()
);
create index if not exists job_state_transitions_job_idx on job_state_transitions (job_id, created_at);
create table if not exists workflows (
    id text primary key,
    data jsonb not null,
    is_active boolean not null default true,
    is_template boolean not null default false,
    deleted_at timestamptz,
    created_at timestamptz not null default now(),
    updated_at timestamptz not null default now()
);
create table if not exists automation_logs (
    id text primary key,
    execution_id text not null,
    workflow_id text not null,
    status text not null,
    triggered_by_entity_type text,
    triggered_by_entity_id text,
    data jsonb not null,
    started_at timestamptz,
    completed_at timestamptz,
    seq bigserial
);
create index if not exists automation_logs_workflow_idx on automation_logs (workflow_id, started_at);
create index if not exists automation_logs_execution_idx on automation_logs (execution_id, seq);
create table if not exists pending_actions (
    id text primary key,
    status text not null default 'pending',
    run_at timestamptz not null,
    data jsonb not null,
    created_at timestamptz not null default now(),
    claimed_at timestamptz,
    done_at timestamptz,
    last_error text
);
create index if not exists pending_actions_due_idx on pending_actions (status, run_at);
"""


def ensure_schema() -> None:
    with get_conn() as conn:
        execute(conn, SCHEMA_SQL, query_name="schema.ensure")
