"""Database layer for host persistence.

Supports two backends:
- PostgreSQL (set CLIPAIBLE_DATABASE_URL to a postgres:// URL)
- SQLite (default, file at CLIPAIBLE_SQLITE_PATH)

Raw SQL via psycopg2 (Postgres) or sqlite3 (SQLite). Three small
key/value tables: the job snapshot slot, selector cache entries, and
miscellaneous app state (cache index, stats).

Thread-safety: Postgres uses a ThreadedConnectionPool. SQLite uses
per-call connections with check_same_thread=False, so calls can be
pushed onto worker threads with asyncio.to_thread.
"""

import json
import logging
import os
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Optional

logger = logging.getLogger(__name__)

# Database URL: postgres://... for Postgres, or empty for SQLite
DATABASE_URL = os.environ.get("CLIPAIBLE_DATABASE_URL", "")

SQLITE_PATH = Path(os.environ.get("CLIPAIBLE_SQLITE_PATH", "clipaible.db"))

_initialized = False
_pg_pool = None


def configure(database_url: Optional[str] = None, sqlite_path: Optional[Path] = None) -> None:
    """Point the layer at a different database. Resets initialization state."""
    global DATABASE_URL, SQLITE_PATH, _initialized, _pg_pool
    if database_url is not None:
        DATABASE_URL = database_url
    if sqlite_path is not None:
        SQLITE_PATH = Path(sqlite_path)
    if _pg_pool is not None:
        _pg_pool.closeall()
        _pg_pool = None
    _initialized = False


def _is_postgres() -> bool:
    """Check if we're using Postgres."""
    return DATABASE_URL.startswith("postgres")


def _get_pg_pool():
    """Get or create the Postgres connection pool (lazy singleton)."""
    global _pg_pool
    if _pg_pool is None:
        import psycopg2.pool
        _pg_pool = psycopg2.pool.ThreadedConnectionPool(
            minconn=1,
            maxconn=5,
            dsn=DATABASE_URL,
        )
        logger.info("PostgreSQL connection pool initialized (1-5 connections)")
    return _pg_pool


@contextmanager
def get_connection():
    """Get a database connection (Postgres or SQLite).

    Usage:
        with get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(...)
            conn.commit()
    """
    if _is_postgres():
        pool = _get_pg_pool()
        conn = pool.getconn()
        try:
            yield conn
        finally:
            pool.putconn(conn)
    else:
        conn = sqlite3.connect(str(SQLITE_PATH), check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        try:
            yield conn
        finally:
            conn.close()


def _json_dumps(data: Any) -> str:
    """Serialize data to JSON string for storage."""
    if data is None:
        return "{}"
    return json.dumps(data, ensure_ascii=False, default=str)


def _json_loads(text: Any) -> Any:
    """Deserialize JSON string from storage."""
    if not text:
        return {}
    if isinstance(text, (dict, list)):
        return text  # Already parsed (Postgres JSONB)
    return json.loads(text)


def execute(sql: str, params: tuple = (), fetch: str = "none") -> Any:
    """Execute a SQL statement.

    Args:
        sql: SQL statement (%s placeholders, adapted to ? for SQLite)
        params: Parameters tuple
        fetch: "none", "one", "all"

    Returns:
        None for "none", dict for "one", list[dict] for "all"
    """
    if _is_postgres():
        adapted_sql = sql
    else:
        adapted_sql = sql.replace("%s", "?")

    with get_connection() as conn:
        cursor = conn.cursor()
        cursor.execute(adapted_sql, params)

        if fetch == "one":
            row = cursor.fetchone()
            if row is None:
                return None
            if _is_postgres():
                columns = [desc[0] for desc in cursor.description]
                return dict(zip(columns, row))
            return dict(row)
        elif fetch == "all":
            rows = cursor.fetchall()
            if _is_postgres():
                columns = [desc[0] for desc in cursor.description]
                return [dict(zip(columns, row)) for row in rows]
            return [dict(row) for row in rows]

        conn.commit()
        return None


def init_db():
    """Create tables if they don't exist."""
    global _initialized
    if _initialized:
        return

    if _is_postgres():
        _init_postgres()
    else:
        _init_sqlite()

    _initialized = True
    backend = "PostgreSQL" if _is_postgres() else f"SQLite ({SQLITE_PATH})"
    logger.info(f"Clip database initialized: {backend}")


def _init_postgres():
    """Create Postgres tables."""
    ddl = """
    CREATE TABLE IF NOT EXISTS job_snapshots (
        slot VARCHAR(50) PRIMARY KEY,
        snapshot JSONB NOT NULL,
        updated_at TIMESTAMP DEFAULT NOW()
    );

    CREATE TABLE IF NOT EXISTS selector_cache (
        cache_key VARCHAR(255) PRIMARY KEY,
        entry JSONB NOT NULL,
        updated_at TIMESTAMP DEFAULT NOW()
    );

    CREATE TABLE IF NOT EXISTS app_state (
        state_key VARCHAR(100) PRIMARY KEY,
        value JSONB NOT NULL,
        updated_at TIMESTAMP DEFAULT NOW()
    );
    """
    with get_connection() as conn:
        cursor = conn.cursor()
        cursor.execute(ddl)
        conn.commit()


def _init_sqlite():
    """Create SQLite tables."""
    ddl = """
    CREATE TABLE IF NOT EXISTS job_snapshots (
        slot TEXT PRIMARY KEY,
        snapshot TEXT NOT NULL,
        updated_at TEXT
    );

    CREATE TABLE IF NOT EXISTS selector_cache (
        cache_key TEXT PRIMARY KEY,
        entry TEXT NOT NULL,
        updated_at TEXT
    );

    CREATE TABLE IF NOT EXISTS app_state (
        state_key TEXT PRIMARY KEY,
        value TEXT NOT NULL,
        updated_at TEXT
    );
    """
    with get_connection() as conn:
        cursor = conn.cursor()
        cursor.executescript(ddl)
        conn.commit()
