"""Database access layer using psycopg2.

Provides:
- get_conn(): Get a database connection from DATABASE_URL
- txn(): Context manager for short, safe transactions
- fetchone/fetchall: Query helpers
- StorageError: psycopg2 failures surfaced to the pipeline
"""

import os
from contextlib import contextmanager
from typing import Any, Iterator, Sequence
from urllib.parse import urlparse

import psycopg2
from psycopg2.extensions import connection as PgConnection, cursor as PgCursor

from aliado.infra.config import ConfigurationError


class StorageError(Exception):
    """Datastore operation failed (network, constraint violation, ...)."""


def _dsn_has_password(dsn: str) -> bool:
    if "://" in dsn:
        return bool(urlparse(dsn).password)
    return any(part.startswith("password=") for part in dsn.split())


def get_conn() -> PgConnection:
    """Get a new database connection from DATABASE_URL.

    DB_PASSWORD is passed separately when the DSN carries no password
    (secret-manager deployments).

    Raises:
        ConfigurationError: If DATABASE_URL is not set.
        StorageError: On connection failure.
    """
    dsn = os.environ.get("DATABASE_URL")
    if not dsn:
        raise ConfigurationError("DATABASE_URL environment variable not set")

    db_password = os.environ.get("DB_PASSWORD", "")
    try:
        if db_password and not _dsn_has_password(dsn):
            return psycopg2.connect(dsn, password=db_password)
        return psycopg2.connect(dsn)
    except psycopg2.Error as e:
        raise StorageError(f"database connection failed: {type(e).__name__}") from e


@contextmanager
def txn(conn: PgConnection | None = None) -> Iterator[PgCursor]:
    """Context manager for a short, safe transaction.

    If conn is None, creates a new connection that is closed on exit.
    Commits on successful exit, rolls back on exception. psycopg2 errors
    are re-raised as StorageError; anything else propagates unchanged.

    Example:
        with txn() as cur:
            cur.execute("INSERT INTO t (x) VALUES (%s)", (1,))
    """
    owns_conn = conn is None
    if owns_conn:
        conn = get_conn()

    try:
        with conn.cursor() as cur:
            yield cur
        conn.commit()
    except psycopg2.Error as e:
        conn.rollback()
        raise StorageError(str(e).strip() or type(e).__name__) from e
    except Exception:
        conn.rollback()
        raise
    finally:
        if owns_conn:
            conn.close()


def fetchone(
    cur: PgCursor,
    query: str,
    params: Sequence[Any] | None = None,
) -> tuple[Any, ...] | None:
    """Execute query and fetch one row (None if no results)."""
    cur.execute(query, params)
    return cur.fetchone()


def fetchall(
    cur: PgCursor,
    query: str,
    params: Sequence[Any] | None = None,
) -> list[tuple[Any, ...]]:
    """Execute query and fetch all rows."""
    cur.execute(query, params)
    return cur.fetchall()
