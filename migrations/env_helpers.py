"""Database URL helpers for Alembic migrations.

Kept apart from env.py so they can be tested without an alembic context.
DATABASE_URL may be a URL or a libpq key=value DSN (Cloud SQL sockets);
both become a SQLAlchemy psycopg2 URL, with DB_PASSWORD filled in when
the DSN carries no password.
"""

from __future__ import annotations

import os

from psycopg2.extensions import parse_dsn
from sqlalchemy.engine import URL, make_url

DRIVER = "postgresql+psycopg2"


def _db_password() -> str | None:
    return os.environ.get("DB_PASSWORD") or None


def libpq_dsn_to_url(dsn: str) -> URL:
    """Convert a libpq DSN to a SQLAlchemy URL.

    A host starting with "/" is a unix socket directory and is passed
    as the `host` query argument, which is how psycopg2 expects it.
    """
    tokens = parse_dsn(dsn)
    host = tokens.get("host", "localhost")
    socket_dir = host if host.startswith("/") else None

    return URL.create(
        DRIVER,
        username=tokens.get("user") or None,
        password=tokens.get("password") or _db_password(),
        host=None if socket_dir else host,
        port=None if socket_dir else int(tokens.get("port", "5432")),
        database=tokens.get("dbname") or None,
        query={"host": socket_dir} if socket_dir else {},
    )


def url_from_string(url: str) -> URL:
    """Normalize a postgres URL to the psycopg2 driver."""
    if url.startswith("postgres://"):
        url = "postgresql://" + url[len("postgres://"):]
    parsed = make_url(url)
    if parsed.drivername == "postgresql":
        parsed = parsed.set(drivername=DRIVER)
    if not parsed.password and _db_password():
        parsed = parsed.set(password=_db_password())
    return parsed


def get_database_url() -> str:
    url = os.environ.get("DATABASE_URL")
    if not url:
        raise RuntimeError("DATABASE_URL is required to run migrations")
    parsed = url_from_string(url) if "://" in url else libpq_dsn_to_url(url)
    return parsed.render_as_string(hide_password=False)
