"""Common helpers for storage repositories."""

from __future__ import annotations

import sqlite3
from datetime import UTC, datetime

from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlalchemy.pool import QueuePool
from sqlmodel import create_engine


def utc_now() -> datetime:
    """Current UTC timestamp."""

    return datetime.now(tz=UTC)


def to_utc_aware(value: datetime) -> datetime:
    """Normalize values read back from SQLite (naive) and PostgreSQL (aware)."""

    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def is_sqlite_url(db_url: str) -> bool:
    return db_url.startswith("sqlite")


def is_postgres_url(db_url: str) -> bool:
    return db_url.startswith(("postgresql", "postgres://"))


def normalize_postgres_url(db_url: str) -> str:
    """Force the psycopg 3 driver for plain ``postgres://`` style URLs."""

    scheme, _, rest = db_url.partition("://")
    if scheme in {"postgres", "postgresql"}:
        return f"postgresql+psycopg://{rest}"
    return db_url


def build_sqlite_engine(*, db_url: str, busy_timeout_ms: int) -> Engine:
    """Build SQLAlchemy engine backed by a single SQLite connection.

    ``pool_size=1`` with no overflow serializes every operation of the process
    on one physical connection. Other processes can still race through the file.
    """

    engine = create_engine(
        db_url,
        connect_args={
            "check_same_thread": False,
            "timeout": max(1.0, busy_timeout_ms / 1000.0),
        },
        poolclass=QueuePool,
        pool_size=1,
        max_overflow=0,
    )
    event.listen(
        engine,
        "connect",
        lambda dbapi_connection, _: _apply_sqlite_pragmas(
            dbapi_connection,
            busy_timeout_ms=busy_timeout_ms,
        ),
    )
    return engine


def build_postgres_engine(*, db_url: str, statement_timeout_ms: int, pool_size: int) -> Engine:
    """Build SQLAlchemy engine with a real connection pool for PostgreSQL."""

    return create_engine(
        normalize_postgres_url(db_url),
        connect_args={"options": f"-c statement_timeout={max(1, statement_timeout_ms)}"},
        pool_pre_ping=True,
        pool_size=max(1, pool_size),
        max_overflow=max(1, pool_size) * 2,
        pool_recycle=3600,
    )


def _apply_sqlite_pragmas(dbapi_connection: sqlite3.Connection, *, busy_timeout_ms: int) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode = WAL")
    cursor.execute(f"PRAGMA busy_timeout = {max(1, busy_timeout_ms)}")
    cursor.execute("PRAGMA foreign_keys = ON")
    cursor.close()
