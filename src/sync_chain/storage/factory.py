"""Pick a storage backend from a database URL."""

from __future__ import annotations

from pathlib import Path

from sqlalchemy.engine import make_url

from sync_chain.config import StorageSettings
from sync_chain.storage.common import is_postgres_url, is_sqlite_url
from sync_chain.storage.postgres import PostgresSyncRepository
from sync_chain.storage.repository import SyncRepository
from sync_chain.storage.sqlite import SQLiteSyncRepository


def open_repository(db_url: str, settings: StorageSettings | None = None) -> SyncRepository:
    """Open (but do not migrate) the repository addressed by ``db_url``."""

    settings = settings or StorageSettings()
    if is_sqlite_url(db_url):
        database = make_url(db_url).database
        if not database or database == ":memory:":
            raise ValueError("SQLite backend needs a file path, in-memory databases are not shared.")
        return SQLiteSyncRepository(
            Path(database),
            busy_timeout_ms=settings.statement_timeout_ms,
        )
    if is_postgres_url(db_url):
        return PostgresSyncRepository(
            db_url,
            statement_timeout_ms=settings.statement_timeout_ms,
            pool_size=settings.pool_size,
        )
    raise ValueError(f"Unsupported database URL scheme: {db_url.split('://', 1)[0]!r}")
