"""SQLite backend adapter."""

from __future__ import annotations

import time
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any, ClassVar

from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.sql.dml import Insert
from sqlmodel import Session

from sync_chain.errors import UniqueKey
from sync_chain.storage.common import build_sqlite_engine
from sync_chain.storage.repository import SyncRepository

DEFAULT_BUSY_TIMEOUT_MS = 5_000
# SQLite VM instructions between deadline checks.
_PROGRESS_STEPS = 1_000
_DEADLINE_MESSAGES = ("interrupted", "database is locked")

_UNIQUE_FAILED_PREFIX = "UNIQUE constraint failed: "
# SQLite reports the offending columns rather than the constraint name.
_UNIQUE_COLUMNS = {
    "users.user_id": UniqueKey.USER_PUBLIC_ID,
    "users.legacy_sync_code": UniqueKey.USER_LEGACY_SYNC_CODE,
    "devices.device_id": UniqueKey.DEVICE_PUBLIC_ID,
    "devices.user_db_id, devices.legacy_device_id": UniqueKey.DEVICE_LEGACY_DEVICE_ID,
    "articles.user_db_id, articles.identifier": UniqueKey.READ_MARK_IDENTIFIER,
    "legacy_feeds.user_db_id": UniqueKey.FEED_BLOB_USER,
}


class SQLiteSyncRepository(SyncRepository):
    """Sync storage in a single SQLite file, serialized on one connection."""

    backend_name: ClassVar[str] = "sqlite"

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS) -> None:
        self.db_path = db_path
        self.busy_timeout_ms = busy_timeout_ms
        db_url = f"sqlite:///{db_path}"
        super().__init__(
            engine=build_sqlite_engine(db_url=db_url, busy_timeout_ms=busy_timeout_ms),
            db_url=db_url,
        )

    def _insert(self, model: type[Any]) -> Insert:
        return sqlite_insert(model)

    def _classify_integrity_error(self, error: IntegrityError) -> UniqueKey | None:
        if getattr(error.orig, "sqlite_errorname", None) not in (None, "SQLITE_CONSTRAINT_UNIQUE"):
            return None
        message = str(error.orig)
        if not message.startswith(_UNIQUE_FAILED_PREFIX):
            return None
        return _UNIQUE_COLUMNS.get(message[len(_UNIQUE_FAILED_PREFIX) :].strip())

    @contextmanager
    def _deadline(self, session: Session, timeout_ms: int) -> Iterator[None]:
        """Bound lock waits with ``busy_timeout`` and running statements with a progress handler."""

        dbapi_connection = session.connection().connection.dbapi_connection
        deadline = time.monotonic() + timeout_ms / 1000.0
        dbapi_connection.execute(f"PRAGMA busy_timeout = {timeout_ms}")
        dbapi_connection.set_progress_handler(
            lambda: int(time.monotonic() > deadline),
            _PROGRESS_STEPS,
        )
        try:
            yield
        finally:
            dbapi_connection.set_progress_handler(None, 0)
            dbapi_connection.execute(f"PRAGMA busy_timeout = {max(1, self.busy_timeout_ms)}")

    def _is_deadline_error(self, error: SQLAlchemyError) -> bool:
        return isinstance(error, OperationalError) and str(error.orig).startswith(
            _DEADLINE_MESSAGES,
        )
