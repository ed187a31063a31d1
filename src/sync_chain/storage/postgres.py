"""PostgreSQL backend adapter."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any, ClassVar

from psycopg import errors
from sqlalchemy import text
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.sql.dml import Insert
from sqlmodel import Session

from sync_chain.errors import UniqueKey
from sync_chain.storage.common import build_postgres_engine
from sync_chain.storage.repository import SyncRepository

DEFAULT_STATEMENT_TIMEOUT_MS = 5_000
DEFAULT_POOL_SIZE = 5

_UNIQUE_CONSTRAINTS = {
    "uq_users_user_id": UniqueKey.USER_PUBLIC_ID,
    "uq_users_legacy_sync_code": UniqueKey.USER_LEGACY_SYNC_CODE,
    "uq_devices_device_id": UniqueKey.DEVICE_PUBLIC_ID,
    "uq_devices_user_legacy_device": UniqueKey.DEVICE_LEGACY_DEVICE_ID,
    "uq_articles_user_identifier": UniqueKey.READ_MARK_IDENTIFIER,
    "uq_legacy_feeds_user": UniqueKey.FEED_BLOB_USER,
}


class PostgresSyncRepository(SyncRepository):
    """Sync storage in PostgreSQL over a pool of concurrent connections.

    Races between connections are settled only by unique constraints and
    conditional updates; there is no row locking.
    """

    backend_name: ClassVar[str] = "postgres"

    def __init__(
        self,
        db_url: str,
        *,
        statement_timeout_ms: int = DEFAULT_STATEMENT_TIMEOUT_MS,
        pool_size: int = DEFAULT_POOL_SIZE,
    ) -> None:
        super().__init__(
            engine=build_postgres_engine(
                db_url=db_url,
                statement_timeout_ms=statement_timeout_ms,
                pool_size=pool_size,
            ),
            db_url=db_url,
        )

    def _insert(self, model: type[Any]) -> Insert:
        return pg_insert(model)

    def _classify_integrity_error(self, error: IntegrityError) -> UniqueKey | None:
        if not isinstance(error.orig, errors.UniqueViolation):
            return None
        return _UNIQUE_CONSTRAINTS.get(error.orig.diag.constraint_name or "")

    @contextmanager
    def _deadline(self, session: Session, timeout_ms: int) -> Iterator[None]:
        # is_local=true: the setting ends with the operation's transaction.
        session.connection().execute(
            text("SELECT set_config('statement_timeout', :value, true)"),
            {"value": str(timeout_ms)},
        )
        yield

    def _is_deadline_error(self, error: SQLAlchemyError) -> bool:
        return isinstance(getattr(error, "orig", None), errors.QueryCanceled)
