"""SQLModel-backed storage contract shared by every sync-chain backend.

``SyncRepository`` holds all queries and protocol decisions. Backend adapters
only plug in the engine, the dialect ``INSERT ... ON CONFLICT`` construct, the
per-call deadline mechanism and the translation of native errors into the
shared taxonomy.

Every store operation accepts an optional ``timeout`` in seconds. When it
elapses the running statement is cancelled, the operation's transaction is
rolled back and ``DeadlineExceededError`` is raised.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import datetime
from typing import Any, ClassVar, TypeVar
from uuid import UUID

from sqlalchemy import text
from sqlalchemy import update as sa_update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.sql.dml import Insert
from sqlmodel import Session, col, delete, select

from sync_chain.errors import (
    ChainNotFoundError,
    DeadlineExceededError,
    DeviceNotFoundError,
    DuplicateKeyError,
    FeedNotFoundError,
    InternalError,
    InvalidArgumentError,
    PreconditionFailedError,
    StorageError,
    UniqueKey,
)
from sync_chain.models import (
    ConditionalRead,
    Device,
    FeedBlob,
    ReadMark,
    ReadStatus,
    User,
    UserDevice,
)
from sync_chain.protocol import (
    FeedWriteStrategy,
    Precondition,
    devices_fingerprint as fingerprint_devices,
    etag_variants,
    generate_legacy_device_id,
    generate_legacy_sync_code,
    is_not_modified,
    new_feed_etag,
    new_public_id,
    validate_legacy_device_id,
    validate_legacy_sync_code,
    write_strategy,
)
from sync_chain.storage.alembic_runner import upgrade_head
from sync_chain.storage.common import to_utc_aware, utc_now
from sync_chain.storage.sqlmodel_models import Article, ChainDevice, ChainUser, LegacyFeed

logger = logging.getLogger(__name__)

DEFAULT_READ_MARKS_LIMIT = 1000
DEFAULT_EXPORT_BATCH_SIZE = 500

_RowT = TypeVar("_RowT")
_ItemT = TypeVar("_ItemT")


class SyncRepository:
    """Identity, read-mark and feed-blob storage over one relational backend."""

    backend_name: ClassVar[str] = "generic"

    def __init__(self, *, engine: Engine, db_url: str) -> None:
        self.engine = engine
        self.db_url = db_url

    def close(self) -> None:
        self.engine.dispose()

    def init_schema(self) -> None:
        upgrade_head(self.db_url)

    def ping(self, *, timeout: float | None = None) -> None:
        """Fail with ``StorageError`` when the backend cannot answer a trivial query."""

        with self._session(timeout) as session:
            session.exec(text("SELECT 1"))  # type: ignore[call-overload]

    # Backend adapter hooks.

    def _insert(self, model: type[Any]) -> Insert:
        """Dialect-specific insert supporting ``on_conflict_do_*``."""

        raise NotImplementedError

    def _classify_integrity_error(self, error: IntegrityError) -> UniqueKey | None:
        """Return the unique index that rejected an insert, if it is a known one."""

        raise NotImplementedError

    def _deadline(self, session: Session, timeout_ms: int) -> Any:
        """Context manager bounding every statement run in ``session``."""

        raise NotImplementedError

    def _is_deadline_error(self, error: SQLAlchemyError) -> bool:
        """True when the backend cancelled a statement because its deadline passed."""

        raise NotImplementedError

    # Identity store.

    def register_chain(self, device_name: str, *, timeout: float | None = None) -> UserDevice:
        """Create a new chain with its first device in a single transaction."""

        _require_device_name(device_name)
        with self._session(timeout) as session:
            user_row = ChainUser(
                user_id=new_public_id(),
                legacy_sync_code=generate_legacy_sync_code(),
            )
            session.add(user_row)
            session.flush()
            device_row = _new_device_row(user_db_id=_row_id(user_row.db_id), name=device_name)
            session.add(device_row)
            session.flush()
            registered = UserDevice(user=_to_user(user_row), device=_to_device(device_row))
            session.commit()

        logger.info(
            "Registered chain %s with device %s.",
            registered.user.public_id,
            registered.device.public_id,
        )
        return registered

    def join_chain(
        self,
        device_name: str,
        *,
        user_public_id: str | None = None,
        legacy_sync_code: str | None = None,
        timeout: float | None = None,
    ) -> UserDevice:
        """Add a device to an existing chain resolved by public id or legacy sync code."""

        _require_device_name(device_name)
        with self._session(timeout) as session:
            user_row = _find_user_row(
                session,
                user_public_id=user_public_id,
                legacy_sync_code=legacy_sync_code,
            )
            if user_row is None:
                raise ChainNotFoundError("No such chain.")
            device_row = _new_device_row(user_db_id=_row_id(user_row.db_id), name=device_name)
            session.add(device_row)
            session.flush()
            joined = UserDevice(user=_to_user(user_row), device=_to_device(device_row))
            session.commit()

        logger.info("Device %s joined chain %s.", joined.device.public_id, joined.user.public_id)
        return joined

    def get_user_by_public_id(self, user_public_id: str, *, timeout: float | None = None) -> User:
        with self._session(timeout) as session:
            row = _find_user_row(session, user_public_id=user_public_id)
        if row is None:
            raise ChainNotFoundError("No such chain.")
        return _to_user(row)

    def get_user_by_sync_code(self, legacy_sync_code: str, *, timeout: float | None = None) -> User:
        with self._session(timeout) as session:
            row = _find_user_row(session, legacy_sync_code=legacy_sync_code)
        if row is None:
            raise ChainNotFoundError("No such chain.")
        return _to_user(row)

    def list_devices(self, user_public_id: str, *, timeout: float | None = None) -> list[Device]:
        public_id = _normalize_public_id(user_public_id)
        with self._session(timeout) as session:
            rows = session.exec(
                select(ChainDevice)
                .join(ChainUser, col(ChainDevice.user_db_id) == col(ChainUser.db_id))
                .where(col(ChainUser.user_id) == public_id)
                .order_by(col(ChainDevice.db_id)),
            ).all()
        return [_to_device(row) for row in rows]

    def get_device_by_legacy_id(
        self,
        user_db_id: int,
        legacy_device_id: int,
        *,
        timeout: float | None = None,
    ) -> Device:
        with self._session(timeout) as session:
            row = session.exec(
                select(ChainDevice).where(
                    col(ChainDevice.user_db_id) == user_db_id,
                    col(ChainDevice.legacy_device_id) == legacy_device_id,
                ),
            ).one_or_none()
        if row is None:
            raise DeviceNotFoundError("Device not registered.")
        return _to_device(row)

    def get_legacy_device(
        self,
        legacy_sync_code: str,
        legacy_device_id: int,
        *,
        timeout: float | None = None,
    ) -> UserDevice:
        with self._session(timeout) as session:
            found = session.exec(
                select(ChainDevice, ChainUser)
                .join(ChainUser, col(ChainDevice.user_db_id) == col(ChainUser.db_id))
                .where(
                    col(ChainUser.legacy_sync_code) == legacy_sync_code,
                    col(ChainDevice.legacy_device_id) == legacy_device_id,
                )
                .limit(1),
            ).first()
        if found is None:
            raise DeviceNotFoundError("Device not registered.")
        device_row, user_row = found
        return UserDevice(user=_to_user(user_row), device=_to_device(device_row))

    def remove_device(
        self,
        user_db_id: int,
        legacy_device_id: int,
        *,
        timeout: float | None = None,
    ) -> int:
        """Delete one device; ``0`` means it had already left the chain."""

        with self._session(timeout) as session:
            result = session.exec(
                delete(ChainDevice).where(
                    col(ChainDevice.user_db_id) == user_db_id,
                    col(ChainDevice.legacy_device_id) == legacy_device_id,
                ),
            )
            session.commit()
        removed = int(result.rowcount or 0)
        if removed:
            logger.info("Removed device %s from chain db_id=%s.", legacy_device_id, user_db_id)
        return removed

    def touch_last_seen(self, device: Device, *, timeout: float | None = None) -> int:
        """Move ``last_seen`` to now, never backwards. Returns rows touched."""

        now = utc_now()
        try:
            with self._session(timeout) as session:
                result = session.exec(
                    sa_update(ChainDevice)
                    .where(
                        col(ChainDevice.db_id) == device.db_id,
                        col(ChainDevice.last_seen) <= now,
                    )
                    .values(last_seen=now),
                )
                session.commit()
        except StorageError:
            logger.warning("Could not update last_seen of device %s.", device.public_id)
            raise
        return int(result.rowcount or 0)

    def devices_fingerprint(self, user_public_id: str, *, timeout: float | None = None) -> str:
        public_id = _normalize_public_id(user_public_id)
        with self._session(timeout) as session:
            user_row = _find_user_row(session, user_public_id=public_id)
            if user_row is None:
                raise ChainNotFoundError("No such chain.")
            device_ids = session.exec(
                select(ChainDevice.device_id).where(
                    col(ChainDevice.user_db_id) == user_row.db_id,
                ),
            ).all()
        return fingerprint_devices(device_ids)

    # Legacy migration reconciler.

    def ensure_migration(
        self,
        legacy_sync_code: str,
        legacy_device_id: int,
        device_name: str,
        *,
        timeout: float | None = None,
    ) -> int:
        """Fold a legacy (sync code, device id) pair into the store.

        Safe to replay: returns how many rows *this* call created (0, 1 or 2).
        User and device are inserted in separate transactions, so an interrupted
        call may leave a user without the device; the next replay completes it.
        """

        validate_legacy_sync_code(legacy_sync_code)
        validate_legacy_device_id(legacy_device_id)
        _require_device_name(device_name)

        created = 0
        try:
            user = self._insert_user(
                public_id=new_public_id(),
                legacy_sync_code=legacy_sync_code,
                timeout=timeout,
            )
            created += 1
            logger.info("Migrated legacy user %s.", user.public_id)
        except DuplicateKeyError as error:
            if error.key is not UniqueKey.USER_LEGACY_SYNC_CODE:
                raise
            with self._session(timeout) as session:
                row = _find_user_row(session, legacy_sync_code=legacy_sync_code)
            if row is None:
                raise InternalError(
                    "Legacy sync code collided on insert but no matching user exists.",
                ) from error
            user = _to_user(row)

        try:
            with self._session(timeout) as session:
                session.add(
                    _new_device_row(
                        user_db_id=user.db_id,
                        name=device_name,
                        legacy_device_id=legacy_device_id,
                    ),
                )
                session.commit()
            created += 1
            logger.info("Migrated legacy device %s for user %s.", legacy_device_id, user.public_id)
        except DuplicateKeyError as error:
            if error.key is not UniqueKey.DEVICE_LEGACY_DEVICE_ID:
                raise
            logger.debug("Legacy device %s already migrated.", legacy_device_id)

        return created

    # Read mark store.

    def add_read_mark(
        self,
        user_db_id: int,
        identifier: str,
        *,
        timeout: float | None = None,
    ) -> bool:
        """Insert a read mark; returns ``False`` when it was already present."""

        if not identifier:
            raise InvalidArgumentError("Read mark identifier must not be empty.")
        now = utc_now()
        statement = (
            self._insert(Article)
            .values(user_db_id=user_db_id, identifier=identifier, read_time=now, updated_at=now)
            .on_conflict_do_nothing(index_elements=["user_db_id", "identifier"])  # type: ignore[attr-defined]
        )
        with self._session(timeout) as session:
            result = session.exec(statement)  # type: ignore[call-overload]
            session.commit()
        return bool(result.rowcount)

    def list_read_marks(
        self,
        user_public_id: str,
        *,
        since: datetime | None = None,
        limit: int = DEFAULT_READ_MARKS_LIMIT,
        timeout: float | None = None,
    ) -> list[ReadMark]:
        """Read marks updated strictly after ``since``, most recently read first."""

        public_id = _normalize_public_id(user_public_id)
        statement = (
            select(Article)
            .join(ChainUser, col(Article.user_db_id) == col(ChainUser.db_id))
            .where(col(ChainUser.user_id) == public_id)
        )
        if since is not None:
            # SQLite drops tzinfo when binding.
            statement = statement.where(col(Article.updated_at) > to_utc_aware(since))
        statement = statement.order_by(col(Article.read_time).desc()).limit(max(1, limit))
        with self._session(timeout) as session:
            rows = session.exec(statement).all()
        return [_to_read_mark(row) for row in rows]

    # Feed blob store.

    def read_feed_blob(self, user_db_id: int, *, timeout: float | None = None) -> FeedBlob:
        with self._session(timeout) as session:
            row = _find_feed_row(session, user_db_id)
        if row is None:
            raise FeedNotFoundError("No feeds stored for this chain.")
        return _to_feed_blob(row)

    def get_feed_etag(self, user_db_id: int, *, timeout: float | None = None) -> str:
        with self._session(timeout) as session:
            etag = session.exec(
                select(LegacyFeed.etag).where(col(LegacyFeed.user_db_id) == user_db_id),
            ).one_or_none()
        if etag is None:
            raise FeedNotFoundError("No feeds stored for this chain.")
        return etag

    def read_if_none_match(
        self,
        user_db_id: int,
        etag: str | None,
        *,
        timeout: float | None = None,
    ) -> ConditionalRead:
        blob = self.read_feed_blob(user_db_id, timeout=timeout)
        if is_not_modified(etag, blob.etag):
            return ConditionalRead(status=ReadStatus.NOT_MODIFIED, etag=blob.etag)
        return ConditionalRead(status=ReadStatus.MODIFIED, etag=blob.etag, blob=blob)

    def write_feed_blob(
        self,
        user_db_id: int,
        content_hash: int,
        content: str,
        precondition: Precondition,
        *,
        timeout: float | None = None,
    ) -> str:
        """Write the chain's feed blob under ``precondition`` and return the new etag.

        Raises ``PreconditionFailedError`` when another writer got there first.
        """

        etag = new_feed_etag()
        values = {"content_hash": content_hash, "content": content, "etag": etag}
        strategy = write_strategy(precondition)

        if strategy is FeedWriteStrategy.UPSERT:
            statement = (
                self._insert(LegacyFeed)
                .values(user_db_id=user_db_id, **values)
                .on_conflict_do_update(index_elements=["user_db_id"], set_=values)  # type: ignore[attr-defined]
            )
            with self._session(timeout) as session:
                session.exec(statement)  # type: ignore[call-overload]
                session.commit()
        elif strategy is FeedWriteStrategy.COMPARE_AND_SWAP_OR_CREATE:
            if not self._update_feed(
                user_db_id,
                values,
                expected_etag=precondition.etag,
                timeout=timeout,
            ):
                self._create_feed(user_db_id, values, timeout=timeout)
        elif strategy is FeedWriteStrategy.UPDATE_EXISTING:
            if not self._update_feed(user_db_id, values, expected_etag=None, timeout=timeout):
                raise PreconditionFailedError("No feeds stored to match against.")
        else:
            self._create_feed(user_db_id, values, timeout=timeout)

        logger.debug("Feed blob for db_id=%s now at %s.", user_db_id, etag)
        return etag

    # Transfer capability set.

    def export_users(self, *, batch_size: int = DEFAULT_EXPORT_BATCH_SIZE) -> Iterator[User]:
        """Lazily walk every user in surrogate-key order."""

        return self._export_pages(
            lambda after: select(ChainUser)
            .where(col(ChainUser.db_id) > after)
            .order_by(col(ChainUser.db_id)),
            _to_user,
            batch_size=batch_size,
        )

    def export_devices_for_user(
        self,
        user: User,
        *,
        batch_size: int = DEFAULT_EXPORT_BATCH_SIZE,
    ) -> Iterator[Device]:
        return self._export_pages(
            lambda after: select(ChainDevice)
            .where(col(ChainDevice.user_db_id) == user.db_id, col(ChainDevice.db_id) > after)
            .order_by(col(ChainDevice.db_id)),
            _to_device,
            batch_size=batch_size,
        )

    def export_read_marks_for_user(
        self,
        user: User,
        *,
        batch_size: int = DEFAULT_EXPORT_BATCH_SIZE,
    ) -> Iterator[ReadMark]:
        return self._export_pages(
            lambda after: select(Article)
            .where(col(Article.user_db_id) == user.db_id, col(Article.db_id) > after)
            .order_by(col(Article.db_id)),
            _to_read_mark,
            batch_size=batch_size,
        )

    def export_feed_blob(self, user: User) -> FeedBlob | None:
        with self._session() as session:
            row = _find_feed_row(session, user.db_id)
        return _to_feed_blob(row) if row is not None else None

    def import_user(self, user: User) -> User:
        """Insert a user keeping its public id and legacy sync code."""

        validate_legacy_sync_code(user.legacy_sync_code)
        return self._insert_user(public_id=user.public_id, legacy_sync_code=user.legacy_sync_code)

    def import_device(self, user_public_id: str, device: Device) -> Device:
        with self._session() as session:
            owner_db_id = _require_user_db_id(session, user_public_id)
            row = ChainDevice(
                device_id=device.public_id,
                user_db_id=owner_db_id,
                device_name=device.name,
                legacy_device_id=device.legacy_device_id,
                last_seen=device.last_seen,
            )
            session.add(row)
            session.flush()
            imported = _to_device(row)
            session.commit()
        return imported

    def import_feed_blob(self, user_public_id: str, blob: FeedBlob) -> FeedBlob:
        with self._session() as session:
            owner_db_id = _require_user_db_id(session, user_public_id)
            row = LegacyFeed(
                user_db_id=owner_db_id,
                content_hash=blob.content_hash,
                content=blob.content,
                etag=blob.etag,
            )
            session.add(row)
            session.flush()
            imported = _to_feed_blob(row)
            session.commit()
        return imported

    def import_read_mark(self, user_public_id: str, mark: ReadMark) -> bool:
        with self._session() as session:
            owner_db_id = _require_user_db_id(session, user_public_id)
            result = session.exec(
                self._insert(Article)  # type: ignore[call-overload]
                .values(
                    user_db_id=owner_db_id,
                    identifier=mark.identifier,
                    read_time=mark.read_time,
                    updated_at=mark.updated_at,
                )
                .on_conflict_do_nothing(index_elements=["user_db_id", "identifier"]),
            )
            session.commit()
        return bool(result.rowcount)

    # Internals.

    @contextmanager
    def _session(self, timeout: float | None = None) -> Iterator[Session]:
        """Session whose driver failures surface as the shared error taxonomy.

        Leaving the block without ``commit`` rolls the transaction back, so an
        interrupted operation never persists half of its statements.
        """

        timeout_ms = _timeout_ms(timeout)
        try:
            with Session(self.engine) as session:
                if timeout_ms is None:
                    yield session
                else:
                    with self._deadline(session, timeout_ms):
                        yield session
        except IntegrityError as error:
            key = self._classify_integrity_error(error)
            if key is not None:
                raise DuplicateKeyError(key) from error
            raise StorageError(f"{self.backend_name}: integrity error: {error.orig}") from error
        except SQLAlchemyError as error:
            if timeout_ms is not None and self._is_deadline_error(error):
                raise DeadlineExceededError(
                    f"{self.backend_name}: operation exceeded {timeout_ms} ms",
                ) from error
            raise StorageError(f"{self.backend_name}: {error}") from error

    def _insert_user(
        self,
        *,
        public_id: str,
        legacy_sync_code: str,
        timeout: float | None = None,
    ) -> User:
        with self._session(timeout) as session:
            row = ChainUser(user_id=public_id, legacy_sync_code=legacy_sync_code)
            session.add(row)
            session.flush()
            user = _to_user(row)
            session.commit()
        return user

    def _update_feed(
        self,
        user_db_id: int,
        values: dict[str, Any],
        *,
        expected_etag: str | None,
        timeout: float | None,
    ) -> bool:
        statement = sa_update(LegacyFeed).where(col(LegacyFeed.user_db_id) == user_db_id)
        if expected_etag is not None:
            statement = statement.where(col(LegacyFeed.etag).in_(etag_variants(expected_etag)))
        with self._session(timeout) as session:
            result = session.exec(statement.values(**values))  # type: ignore[call-overload]
            session.commit()
        return bool(result.rowcount)

    def _create_feed(
        self,
        user_db_id: int,
        values: dict[str, Any],
        *,
        timeout: float | None,
    ) -> None:
        try:
            with self._session(timeout) as session:
                session.add(LegacyFeed(user_db_id=user_db_id, **values))
                session.commit()
        except DuplicateKeyError as error:
            if error.key is not UniqueKey.FEED_BLOB_USER:
                raise
            with self._session(timeout) as session:
                current = _find_feed_row(session, user_db_id)
            raise PreconditionFailedError(
                "Feeds were changed by another device.",
                current_etag=current.etag if current is not None else None,
            ) from error

    def _export_pages(
        self,
        statement_after: Callable[[int], Any],
        convert: Callable[[_RowT], _ItemT],
        *,
        batch_size: int,
    ) -> Iterator[_ItemT]:
        # Keyset pages with short sessions: the SQLite adapter has one connection.
        last_db_id = 0
        while True:
            with self._session() as session:
                rows = session.exec(statement_after(last_db_id).limit(max(1, batch_size))).all()
                batch = [(_row_id(row.db_id), convert(row)) for row in rows]
            if not batch:
                return
            for _, item in batch:
                yield item
            last_db_id = batch[-1][0]


def _timeout_ms(timeout: float | None) -> int | None:
    if timeout is None:
        return None
    if timeout <= 0:
        raise InvalidArgumentError(f"Timeout must be positive, got {timeout!r}.")
    return max(1, int(timeout * 1000))


def _require_device_name(device_name: str) -> None:
    if not device_name or not device_name.strip():
        raise InvalidArgumentError("Device name must not be empty.")


def _normalize_public_id(value: str) -> str:
    try:
        return str(UUID(value))
    except (TypeError, ValueError) as error:
        raise InvalidArgumentError(f"Not a valid public id: {value!r}") from error


def _find_user_row(
    session: Session,
    *,
    user_public_id: str | None = None,
    legacy_sync_code: str | None = None,
) -> ChainUser | None:
    statement = select(ChainUser)
    if user_public_id is not None:
        statement = statement.where(
            col(ChainUser.user_id) == _normalize_public_id(user_public_id),
        )
    elif legacy_sync_code is not None:
        statement = statement.where(col(ChainUser.legacy_sync_code) == legacy_sync_code)
    else:
        raise InvalidArgumentError("Either a user public id or a legacy sync code is required.")
    return session.exec(statement.limit(1)).one_or_none()


def _require_user_db_id(session: Session, user_public_id: str) -> int:
    row = _find_user_row(session, user_public_id=user_public_id)
    if row is None:
        raise ChainNotFoundError(f"No such chain: {user_public_id}")
    return _row_id(row.db_id)


def _find_feed_row(session: Session, user_db_id: int) -> LegacyFeed | None:
    return session.exec(
        select(LegacyFeed).where(col(LegacyFeed.user_db_id) == user_db_id),
    ).one_or_none()


def _new_device_row(
    *,
    user_db_id: int,
    name: str,
    legacy_device_id: int | None = None,
) -> ChainDevice:
    return ChainDevice(
        device_id=new_public_id(),
        user_db_id=user_db_id,
        device_name=name,
        legacy_device_id=(
            legacy_device_id if legacy_device_id is not None else generate_legacy_device_id()
        ),
        last_seen=utc_now(),
    )


def _row_id(value: int | None) -> int:
    if value is None:
        raise InternalError("Row has no surrogate key after flush.")
    return value


def _to_user(row: ChainUser) -> User:
    return User(
        db_id=_row_id(row.db_id),
        public_id=row.user_id,
        legacy_sync_code=row.legacy_sync_code,
    )


def _to_device(row: ChainDevice) -> Device:
    return Device(
        db_id=_row_id(row.db_id),
        public_id=row.device_id,
        owner_user_db_id=row.user_db_id,
        name=row.device_name,
        legacy_device_id=row.legacy_device_id,
        last_seen=to_utc_aware(row.last_seen),
    )


def _to_read_mark(row: Article) -> ReadMark:
    return ReadMark(
        owner_user_db_id=row.user_db_id,
        identifier=row.identifier,
        read_time=to_utc_aware(row.read_time),
        updated_at=to_utc_aware(row.updated_at),
    )


def _to_feed_blob(row: LegacyFeed) -> FeedBlob:
    return FeedBlob(
        owner_user_db_id=row.user_db_id,
        content_hash=row.content_hash,
        content=row.content,
        etag=row.etag,
    )
