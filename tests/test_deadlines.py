from __future__ import annotations

import sqlite3
from collections.abc import Callable, Iterator
from contextlib import contextmanager

import allure
import pytest

from sync_chain.errors import DeadlineExceededError, InvalidArgumentError, StorageError
from sync_chain.protocol import ANY
from sync_chain.storage.repository import SyncRepository
from sync_chain.storage.sqlite import SQLiteSyncRepository

pytestmark = [
    allure.epic("Sync Chain Storage"),
    allure.feature("Deadlines"),
]


@contextmanager
def _write_lock_held(repository: SQLiteSyncRepository) -> Iterator[None]:
    """Hold the database write lock from a second connection."""

    blocker = sqlite3.connect(repository.db_path, isolation_level=None)
    try:
        blocker.execute("BEGIN IMMEDIATE")
        yield
        blocker.execute("ROLLBACK")
    finally:
        blocker.close()


def test_operations_accept_a_timeout(repository: SyncRepository) -> None:
    registered = repository.register_chain("laptop", timeout=5)
    user = registered.user

    repository.join_chain("phone", user_public_id=user.public_id, timeout=5)
    etag = repository.write_feed_blob(user.db_id, 1, "feeds", ANY, timeout=5)

    assert repository.get_feed_etag(user.db_id, timeout=5) == etag
    assert len(repository.list_devices(user.public_id, timeout=5)) == 2
    assert repository.add_read_mark(user.db_id, "a", timeout=5) is True
    repository.ping(timeout=5)


@pytest.mark.parametrize("timeout", [0, -1.5])
def test_non_positive_timeout_is_rejected(repository: SyncRepository, timeout: float) -> None:
    with pytest.raises(InvalidArgumentError):
        repository.register_chain("laptop", timeout=timeout)


def test_timed_out_registration_leaves_nothing_behind(
    sqlite_repository: SQLiteSyncRepository,
    row_count: Callable[..., int],
) -> None:
    with _write_lock_held(sqlite_repository):
        with pytest.raises(DeadlineExceededError) as excinfo:
            sqlite_repository.register_chain("laptop", timeout=0.2)

    assert isinstance(excinfo.value, StorageError)
    assert row_count(sqlite_repository, "users") == 0
    assert row_count(sqlite_repository, "devices") == 0

    sqlite_repository.register_chain("laptop")
    assert row_count(sqlite_repository, "users") == 1


def test_timed_out_feed_write_keeps_the_previous_version(
    sqlite_repository: SQLiteSyncRepository,
) -> None:
    owner = sqlite_repository.register_chain("laptop").user.db_id
    etag = sqlite_repository.write_feed_blob(owner, 1, "v1", ANY)

    with _write_lock_held(sqlite_repository):
        with pytest.raises(DeadlineExceededError):
            sqlite_repository.write_feed_blob(owner, 2, "v2", ANY, timeout=0.2)

    blob = sqlite_repository.read_feed_blob(owner)
    assert (blob.content, blob.etag) == ("v1", etag)


def test_lock_wait_without_timeout_is_a_plain_storage_error(
    sqlite_repository: SQLiteSyncRepository,
) -> None:
    short_wait = SQLiteSyncRepository(sqlite_repository.db_path, busy_timeout_ms=100)
    try:
        short_wait.ping()
        with _write_lock_held(sqlite_repository):
            with pytest.raises(StorageError) as excinfo:
                short_wait.register_chain("laptop")
        assert not isinstance(excinfo.value, DeadlineExceededError)
    finally:
        short_wait.close()
