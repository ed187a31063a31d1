"""Shared test fixtures."""

from __future__ import annotations

import os
from collections.abc import Callable, Iterator
from pathlib import Path

import pytest
from sqlalchemy import text

from sync_chain.storage.postgres import PostgresSyncRepository
from sync_chain.storage.repository import SyncRepository
from sync_chain.storage.sqlite import SQLiteSyncRepository

POSTGRES_URL_ENV = "SYNC_CHAIN_TEST_POSTGRES_URL"

_BACKENDS = [
    "sqlite",
    pytest.param("postgres", marks=pytest.mark.postgres),
]


def open_sqlite_repository(path: Path) -> SQLiteSyncRepository:
    repository = SQLiteSyncRepository(path)
    repository.init_schema()
    return repository


def open_postgres_repository() -> PostgresSyncRepository:
    db_url = os.getenv(POSTGRES_URL_ENV)
    if not db_url:
        pytest.skip(f"{POSTGRES_URL_ENV} is not set")
    repository = PostgresSyncRepository(db_url)
    repository.init_schema()
    with repository.engine.begin() as connection:
        connection.execute(
            text("TRUNCATE legacy_feeds, articles, devices, users RESTART IDENTITY CASCADE"),
        )
    return repository


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line("markers", f"postgres: needs {POSTGRES_URL_ENV}")


@pytest.fixture(params=_BACKENDS)
def repository(request: pytest.FixtureRequest, tmp_path: Path) -> Iterator[SyncRepository]:
    """Migrated, empty store on every available backend."""

    if request.param == "sqlite":
        repo: SyncRepository = open_sqlite_repository(tmp_path / "sync.db")
    else:
        repo = open_postgres_repository()
    yield repo
    repo.close()


@pytest.fixture()
def sqlite_repository(tmp_path: Path) -> Iterator[SQLiteSyncRepository]:
    repo = open_sqlite_repository(tmp_path / "sqlite-only.db")
    yield repo
    repo.close()


@pytest.fixture()
def row_count() -> Callable[..., int]:
    """Count rows with a raw query; the connection is released before returning."""

    def _count(repo: SyncRepository, table: str) -> int:
        with repo.engine.connect() as connection:
            return int(connection.execute(text(f"SELECT COUNT(*) FROM {table}")).scalar_one())

    return _count
