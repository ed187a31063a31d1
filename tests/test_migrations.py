from __future__ import annotations

from pathlib import Path

import allure
from sqlalchemy import inspect, text

from sync_chain.storage.repository import SyncRepository
from sync_chain.storage.sqlite import SQLiteSyncRepository

pytestmark = [
    allure.epic("Sync Chain Storage"),
    allure.feature("Schema Migrations"),
]

HEAD_REVISION = "20260302_0003"


def test_alembic_schema_is_initialized_to_head(repository: SyncRepository) -> None:
    with repository.engine.connect() as connection:
        version = connection.execute(
            text("SELECT version_num FROM alembic_version LIMIT 1"),
        ).scalar_one()
        tables = set(inspect(connection).get_table_names())

    assert version == HEAD_REVISION
    assert {"users", "devices", "articles", "legacy_feeds"} <= tables


def test_unique_constraints_are_named(sqlite_repository: SQLiteSyncRepository) -> None:
    with sqlite_repository.engine.connect() as connection:
        inspector = inspect(connection)
        names = {
            table: {constraint["name"] for constraint in inspector.get_unique_constraints(table)}
            for table in ("users", "devices", "articles", "legacy_feeds")
        }
        article_indexes = {index["name"] for index in inspector.get_indexes("articles")}

    assert names["users"] == {"uq_users_user_id", "uq_users_legacy_sync_code"}
    assert names["devices"] == {"uq_devices_device_id", "uq_devices_user_legacy_device"}
    assert names["articles"] == {"uq_articles_user_identifier"}
    assert names["legacy_feeds"] == {"uq_legacy_feeds_user"}
    assert "idx_articles_updated_at" in article_indexes


def test_init_schema_is_idempotent(tmp_path: Path) -> None:
    repository = SQLiteSyncRepository(tmp_path / "twice.db")
    try:
        repository.init_schema()
        registered = repository.register_chain("laptop")
        repository.init_schema()

        assert repository.get_user_by_public_id(registered.user.public_id) == registered.user
    finally:
        repository.close()
