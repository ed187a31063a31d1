from __future__ import annotations

from pathlib import Path

import allure
import pytest
from click.testing import CliRunner

from sync_chain import __version__
from sync_chain.main import sync_chain
from sync_chain.protocol import ANY
from sync_chain.storage.sqlite import SQLiteSyncRepository

pytestmark = [
    allure.epic("Sync Chain Storage"),
    allure.feature("Operator CLI"),
]


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ("SYNC_CHAIN_DB_URL", "SYNC_CHAIN_SOURCE_DB_URL", "SYNC_CHAIN_TRANSFER_READ_MARKS"):
        monkeypatch.delenv(name, raising=False)


def test_version_option() -> None:
    runner = CliRunner()
    result = runner.invoke(sync_chain, ["--version"])
    assert result.exit_code == 0
    assert __version__ in result.output


def test_migrate_and_ping(tmp_path: Path) -> None:
    db_url = f"sqlite:///{tmp_path / 'cli.db'}"
    runner = CliRunner()

    migrated = runner.invoke(sync_chain, ["db", "migrate", "--db-url", db_url])
    assert migrated.exit_code == 0, migrated.output
    assert "Schema is up to date" in migrated.output

    pinged = runner.invoke(sync_chain, ["db", "ping", "--db-url", db_url])
    assert pinged.exit_code == 0, pinged.output
    assert "Ready" in pinged.output


def test_migrate_reads_database_from_environment(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    db_path = tmp_path / "env.db"
    monkeypatch.setenv("SYNC_CHAIN_DB_URL", f"sqlite:///{db_path}")

    result = CliRunner().invoke(sync_chain, ["db", "migrate"])

    assert result.exit_code == 0, result.output
    assert db_path.exists()


def test_transfer_between_sqlite_files(tmp_path: Path) -> None:
    source_path = tmp_path / "source.db"
    source = SQLiteSyncRepository(source_path)
    source.init_schema()
    registered = source.register_chain("laptop")
    source.write_feed_blob(registered.user.db_id, 1, "feeds", ANY)
    source.add_read_mark(registered.user.db_id, "a")
    source.close()

    destination_url = f"sqlite:///{tmp_path / 'destination.db'}"
    runner = CliRunner()
    result = runner.invoke(
        sync_chain,
        [
            "db",
            "transfer",
            "--source-db-url",
            f"sqlite:///{source_path}",
            "--db-url",
            destination_url,
            "--read-marks",
        ],
    )

    assert result.exit_code == 0, result.output
    assert "Transfer completed: users=1 devices=1 feed_blobs=1 read_marks=1" in result.output

    rerun = runner.invoke(
        sync_chain,
        ["db", "transfer", "--source-db-url", f"sqlite:///{source_path}", "--db-url", destination_url],
    )
    assert rerun.exit_code == 0, rerun.output
    assert "read_marks=skipped" in rerun.output
    assert "Transfer completed: users=0 devices=0 feed_blobs=0" in rerun.output
    assert "Resumed users already present: 1" in rerun.output


def test_transfer_requires_a_distinct_source(tmp_path: Path) -> None:
    db_url = f"sqlite:///{tmp_path / 'same.db'}"
    runner = CliRunner()

    missing = runner.invoke(sync_chain, ["db", "transfer", "--db-url", db_url])
    assert missing.exit_code != 0
    assert "source database is required" in missing.output

    same = runner.invoke(
        sync_chain,
        ["db", "transfer", "--source-db-url", db_url, "--db-url", db_url],
    )
    assert same.exit_code != 0
    assert "must differ" in same.output


def test_invalid_database_url_is_reported() -> None:
    result = CliRunner().invoke(sync_chain, ["db", "migrate", "--db-url", "mysql://localhost/db"])

    assert result.exit_code != 0
    assert "Invalid SYNC_CHAIN_DB_URL" in result.output
