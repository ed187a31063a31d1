"""Controllers for operator CLI commands."""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass

from sync_chain.config import Settings
from sync_chain.storage.factory import open_repository
from sync_chain.storage.repository import SyncRepository
from sync_chain.storage.transfer import transfer_store

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class MigrateCommand:
    """CLI inputs for schema migration command."""

    db_url: str | None


@dataclass(slots=True)
class PingCommand:
    """CLI inputs for readiness check command."""

    db_url: str | None


@dataclass(slots=True)
class TransferCommand:
    """CLI inputs for cross-backend transfer command."""

    source_db_url: str | None
    destination_db_url: str | None
    transfer_read_marks: bool | None


class StoreCliController:
    """Coordinates storage maintenance commands."""

    def migrate(self, command: MigrateCommand) -> list[str]:
        settings = _settings(command.db_url)
        with _repository(settings.storage.db_url, settings) as repository:
            repository.init_schema()
        return [f"Schema is up to date: {_redact(settings.storage.db_url)}"]

    def ping(self, command: PingCommand) -> list[str]:
        settings = _settings(command.db_url)
        with _repository(settings.storage.db_url, settings) as repository:
            repository.ping()
        return [f"Ready: {_redact(settings.storage.db_url)}"]

    def transfer(self, command: TransferCommand) -> list[str]:
        settings = _settings(command.destination_db_url)
        source_db_url = command.source_db_url or settings.transfer.source_db_url
        if not source_db_url:
            raise ValueError(
                "A source database is required. "
                "Set SYNC_CHAIN_SOURCE_DB_URL or pass --source-db-url.",
            )
        if source_db_url == settings.storage.db_url:
            raise ValueError("Source and destination databases must differ.")
        transfer_read_marks = (
            command.transfer_read_marks
            if command.transfer_read_marks is not None
            else settings.transfer.transfer_read_marks
        )

        with (
            _repository(source_db_url, settings) as source,
            _repository(settings.storage.db_url, settings) as destination,
        ):
            logger.info("Migrating source schema.")
            source.init_schema()
            logger.info("Migrating destination schema.")
            destination.init_schema()
            report = transfer_store(
                source,
                destination,
                transfer_read_marks=transfer_read_marks,
                progress_every=settings.transfer.progress_every,
            )

        lines = [
            "Transfer completed: "
            f"users={report.users_count} "
            f"devices={report.devices_count} "
            f"feed_blobs={report.feed_blobs_count} "
            f"read_marks={report.read_marks_count if report.read_marks_transferred else 'skipped'}",
        ]
        if report.resumed_users:
            lines.append(f"Resumed users already present: {len(report.resumed_users)}")
        if report.skipped_users:
            lines.append(f"Skipped users clashing with other users: {len(report.skipped_users)}")
            lines.extend(f"  user={public_id}" for public_id in report.skipped_users)
        return lines


def _settings(db_url: str | None) -> Settings:
    settings = Settings.from_env(db_url=db_url)
    settings.validate()
    return settings


@contextmanager
def _repository(db_url: str, settings: Settings) -> Iterator[SyncRepository]:
    repository = open_repository(db_url, settings.storage)
    try:
        yield repository
    finally:
        repository.close()


def _redact(db_url: str) -> str:
    scheme, sep, rest = db_url.partition("://")
    if "@" not in rest:
        return db_url
    credentials, _, host = rest.rpartition("@")
    user = credentials.split(":", 1)[0]
    return f"{scheme}{sep}{user}:***@{host}"
