"""CLI entrypoint for sync-chain storage maintenance."""

import logging
from collections.abc import Callable

import rich_click as click

from sync_chain import __version__
from sync_chain.config import Settings
from sync_chain.controllers import (
    MigrateCommand,
    PingCommand,
    StoreCliController,
    TransferCommand,
)
from sync_chain.errors import SyncStoreError

click.rich_click.USE_MARKDOWN = True
STORE_CONTROLLER = StoreCliController()


@click.group()
@click.version_option(version=__version__, prog_name="sync-chain")
def sync_chain() -> None:
    """Sync chain storage CLI."""

    logging.basicConfig(
        level=Settings.from_env().log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@sync_chain.group()
def db() -> None:
    """Database maintenance commands."""


@db.command("migrate")
@click.option("--db-url", default=None, help="Database URL (sqlite:/// or postgresql://).")
def db_migrate(db_url: str | None) -> None:
    """Apply schema migrations up to head."""

    _run(lambda: STORE_CONTROLLER.migrate(MigrateCommand(db_url=db_url)))


@db.command("ping")
@click.option("--db-url", default=None, help="Database URL (sqlite:/// or postgresql://).")
def db_ping(db_url: str | None) -> None:
    """Check that the database answers queries."""

    _run(lambda: STORE_CONTROLLER.ping(PingCommand(db_url=db_url)))


@db.command("transfer")
@click.option(
    "--source-db-url",
    default=None,
    help="Database to copy from. Defaults to SYNC_CHAIN_SOURCE_DB_URL.",
)
@click.option(
    "--db-url",
    "destination_db_url",
    default=None,
    help="Database to copy into. Defaults to SYNC_CHAIN_DB_URL.",
)
@click.option(
    "--read-marks/--no-read-marks",
    "transfer_read_marks",
    default=None,
    help="Also copy read marks. Defaults to SYNC_CHAIN_TRANSFER_READ_MARKS.",
)
def db_transfer(
    source_db_url: str | None,
    destination_db_url: str | None,
    transfer_read_marks: bool | None,
) -> None:
    """Copy users, devices and feed blobs from one backend into another.

    Both schemas are migrated first. Re-running resumes an interrupted transfer.
    """

    _run(
        lambda: STORE_CONTROLLER.transfer(
            TransferCommand(
                source_db_url=source_db_url,
                destination_db_url=destination_db_url,
                transfer_read_marks=transfer_read_marks,
            ),
        ),
    )


def _run(action: Callable[[], list[str]]) -> None:
    try:
        lines = action()
    except (SyncStoreError, ValueError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    sync_chain()
