"""Utilities to run Alembic migrations programmatically."""

from __future__ import annotations

import logging
from pathlib import Path

from alembic import command
from alembic.config import Config

from sync_chain.storage.common import is_postgres_url, normalize_postgres_url

logger = logging.getLogger(__name__)


def upgrade_head(db_url: str) -> None:
    """Apply Alembic migrations up to head for the given database URL."""

    root_dir = Path(__file__).resolve().parents[3]
    alembic_ini = root_dir / "alembic.ini"
    alembic_dir = root_dir / "alembic"

    if is_postgres_url(db_url):
        db_url = normalize_postgres_url(db_url)

    config = Config(str(alembic_ini))
    config.set_main_option("script_location", str(alembic_dir))
    # ConfigParser interpolation would choke on '%' in URL-encoded passwords.
    config.set_main_option("sqlalchemy.url", db_url.replace("%", "%%"))
    logger.info("Running schema migrations up to head.")
    command.upgrade(config, "head")
