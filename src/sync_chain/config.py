"""Runtime configuration for the sync-chain storage core."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field

DEFAULT_DB_URL = "sqlite:///.sync_chain.db"
_SUPPORTED_SCHEMES = ("sqlite", "postgres", "postgresql")


@dataclass(slots=True)
class StorageSettings:
    """Database connection settings."""

    db_url: str = DEFAULT_DB_URL
    statement_timeout_ms: int = 5_000
    pool_size: int = 5


@dataclass(slots=True)
class TransferSettings:
    """Cross-backend transfer settings."""

    source_db_url: str | None = None
    transfer_read_marks: bool = False
    progress_every: int = 100


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    storage: StorageSettings = field(default_factory=StorageSettings)
    transfer: TransferSettings = field(default_factory=TransferSettings)
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, db_url: str | None = None) -> Settings:
        """Load settings from environment with defaults for local development."""

        return cls(
            storage=StorageSettings(
                db_url=db_url or os.getenv("SYNC_CHAIN_DB_URL", DEFAULT_DB_URL),
                statement_timeout_ms=int(os.getenv("SYNC_CHAIN_STATEMENT_TIMEOUT_MS", "5000")),
                pool_size=int(os.getenv("SYNC_CHAIN_POOL_SIZE", "5")),
            ),
            transfer=TransferSettings(
                source_db_url=os.getenv("SYNC_CHAIN_SOURCE_DB_URL") or None,
                transfer_read_marks=_env_bool("SYNC_CHAIN_TRANSFER_READ_MARKS", default=False),
                progress_every=int(os.getenv("SYNC_CHAIN_TRANSFER_PROGRESS_EVERY", "100")),
            ),
            log_level=os.getenv("SYNC_CHAIN_LOG_LEVEL", "INFO").strip().upper(),
        )

    def validate(self) -> None:
        """Raise configuration error for values the storage layer cannot use."""

        _validate_db_url(self.storage.db_url, name="SYNC_CHAIN_DB_URL")
        if self.transfer.source_db_url is not None:
            _validate_db_url(self.transfer.source_db_url, name="SYNC_CHAIN_SOURCE_DB_URL")
        if self.storage.statement_timeout_ms <= 0:
            raise ValueError("SYNC_CHAIN_STATEMENT_TIMEOUT_MS must be > 0.")
        if self.storage.pool_size <= 0:
            raise ValueError("SYNC_CHAIN_POOL_SIZE must be > 0.")
        if self.transfer.progress_every <= 0:
            raise ValueError("SYNC_CHAIN_TRANSFER_PROGRESS_EVERY must be > 0.")
        if not isinstance(logging.getLevelName(self.log_level), int):
            raise ValueError(f"Invalid SYNC_CHAIN_LOG_LEVEL: {self.log_level!r}")


def _validate_db_url(value: str, *, name: str) -> None:
    scheme = value.split("://", 1)[0].split("+", 1)[0] if "://" in value else ""
    if scheme not in _SUPPORTED_SCHEMES:
        raise ValueError(
            f"Invalid {name}: {value!r}. Expected a sqlite:/// or postgresql:// URL.",
        )


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
