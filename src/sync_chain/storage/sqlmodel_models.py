"""SQLModel ORM tables shared by the SQLite and PostgreSQL backends."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    BigInteger,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlmodel import Field, SQLModel

# SQLite only autoincrements INTEGER PRIMARY KEY columns.
SURROGATE_KEY = BigInteger().with_variant(Integer(), "sqlite")


def _surrogate_key() -> Column:
    return Column("db_id", SURROGATE_KEY, primary_key=True, autoincrement=True)


def _owner_column() -> Column:
    return Column(
        "user_db_id",
        SURROGATE_KEY,
        ForeignKey("users.db_id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )


class ChainUser(SQLModel, table=True):
    __tablename__ = "users"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint("user_id", name="uq_users_user_id"),
        UniqueConstraint("legacy_sync_code", name="uq_users_legacy_sync_code"),
    )

    db_id: int | None = Field(default=None, sa_column=_surrogate_key())
    user_id: str = Field(sa_column=Column(String(36), nullable=False))
    legacy_sync_code: str = Field(sa_column=Column(String(64), nullable=False))


class ChainDevice(SQLModel, table=True):
    __tablename__ = "devices"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint("device_id", name="uq_devices_device_id"),
        UniqueConstraint(
            "user_db_id",
            "legacy_device_id",
            name="uq_devices_user_legacy_device",
        ),
    )

    db_id: int | None = Field(default=None, sa_column=_surrogate_key())
    device_id: str = Field(sa_column=Column(String(36), nullable=False))
    user_db_id: int = Field(sa_column=_owner_column())
    device_name: str = Field(sa_column=Column(Text, nullable=False))
    legacy_device_id: int = Field(sa_column=Column(BigInteger, nullable=False))
    last_seen: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class Article(SQLModel, table=True):
    __tablename__ = "articles"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint("user_db_id", "identifier", name="uq_articles_user_identifier"),
        Index("idx_articles_updated_at", "updated_at"),
    )

    db_id: int | None = Field(default=None, sa_column=_surrogate_key())
    user_db_id: int = Field(sa_column=_owner_column())
    identifier: str = Field(sa_column=Column(Text, nullable=False))
    read_time: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class LegacyFeed(SQLModel, table=True):
    __tablename__ = "legacy_feeds"  # type: ignore[bad-override]
    __table_args__ = (UniqueConstraint("user_db_id", name="uq_legacy_feeds_user"),)

    db_id: int | None = Field(default=None, sa_column=_surrogate_key())
    user_db_id: int = Field(
        sa_column=Column(
            "user_db_id",
            SURROGATE_KEY,
            ForeignKey("users.db_id", ondelete="CASCADE"),
            nullable=False,
        ),
    )
    content_hash: int = Field(sa_column=Column(BigInteger, nullable=False))
    content: str = Field(sa_column=Column(Text, nullable=False))
    etag: str = Field(sa_column=Column(String(128), nullable=False))
