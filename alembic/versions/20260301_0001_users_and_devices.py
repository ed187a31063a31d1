"""Chain users and their devices."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20260301_0001"
down_revision = None
branch_labels = None
depends_on = None

SURROGATE_KEY = sa.BigInteger().with_variant(sa.Integer(), "sqlite")


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("db_id", SURROGATE_KEY, autoincrement=True, nullable=False),
        sa.Column("user_id", sa.String(length=36), nullable=False),
        sa.Column("legacy_sync_code", sa.String(length=64), nullable=False),
        sa.PrimaryKeyConstraint("db_id"),
        sa.UniqueConstraint("user_id", name="uq_users_user_id"),
        sa.UniqueConstraint("legacy_sync_code", name="uq_users_legacy_sync_code"),
    )

    op.create_table(
        "devices",
        sa.Column("db_id", SURROGATE_KEY, autoincrement=True, nullable=False),
        sa.Column("device_id", sa.String(length=36), nullable=False),
        sa.Column("user_db_id", SURROGATE_KEY, nullable=False),
        sa.Column("device_name", sa.Text(), nullable=False),
        sa.Column("legacy_device_id", sa.BigInteger(), nullable=False),
        sa.Column("last_seen", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["user_db_id"], ["users.db_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("db_id"),
        sa.UniqueConstraint("device_id", name="uq_devices_device_id"),
        sa.UniqueConstraint(
            "user_db_id",
            "legacy_device_id",
            name="uq_devices_user_legacy_device",
        ),
    )
    op.create_index("ix_devices_user_db_id", "devices", ["user_db_id"])


def downgrade() -> None:
    op.drop_index("ix_devices_user_db_id", table_name="devices")
    op.drop_table("devices")
    op.drop_table("users")
