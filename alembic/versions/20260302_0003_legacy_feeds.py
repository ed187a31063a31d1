"""Single feed blob per chain, versioned by etag."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20260302_0003"
down_revision = "20260301_0002"
branch_labels = None
depends_on = None

SURROGATE_KEY = sa.BigInteger().with_variant(sa.Integer(), "sqlite")


def upgrade() -> None:
    op.create_table(
        "legacy_feeds",
        sa.Column("db_id", SURROGATE_KEY, autoincrement=True, nullable=False),
        sa.Column("user_db_id", SURROGATE_KEY, nullable=False),
        sa.Column("content_hash", sa.BigInteger(), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("etag", sa.String(length=128), nullable=False),
        sa.ForeignKeyConstraint(["user_db_id"], ["users.db_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("db_id"),
        sa.UniqueConstraint("user_db_id", name="uq_legacy_feeds_user"),
    )


def downgrade() -> None:
    op.drop_table("legacy_feeds")
