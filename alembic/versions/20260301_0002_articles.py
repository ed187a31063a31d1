"""Read marks (articles) per chain."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20260301_0002"
down_revision = "20260301_0001"
branch_labels = None
depends_on = None

SURROGATE_KEY = sa.BigInteger().with_variant(sa.Integer(), "sqlite")


def upgrade() -> None:
    op.create_table(
        "articles",
        sa.Column("db_id", SURROGATE_KEY, autoincrement=True, nullable=False),
        sa.Column("user_db_id", SURROGATE_KEY, nullable=False),
        sa.Column("identifier", sa.Text(), nullable=False),
        sa.Column("read_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["user_db_id"], ["users.db_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("db_id"),
        sa.UniqueConstraint("user_db_id", "identifier", name="uq_articles_user_identifier"),
    )
    op.create_index("ix_articles_user_db_id", "articles", ["user_db_id"])
    op.create_index("idx_articles_updated_at", "articles", ["updated_at"])


def downgrade() -> None:
    op.drop_index("idx_articles_updated_at", table_name="articles")
    op.drop_index("ix_articles_user_db_id", table_name="articles")
    op.drop_table("articles")
