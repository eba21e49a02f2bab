"""Initial schema: ranked_items + user_ranking_states.

Revision ID: 0001
Revises:
Create Date: 2026-10-16 10:00:00
"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

revision: str = "0001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

rating_category = sa.Enum("bad", "ok", "great", name="rating_category")

# Fixed-point rank position at the default scale of 18 fractional digits.
# SQLite stores the zero-padded decimal string the ORM type writes.
position_type = sa.Numeric(20, 18).with_variant(sa.String(20), "sqlite")


def upgrade() -> None:
    # ── ranked_items ──────────────────────────────────────────────────────
    op.create_table(
        "ranked_items",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("owner_id", sa.Uuid(), nullable=False),
        sa.Column("external_ref", sa.Integer(), nullable=False, comment="TMDB movie id"),
        sa.Column("category", rating_category, nullable=False),
        sa.Column("position", position_type, nullable=False),
        sa.Column("numeric_score", sa.Numeric(4, 2), nullable=False),
        sa.Column("cached_title", sa.String(500), nullable=True),
        sa.Column("cached_poster_path", sa.String(255), nullable=True),
        sa.Column("cached_release_date", sa.String(32), nullable=True),
        sa.Column("cached_overview", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("owner_id", "external_ref", name="uq_ranked_items_owner_ref"),
        sa.CheckConstraint(
            "numeric_score >= 0 AND numeric_score <= 10",
            name="chk_ranked_items_score_0_10",
        ),
    )
    op.create_index("ix_ranked_items_owner_id", "ranked_items", ["owner_id"])
    op.create_index(
        "idx_ranked_items_owner_position",
        "ranked_items",
        ["owner_id", "position", "created_at"],
    )

    # ── user_ranking_states ───────────────────────────────────────────────
    op.create_table(
        "user_ranking_states",
        sa.Column("owner_id", sa.Uuid(), primary_key=True),
        sa.Column(
            "initial_ranking_completed",
            sa.Boolean(),
            nullable=False,
            server_default=sa.false(),
        ),
        sa.Column("initial_ranking_completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )


def downgrade() -> None:
    op.drop_table("user_ranking_states")
    op.drop_index("idx_ranked_items_owner_position", table_name="ranked_items")
    op.drop_index("ix_ranked_items_owner_id", table_name="ranked_items")
    op.drop_table("ranked_items")
    rating_category.drop(op.get_bind(), checkfirst=True)
