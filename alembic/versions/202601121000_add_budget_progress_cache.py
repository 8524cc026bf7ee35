"""add budget progress cache

Revision ID: 202601121000
Revises: 202601050900
Create Date: 2026-01-12 10:00:00.000000

"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


revision = "202601121000"
down_revision = "202601050900"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "budget_progress_cache",
        sa.Column(
            "budget_id",
            sa.String(length=32),
            sa.ForeignKey("budgets.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("period_start", sa.Date(), nullable=False),
        sa.Column("period_end", sa.Date(), nullable=False),
        sa.Column("spent_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("budget_id", "period_start", "period_end"),
    )

    # Rows are derived data; start empty and let reads fill them.


def downgrade() -> None:
    op.drop_table("budget_progress_cache")
