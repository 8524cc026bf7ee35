"""initial ledger

Revision ID: 202601050900
Revises:
Create Date: 2026-01-05 09:00:00.000000

"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


revision = "202601050900"
down_revision = None
branch_labels = None
depends_on = None

ACCOUNT_TYPES = ("checking", "savings", "credit_card", "cash", "investment", "other")


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "accounts",
        sa.Column("id", sa.String(length=32), primary_key=True),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("type", sa.Enum(*ACCOUNT_TYPES, name="accounttype"), nullable=False),
        sa.Column(
            "initial_balance_cents", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column(
            "current_balance_cents", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column("color", sa.String(length=7), nullable=False, server_default="#3b82f6"),
        sa.Column("is_archived", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("description", sa.Text(), nullable=True),
        *_timestamps(),
    )

    op.create_table(
        "categories",
        sa.Column("id", sa.String(length=32), primary_key=True),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column(
            "type", sa.Enum("income", "expense", name="categorytype"), nullable=False
        ),
        sa.Column("color", sa.String(length=7), nullable=False, server_default="#6b7280"),
        *_timestamps(),
    )
    op.create_index("ix_categories_type", "categories", ["type"])

    op.create_table(
        "transactions",
        sa.Column("id", sa.String(length=32), primary_key=True),
        sa.Column(
            "type",
            sa.Enum("income", "expense", "transfer", name="transactiontype"),
            nullable=False,
        ),
        sa.Column(
            "account_id",
            sa.String(length=32),
            sa.ForeignKey("accounts.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column(
            "destination_account_id",
            sa.String(length=32),
            sa.ForeignKey("accounts.id", ondelete="RESTRICT"),
            nullable=True,
        ),
        sa.Column(
            "category_id",
            sa.String(length=32),
            sa.ForeignKey("categories.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("description", sa.String(length=200), nullable=False),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("occurred_at", sa.DateTime(), nullable=False),
        sa.Column("tags", sa.JSON(), nullable=False, server_default="[]"),
        sa.Column("is_pending", sa.Boolean(), nullable=False, server_default=sa.false()),
        *_timestamps(),
        sa.CheckConstraint("amount_cents > 0", name="ck_transactions_amount_positive"),
    )
    op.create_index("ix_transactions_occurred_at", "transactions", ["occurred_at"])
    op.create_index("ix_transactions_account_id", "transactions", ["account_id"])
    op.create_index(
        "ix_transactions_destination_account_id",
        "transactions",
        ["destination_account_id"],
    )
    op.create_index("ix_transactions_category_id", "transactions", ["category_id"])
    op.create_index("ix_transactions_type", "transactions", ["type"])
    op.create_index(
        "ix_transactions_account_type_date",
        "transactions",
        ["account_id", "type", "occurred_at"],
    )

    op.create_table(
        "budgets",
        sa.Column("id", sa.String(length=32), primary_key=True),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column(
            "category_id",
            sa.String(length=32),
            sa.ForeignKey("categories.id", ondelete="CASCADE"),
            nullable=True,
        ),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column(
            "period_type",
            sa.Enum("monthly", "quarterly", "yearly", "custom", name="budgetperiodtype"),
            nullable=False,
        ),
        sa.Column("period_start", sa.Date(), nullable=False),
        sa.Column("period_end", sa.Date(), nullable=False),
        sa.Column("alert_percentage", sa.Integer(), nullable=False, server_default="80"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
        sa.CheckConstraint("amount_cents >= 0", name="ck_budget_amount_positive"),
        sa.CheckConstraint("period_start <= period_end", name="ck_budget_period_order"),
    )
    op.create_index("ix_budgets_period", "budgets", ["period_start", "period_end"])
    op.create_index(
        "ix_budgets_category_period",
        "budgets",
        ["category_id", "period_start", "period_end"],
    )


def downgrade() -> None:
    op.drop_index("ix_budgets_category_period", table_name="budgets")
    op.drop_index("ix_budgets_period", table_name="budgets")
    op.drop_table("budgets")
    for name in (
        "ix_transactions_account_type_date",
        "ix_transactions_type",
        "ix_transactions_category_id",
        "ix_transactions_destination_account_id",
        "ix_transactions_account_id",
        "ix_transactions_occurred_at",
    ):
        op.drop_index(name, table_name="transactions")
    op.drop_table("transactions")
    op.drop_index("ix_categories_type", table_name="categories")
    op.drop_table("categories")
    op.drop_table("accounts")
