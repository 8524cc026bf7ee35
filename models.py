import uuid
from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


def new_id() -> str:
    return uuid.uuid4().hex


class AccountType(str, Enum):
    checking = "checking"
    savings = "savings"
    credit_card = "credit_card"
    cash = "cash"
    investment = "investment"
    other = "other"


class CategoryType(str, Enum):
    income = "income"
    expense = "expense"


class TransactionType(str, Enum):
    income = "income"
    expense = "expense"
    transfer = "transfer"


class BudgetPeriodType(str, Enum):
    monthly = "monthly"
    quarterly = "quarterly"
    yearly = "yearly"
    custom = "custom"


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class Account(Base, TimestampMixin):
    __tablename__ = "accounts"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    type: Mapped[AccountType] = mapped_column(SAEnum(AccountType), nullable=False)
    initial_balance_cents: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    # Written only by balances.AccountBalanceMaintainer.
    current_balance_cents: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    color: Mapped[str] = mapped_column(String(7), nullable=False, default="#3b82f6")
    is_archived: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)


class Category(Base, TimestampMixin):
    __tablename__ = "categories"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    type: Mapped[CategoryType] = mapped_column(SAEnum(CategoryType), nullable=False)
    color: Mapped[str] = mapped_column(String(7), nullable=False, default="#6b7280")

    __table_args__ = (Index("ix_categories_type", "type"),)


class Transaction(Base, TimestampMixin):
    __tablename__ = "transactions"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    type: Mapped[TransactionType] = mapped_column(
        SAEnum(TransactionType), nullable=False
    )
    account_id: Mapped[str] = mapped_column(
        ForeignKey("accounts.id", ondelete="RESTRICT"), nullable=False
    )
    destination_account_id: Mapped[Optional[str]] = mapped_column(
        ForeignKey("accounts.id", ondelete="RESTRICT")
    )
    category_id: Mapped[Optional[str]] = mapped_column(
        ForeignKey("categories.id", ondelete="SET NULL")
    )
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    description: Mapped[str] = mapped_column(String(200), nullable=False)
    notes: Mapped[Optional[str]] = mapped_column(Text)
    occurred_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    tags: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    is_pending: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    account: Mapped["Account"] = relationship("Account", foreign_keys=[account_id])
    destination_account: Mapped[Optional["Account"]] = relationship(
        "Account", foreign_keys=[destination_account_id]
    )
    category: Mapped[Optional["Category"]] = relationship("Category")

    __table_args__ = (
        CheckConstraint("amount_cents > 0", name="ck_transactions_amount_positive"),
        Index("ix_transactions_occurred_at", "occurred_at"),
        Index("ix_transactions_account_id", "account_id"),
        Index("ix_transactions_destination_account_id", "destination_account_id"),
        Index("ix_transactions_category_id", "category_id"),
        Index("ix_transactions_type", "type"),
        Index(
            "ix_transactions_account_type_date", "account_id", "type", "occurred_at"
        ),
    )


@dataclass(frozen=True)
class TransactionSnapshot:
    """Immutable copy of a transaction's ledger-relevant fields.

    Journal operations capture one before mutating a row so the old balance
    effect and the old budget coverage can still be computed afterwards.
    """

    id: str
    type: TransactionType
    account_id: str
    destination_account_id: Optional[str]
    category_id: Optional[str]
    amount_cents: int
    occurred_at: datetime
    is_pending: bool

    @classmethod
    def of(cls, txn: Transaction) -> "TransactionSnapshot":
        return cls(
            id=txn.id,
            type=TransactionType(txn.type),
            account_id=txn.account_id,
            destination_account_id=txn.destination_account_id,
            category_id=txn.category_id,
            amount_cents=int(txn.amount_cents),
            occurred_at=txn.occurred_at,
            is_pending=bool(txn.is_pending),
        )

    @property
    def day(self) -> date:
        return self.occurred_at.date()


class Budget(Base, TimestampMixin):
    __tablename__ = "budgets"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    category_id: Mapped[Optional[str]] = mapped_column(
        ForeignKey("categories.id", ondelete="CASCADE")
    )
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    period_type: Mapped[BudgetPeriodType] = mapped_column(
        SAEnum(BudgetPeriodType), nullable=False
    )
    period_start: Mapped[date] = mapped_column(Date, nullable=False)
    period_end: Mapped[date] = mapped_column(Date, nullable=False)
    alert_percentage: Mapped[int] = mapped_column(Integer, nullable=False, default=80)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    category: Mapped[Optional["Category"]] = relationship("Category")

    __table_args__ = (
        CheckConstraint("amount_cents >= 0", name="ck_budget_amount_positive"),
        CheckConstraint("period_start <= period_end", name="ck_budget_period_order"),
        Index("ix_budgets_period", "period_start", "period_end"),
        Index(
            "ix_budgets_category_period", "category_id", "period_start", "period_end"
        ),
    )


class BudgetProgressCacheEntry(Base):
    __tablename__ = "budget_progress_cache"

    budget_id: Mapped[str] = mapped_column(
        ForeignKey("budgets.id", ondelete="CASCADE"), primary_key=True
    )
    period_start: Mapped[date] = mapped_column(Date, primary_key=True)
    period_end: Mapped[date] = mapped_column(Date, primary_key=True)
    spent_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )
