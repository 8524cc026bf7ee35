from datetime import date, datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from models import AccountType, BudgetPeriodType, CategoryType, TransactionType


class AccountIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    type: AccountType
    initial_balance_cents: int = 0
    color: str = Field(default="#3b82f6", max_length=7)
    is_archived: bool = False
    description: Optional[str] = None


class AccountPatch(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    type: Optional[AccountType] = None
    initial_balance_cents: Optional[int] = None
    color: Optional[str] = Field(default=None, max_length=7)
    is_archived: Optional[bool] = None
    description: Optional[str] = None


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    type: CategoryType
    color: str = Field(default="#6b7280", max_length=7)


# Amount and transfer rules are checked by TransactionService so that every
# caller gets errors.ValidationError rather than a schema error.
class TransactionIn(BaseModel):
    type: TransactionType
    account_id: str
    destination_account_id: Optional[str] = None
    category_id: Optional[str] = None
    amount_cents: int
    description: str = Field(..., min_length=1, max_length=200)
    notes: Optional[str] = None
    occurred_at: datetime
    tags: list[str] = Field(default_factory=list)
    is_pending: bool = False


class TransactionPatch(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: Optional[TransactionType] = None
    account_id: Optional[str] = None
    destination_account_id: Optional[str] = None
    category_id: Optional[str] = None
    amount_cents: Optional[int] = None
    description: Optional[str] = Field(default=None, min_length=1, max_length=200)
    notes: Optional[str] = None
    occurred_at: Optional[datetime] = None
    tags: Optional[list[str]] = None
    is_pending: Optional[bool] = None


class TransactionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    type: TransactionType
    account_id: str
    destination_account_id: Optional[str]
    category_id: Optional[str]
    amount_cents: int
    description: str
    notes: Optional[str]
    occurred_at: datetime
    tags: list[str]
    is_pending: bool


class BudgetIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    category_id: Optional[str] = None
    amount_cents: int = Field(..., ge=0)
    period_type: BudgetPeriodType = BudgetPeriodType.monthly
    period_start: Optional[date] = None
    period_end: Optional[date] = None
    alert_percentage: int = Field(default=80, ge=0, le=100)
    is_active: bool = True


class BudgetPatch(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(default=None, min_length=1, max_length=120)
    category_id: Optional[str] = None
    amount_cents: Optional[int] = Field(default=None, ge=0)
    period_type: Optional[BudgetPeriodType] = None
    period_start: Optional[date] = None
    period_end: Optional[date] = None
    alert_percentage: Optional[int] = Field(default=None, ge=0, le=100)
    is_active: Optional[bool] = None
