from __future__ import annotations

import json
import logging
import warnings
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from typing import Optional

from sqlalchemy import Text, cast, func, or_, select
from sqlalchemy.orm import Session

from balances import AccountBalanceMaintainer
from budget_cache import (
    BudgetInvalidationPlanner,
    BudgetProgressCache,
    CacheKey,
    derive_progress,
)
from config import get_settings
from database import atomic
from errors import CacheInconsistencyWarning, NotFoundError, ValidationError
from events import (
    AccountBalancesChanged,
    BudgetProgressInvalidated,
    EventBus,
    TransactionAction,
    TransactionsChanged,
)
from models import (
    Account,
    AccountType,
    Budget,
    BudgetPeriodType,
    Category,
    CategoryType,
    Transaction,
    TransactionSnapshot,
    TransactionType,
)
from periods import budget_period_bounds
from schemas import (
    AccountIn,
    AccountPatch,
    BudgetIn,
    BudgetPatch,
    CategoryIn,
    TransactionIn,
    TransactionPatch,
)

logger = logging.getLogger(__name__)

TRANSACTION_REQUIRED_FIELDS = (
    "type",
    "account_id",
    "amount_cents",
    "description",
    "occurred_at",
    "is_pending",
)
BUDGET_REQUIRED_FIELDS = (
    "name",
    "amount_cents",
    "period_type",
    "alert_percentage",
    "is_active",
)


def _reject_nulls(changes: dict[str, object], required: tuple[str, ...]) -> None:
    for name in required:
        if name in changes and changes[name] is None:
            raise ValidationError(f"{name} cannot be null")


class AccountService:
    def __init__(self, session: Session, bus: Optional[EventBus] = None) -> None:
        self.session = session
        self.bus = bus or EventBus()
        self.balances = AccountBalanceMaintainer(session)

    def create(self, data: AccountIn) -> Account:
        account = Account(
            name=data.name.strip(),
            type=data.type,
            initial_balance_cents=data.initial_balance_cents,
            current_balance_cents=data.initial_balance_cents,
            color=data.color,
            is_archived=data.is_archived,
            description=data.description,
        )
        with atomic(self.session):
            self.session.add(account)
        return account

    def get(self, account_id: str) -> Account:
        account = self.session.get(Account, account_id)
        if not account:
            raise NotFoundError("Account not found")
        return account

    def list_all(self, include_archived: bool = False) -> list[Account]:
        stmt = select(Account).order_by(Account.is_archived.asc(), Account.name.asc())
        if not include_archived:
            stmt = stmt.where(Account.is_archived.is_(False))
        return self.session.scalars(stmt).all()

    def update(self, account_id: str, patch: AccountPatch) -> Account:
        changes = patch.model_dump(exclude_unset=True)
        _reject_nulls(changes, ("name", "type", "initial_balance_cents", "is_archived"))
        delta = 0
        with atomic(self.session):
            account = self.get(account_id)
            if "initial_balance_cents" in changes:
                delta = self.balances.rebase(
                    account_id, changes.pop("initial_balance_cents")
                )
            for name, value in changes.items():
                setattr(account, name, value)
        if delta:
            self.bus.publish(AccountBalancesChanged())
        return account

    def archive(self, account_id: str) -> None:
        with atomic(self.session):
            self.get(account_id).is_archived = True

    def delete(self, account_id: str) -> None:
        with atomic(self.session):
            account = self.get(account_id)
            referenced = self.session.execute(
                select(func.count(Transaction.id)).where(
                    or_(
                        Transaction.account_id == account_id,
                        Transaction.destination_account_id == account_id,
                    )
                )
            ).scalar_one()
            if referenced:
                raise ValidationError("Cannot delete an account with transactions")
            self.session.delete(account)

    def balance_summary(self) -> dict[str, object]:
        rows = self.session.execute(
            select(Account.type, func.sum(Account.current_balance_cents).label("total"))
            .where(Account.is_archived.is_(False))
            .group_by(Account.type)
        ).all()
        by_type = {member.value: 0 for member in AccountType}
        for row in rows:
            by_type[row.type.value] = int(row.total or 0)
        return {"total": sum(by_type.values()), "by_type": by_type}


class CategoryService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def create(self, data: CategoryIn) -> Category:
        category = Category(name=data.name.strip(), type=data.type, color=data.color)
        with atomic(self.session):
            self.session.add(category)
        return category

    def get(self, category_id: str) -> Category:
        category = self.session.get(Category, category_id)
        if not category:
            raise NotFoundError("Category not found")
        return category

    def list_all(self, type: Optional[CategoryType] = None) -> list[Category]:
        stmt = select(Category).order_by(Category.name.asc())
        if type:
            stmt = stmt.where(Category.type == type)
        return self.session.scalars(stmt).all()


@dataclass
class TransactionFilters:
    account_ids: list[str] = field(default_factory=list)
    category_ids: list[str] = field(default_factory=list)
    types: list[TransactionType] = field(default_factory=list)
    date_from: Optional[date] = None
    date_to: Optional[date] = None
    amount_min: Optional[int] = None
    amount_max: Optional[int] = None
    search_text: Optional[str] = None
    tags: list[str] = field(default_factory=list)
    is_pending: Optional[bool] = None


class TransactionService:
    """Sole writer of transactions, account balances and budget cache rows.

    Every mutation runs as one unit of work: row write, balance maintenance
    and (in ``atomic`` mode) cache invalidation commit together or not at
    all. In ``deferred`` mode invalidation runs after the commit and its
    failure only leaves cache rows stale.
    """

    def __init__(
        self,
        session: Session,
        bus: Optional[EventBus] = None,
        *,
        invalidation_mode: Optional[str] = None,
    ) -> None:
        self.session = session
        self.bus = bus or EventBus()
        self.invalidation_mode = invalidation_mode or get_settings().invalidation_mode
        self.balances = AccountBalanceMaintainer(session)
        self.cache = BudgetProgressCache(session)
        self.planner = BudgetInvalidationPlanner(session)

    def _validate(
        self,
        *,
        type: TransactionType,
        account_id: str,
        destination_account_id: Optional[str],
        category_id: Optional[str],
        amount_cents: Optional[int],
    ) -> None:
        if amount_cents is None or amount_cents <= 0:
            raise ValidationError("Amount must be greater than zero")
        if type == TransactionType.transfer:
            if not destination_account_id:
                raise ValidationError("Transfers require a destination account")
            if destination_account_id == account_id:
                raise ValidationError("Transfer destination must differ from origin")
            if category_id is not None:
                raise ValidationError("Transfers cannot have a category")
            return
        if destination_account_id:
            raise ValidationError("Only transfers can have a destination account")
        if category_id is not None:
            # a missing category is left to the foreign key
            category = self.session.get(Category, category_id)
            if category and category.type.value != type.value:
                raise ValidationError("Category type mismatch")

    def create(self, data: TransactionIn) -> Transaction:
        self._validate(
            type=data.type,
            account_id=data.account_id,
            destination_account_id=data.destination_account_id,
            category_id=data.category_id,
            amount_cents=data.amount_cents,
        )
        txn = Transaction(
            type=data.type,
            account_id=data.account_id,
            destination_account_id=data.destination_account_id,
            category_id=data.category_id,
            amount_cents=data.amount_cents,
            description=data.description,
            notes=data.notes,
            occurred_at=data.occurred_at,
            tags=_clean_tags(data.tags),
            is_pending=data.is_pending,
        )
        with atomic(self.session):
            self.session.add(txn)
            self.session.flush()
            created = TransactionSnapshot.of(txn)
            if not created.is_pending:
                self.balances.apply(created)
            keys = self._invalidate_in_unit(None, created)
        keys |= self._invalidate_after_commit(None, created)
        self._notify(TransactionAction.create, created.id, keys)
        return txn

    def get(self, transaction_id: str) -> Transaction:
        txn = self.session.get(Transaction, transaction_id)
        if not txn:
            raise NotFoundError("Transaction not found")
        return txn

    def update(self, transaction_id: str, patch: TransactionPatch) -> Transaction:
        changes = patch.model_dump(exclude_unset=True)
        _reject_nulls(changes, TRANSACTION_REQUIRED_FIELDS)
        if "tags" in changes:
            changes["tags"] = _clean_tags(changes["tags"] or [])

        with atomic(self.session):
            txn = self.get(transaction_id)
            before = TransactionSnapshot.of(txn)
            self._validate(
                type=changes.get("type", before.type),
                account_id=changes.get("account_id", before.account_id),
                destination_account_id=changes.get(
                    "destination_account_id", before.destination_account_id
                ),
                category_id=changes.get("category_id", before.category_id),
                amount_cents=changes.get("amount_cents", before.amount_cents),
            )
            if not before.is_pending:
                self.balances.reverse(before)
            for name, value in changes.items():
                setattr(txn, name, value)
            self.session.flush()
            after = TransactionSnapshot.of(txn)
            if not after.is_pending:
                self.balances.apply(after)
            keys = self._invalidate_in_unit(before, after)
        keys |= self._invalidate_after_commit(before, after)
        self._notify(TransactionAction.update, transaction_id, keys)
        return txn

    def delete(self, transaction_id: str) -> None:
        with atomic(self.session):
            txn = self.get(transaction_id)
            before = TransactionSnapshot.of(txn)
            if not before.is_pending:
                self.balances.reverse(before)
            self.session.delete(txn)
            self.session.flush()
            keys = self._invalidate_in_unit(before, None)
        keys |= self._invalidate_after_commit(before, None)
        self._notify(TransactionAction.delete, transaction_id, keys)

    def list(
        self,
        filters: Optional[TransactionFilters] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Transaction]:
        stmt = self._filtered(select(Transaction), filters or TransactionFilters())
        stmt = (
            stmt.order_by(Transaction.occurred_at.desc(), Transaction.created_at.desc())
            .offset(offset)
            .limit(limit)
        )
        return self.session.scalars(stmt).all()

    def count(self, filters: Optional[TransactionFilters] = None) -> int:
        stmt = self._filtered(
            select(func.count(Transaction.id)), filters or TransactionFilters()
        )
        return int(self.session.execute(stmt).scalar_one() or 0)

    @staticmethod
    def _filtered(stmt, filters: TransactionFilters):
        if filters.account_ids:
            stmt = stmt.where(
                or_(
                    Transaction.account_id.in_(filters.account_ids),
                    Transaction.destination_account_id.in_(filters.account_ids),
                )
            )
        if filters.category_ids:
            stmt = stmt.where(Transaction.category_id.in_(filters.category_ids))
        if filters.types:
            stmt = stmt.where(Transaction.type.in_(filters.types))
        if filters.date_from:
            stmt = stmt.where(
                Transaction.occurred_at >= datetime.combine(filters.date_from, time.min)
            )
        if filters.date_to:
            stmt = stmt.where(
                Transaction.occurred_at
                < datetime.combine(filters.date_to + timedelta(days=1), time.min)
            )
        if filters.amount_min is not None:
            stmt = stmt.where(Transaction.amount_cents >= filters.amount_min)
        if filters.amount_max is not None:
            stmt = stmt.where(Transaction.amount_cents <= filters.amount_max)
        if filters.search_text:
            like = f"%{filters.search_text.lower()}%"
            stmt = stmt.where(
                or_(
                    func.lower(Transaction.description).like(like),
                    func.lower(func.coalesce(Transaction.notes, "")).like(like),
                )
            )
        if filters.tags:
            tags_text = cast(Transaction.tags, Text)
            stmt = stmt.where(
                or_(*[tags_text.like(f"%{json.dumps(tag)}%") for tag in filters.tags])
            )
        if filters.is_pending is not None:
            stmt = stmt.where(Transaction.is_pending.is_(filters.is_pending))
        return stmt

    def _invalidate(
        self,
        prev: Optional[TransactionSnapshot],
        next_: Optional[TransactionSnapshot],
    ) -> set[CacheKey]:
        keys = self.planner.plan(prev, next_)
        if keys:
            self.cache.invalidate_keys(keys)
        return keys

    def _invalidate_in_unit(
        self,
        prev: Optional[TransactionSnapshot],
        next_: Optional[TransactionSnapshot],
    ) -> set[CacheKey]:
        if self.invalidation_mode != "atomic":
            return set()
        return self._invalidate(prev, next_)

    def _invalidate_after_commit(
        self,
        prev: Optional[TransactionSnapshot],
        next_: Optional[TransactionSnapshot],
    ) -> set[CacheKey]:
        if self.invalidation_mode != "deferred":
            return set()
        transaction_id = (next_ or prev).id
        try:
            with atomic(self.session):
                return self._invalidate(prev, next_)
        except Exception as exc:
            logger.exception(f"budget_invalidation_failed: transaction={transaction_id}")
            warnings.warn(
                CacheInconsistencyWarning(
                    f"Budget progress may be stale after transaction "
                    f"{transaction_id} changed: {exc}"
                ),
                stacklevel=3,
            )
            return set()

    def _notify(
        self, action: TransactionAction, transaction_id: str, keys: set[CacheKey]
    ) -> None:
        self.bus.publish(TransactionsChanged(action=action, id=transaction_id))
        self.bus.publish(AccountBalancesChanged())
        if keys:
            self.bus.publish(
                BudgetProgressInvalidated(
                    reason="transaction change", keys=frozenset(keys)
                )
            )


def _clean_tags(tags: list[str]) -> list[str]:
    cleaned: list[str] = []
    seen: set[str] = set()
    for raw in tags:
        name = raw.strip()
        if not name or name.lower() in seen:
            continue
        seen.add(name.lower())
        cleaned.append(name)
    return cleaned


@dataclass(frozen=True)
class BudgetProgress:
    budget: Budget
    spent_cents: int
    percentage: float
    remaining_cents: int
    is_exceeded: bool

    @property
    def needs_alert(self) -> bool:
        return self.percentage >= self.budget.alert_percentage


@dataclass
class BudgetFilters:
    category_id: Optional[str] = None
    period_type: Optional[BudgetPeriodType] = None
    is_active: Optional[bool] = None
    period_start: Optional[date] = None
    period_end: Optional[date] = None


class BudgetService:
    def __init__(self, session: Session, bus: Optional[EventBus] = None) -> None:
        self.session = session
        self.bus = bus or EventBus()
        self.cache = BudgetProgressCache(session)

    def _check_category(self, category_id: Optional[str]) -> None:
        if category_id is None:
            return
        category = self.session.get(Category, category_id)
        if not category:
            raise NotFoundError("Category not found")
        if category.type != CategoryType.expense:
            raise ValidationError("Budgets can only be set for expense categories")

    @staticmethod
    def _resolve_bounds(
        period_type: BudgetPeriodType,
        start: Optional[date],
        end: Optional[date],
    ) -> tuple[date, date]:
        if start and end:
            if start > end:
                raise ValidationError("Budget period must start before it ends")
            return start, end
        if period_type == BudgetPeriodType.custom:
            raise ValidationError("Custom budgets require explicit start and end dates")
        bounds = budget_period_bounds(period_type, start or end or date.today())
        return bounds.start, bounds.end

    def create(self, data: BudgetIn) -> Budget:
        self._check_category(data.category_id)
        start, end = self._resolve_bounds(
            data.period_type, data.period_start, data.period_end
        )
        budget = Budget(
            name=data.name.strip(),
            category_id=data.category_id,
            amount_cents=data.amount_cents,
            period_type=data.period_type,
            period_start=start,
            period_end=end,
            alert_percentage=data.alert_percentage,
            is_active=data.is_active,
        )
        with atomic(self.session):
            self.session.add(budget)
            self.session.flush()
            # seeding avoids a guaranteed miss on the first read
            spent = self.cache.compute_spent(budget.category_id, start, end)
            self.cache.seed(budget.id, start, end, spent)
        return budget

    def get(self, budget_id: str) -> Budget:
        budget = self.session.get(Budget, budget_id)
        if not budget:
            raise NotFoundError("Budget not found")
        return budget

    def list_all(self, filters: Optional[BudgetFilters] = None) -> list[Budget]:
        filters = filters or BudgetFilters()
        stmt = select(Budget).order_by(Budget.created_at.desc(), Budget.id.desc())
        if filters.category_id is not None:
            stmt = stmt.where(Budget.category_id == filters.category_id)
        if filters.period_type:
            stmt = stmt.where(Budget.period_type == filters.period_type)
        if filters.is_active is not None:
            stmt = stmt.where(Budget.is_active.is_(filters.is_active))
        if filters.period_start:
            stmt = stmt.where(Budget.period_end >= filters.period_start)
        if filters.period_end:
            stmt = stmt.where(Budget.period_start <= filters.period_end)
        return self.session.scalars(stmt).all()

    def update(self, budget_id: str, patch: BudgetPatch) -> Budget:
        changes = patch.model_dump(exclude_unset=True)
        _reject_nulls(changes, BUDGET_REQUIRED_FIELDS)
        with atomic(self.session):
            budget = self.get(budget_id)
            if "category_id" in changes:
                self._check_category(changes["category_id"])

            period_type = changes.get("period_type", budget.period_type)
            explicit_dates = "period_start" in changes or "period_end" in changes
            if (
                "period_type" in changes
                and not explicit_dates
                and period_type != BudgetPeriodType.custom
            ):
                start, end = self._resolve_bounds(
                    period_type, budget.period_start, None
                )
            else:
                start, end = self._resolve_bounds(
                    period_type,
                    changes.get("period_start") or budget.period_start,
                    changes.get("period_end") or budget.period_end,
                )
            changes["period_start"] = start
            changes["period_end"] = end
            for name, value in changes.items():
                setattr(budget, name, value)
            self.session.flush()
            dropped = self.cache.drop_all(budget.id)
        logger.info(f"budget_updated: budget={budget_id} cache_rows_dropped={dropped}")
        self.bus.publish(BudgetProgressInvalidated(reason="budget updated"))
        return budget

    def delete(self, budget_id: str) -> None:
        with atomic(self.session):
            budget = self.get(budget_id)
            self.cache.drop_all(budget.id)
            self.session.delete(budget)
        self.bus.publish(BudgetProgressInvalidated(reason="budget deleted"))

    def progress(self, budget_id: str) -> BudgetProgress:
        """Progress of one budget.

        Inactive budgets are skipped by invalidation, so their row is
        recomputed and rewritten on every read instead of trusted.
        """
        with atomic(self.session):
            budget = self.get(budget_id)
            if budget.is_active:
                spent = self.cache.get(
                    budget.id, budget.period_start, budget.period_end
                )
            else:
                spent = self.cache.compute_spent(
                    budget.category_id, budget.period_start, budget.period_end
                )
                self.cache.seed(budget.id, budget.period_start, budget.period_end, spent)
        return self._progress(budget, spent)

    def active_progress(self) -> list[BudgetProgress]:
        with atomic(self.session):
            rows = [
                (budget, self.cache.get(budget.id, budget.period_start, budget.period_end))
                for budget in self.list_all(BudgetFilters(is_active=True))
            ]
        return [self._progress(budget, spent) for budget, spent in rows]

    def alerts(self) -> list[BudgetProgress]:
        return [p for p in self.active_progress() if p.needs_alert]

    @staticmethod
    def _progress(budget: Budget, spent_cents: int) -> BudgetProgress:
        figures = derive_progress(budget.amount_cents, spent_cents)
        return BudgetProgress(
            budget=budget,
            spent_cents=figures.spent_cents,
            percentage=figures.percentage,
            remaining_cents=figures.remaining_cents,
            is_exceeded=figures.is_exceeded,
        )
