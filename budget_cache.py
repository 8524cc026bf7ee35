from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Iterable, Optional

from sqlalchemy import delete, func, or_, select
from sqlalchemy.orm import Session

from errors import NotFoundError
from models import (
    Budget,
    BudgetProgressCacheEntry,
    Transaction,
    TransactionSnapshot,
    TransactionType,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CacheKey:
    budget_id: str
    period_start: date
    period_end: date


@dataclass(frozen=True)
class Observation:
    day: date
    category_id: Optional[str]


@dataclass(frozen=True)
class ProgressFigures:
    spent_cents: int
    percentage: float
    remaining_cents: int
    is_exceeded: bool


def derive_progress(amount_cents: int, spent_cents: int) -> ProgressFigures:
    percentage = (spent_cents / amount_cents) * 100 if amount_cents > 0 else 0.0
    return ProgressFigures(
        spent_cents=spent_cents,
        percentage=min(percentage, 100.0),
        remaining_cents=amount_cents - spent_cents,
        is_exceeded=spent_cents > amount_cents,
    )


def _day_window(start: date, end: date) -> tuple[datetime, datetime]:
    return datetime.combine(start, time.min), datetime.combine(
        end + timedelta(days=1), time.min
    )


class BudgetProgressCache:
    """Spent totals per (budget, period), filled lazily on read.

    Methods flush but never commit; the caller's unit of work decides.
    """

    def __init__(self, session: Session) -> None:
        self.session = session

    def compute_spent(
        self, category_id: Optional[str], period_start: date, period_end: date
    ) -> int:
        window_start, window_end = _day_window(period_start, period_end)
        stmt = select(func.coalesce(func.sum(Transaction.amount_cents), 0)).where(
            Transaction.type == TransactionType.expense,
            Transaction.is_pending.is_(False),
            Transaction.occurred_at >= window_start,
            Transaction.occurred_at < window_end,
        )
        if category_id is not None:
            stmt = stmt.where(Transaction.category_id == category_id)
        return int(self.session.execute(stmt).scalar_one() or 0)

    def peek(
        self, budget_id: str, period_start: date, period_end: date
    ) -> Optional[int]:
        entry = self.session.get(
            BudgetProgressCacheEntry, (budget_id, period_start, period_end)
        )
        return None if entry is None else int(entry.spent_cents)

    def get(self, budget_id: str, period_start: date, period_end: date) -> int:
        cached = self.peek(budget_id, period_start, period_end)
        if cached is not None:
            return cached

        budget = self.session.get(Budget, budget_id)
        if not budget:
            raise NotFoundError("Budget not found")
        self.session.flush()
        spent = self.compute_spent(budget.category_id, period_start, period_end)
        self.seed(budget_id, period_start, period_end, spent)
        logger.debug(
            f"budget_cache_fill: budget={budget_id} "
            f"period={period_start}..{period_end} spent={spent}"
        )
        return spent

    def seed(
        self, budget_id: str, period_start: date, period_end: date, spent_cents: int
    ) -> None:
        self.session.merge(
            BudgetProgressCacheEntry(
                budget_id=budget_id,
                period_start=period_start,
                period_end=period_end,
                spent_cents=spent_cents,
                updated_at=datetime.utcnow(),
            )
        )
        self.session.flush()

    def invalidate(
        self,
        budget_id: str,
        period_start: Optional[date] = None,
        period_end: Optional[date] = None,
    ) -> int:
        if period_start is None or period_end is None:
            return self.drop_all(budget_id)
        return self.invalidate_keys([CacheKey(budget_id, period_start, period_end)])

    def invalidate_keys(self, keys: Iterable[CacheKey]) -> int:
        removed = 0
        for key in keys:
            result = self.session.execute(
                delete(BudgetProgressCacheEntry)
                .where(
                    BudgetProgressCacheEntry.budget_id == key.budget_id,
                    BudgetProgressCacheEntry.period_start == key.period_start,
                    BudgetProgressCacheEntry.period_end == key.period_end,
                )
                .execution_options(synchronize_session="fetch")
            )
            removed += result.rowcount or 0
        return removed

    def drop_all(self, budget_id: str) -> int:
        result = self.session.execute(
            delete(BudgetProgressCacheEntry)
            .where(BudgetProgressCacheEntry.budget_id == budget_id)
            .execution_options(synchronize_session="fetch")
        )
        return result.rowcount or 0

    def rebuild(self, budget_ids: Optional[Iterable[str]] = None) -> int:
        stmt = select(Budget).where(Budget.is_active.is_(True))
        if budget_ids is not None:
            stmt = stmt.where(Budget.id.in_(list(budget_ids)))
        count = 0
        for budget in self.session.scalars(stmt).all():
            self.drop_all(budget.id)
            spent = self.compute_spent(
                budget.category_id, budget.period_start, budget.period_end
            )
            self.seed(budget.id, budget.period_start, budget.period_end, spent)
            count += 1
        logger.info(f"budget_cache_rebuild: budgets={count}")
        return count


class BudgetInvalidationPlanner:
    """Narrows a transaction change down to the cache rows it can affect.

    Budgets filter on expense type, day and category only, so those are the
    only fields that take part in the lookup.
    """

    def __init__(self, session: Session) -> None:
        self.session = session

    @staticmethod
    def observations(
        prev: Optional[TransactionSnapshot], next_: Optional[TransactionSnapshot]
    ) -> list[Observation]:
        found: list[Observation] = []
        for snapshot in (prev, next_):
            if snapshot is not None and snapshot.type == TransactionType.expense:
                found.append(Observation(snapshot.day, snapshot.category_id))

        if (
            prev is not None
            and next_ is not None
            and prev.type == TransactionType.expense
            and next_.type == TransactionType.expense
            and (prev.day != next_.day or prev.category_id != next_.category_id)
        ):
            # an edit can vacate one budget and populate another
            found.append(Observation(prev.day, prev.category_id))
            found.append(Observation(next_.day, next_.category_id))

        unique: list[Observation] = []
        seen: set[tuple[date, Optional[str]]] = set()
        for obs in found:
            if (obs.day, obs.category_id) in seen:
                continue
            seen.add((obs.day, obs.category_id))
            unique.append(obs)
        return unique

    def affected_keys(self, observation: Observation) -> set[CacheKey]:
        category_match = Budget.category_id.is_(None)
        if observation.category_id is not None:
            category_match = or_(
                Budget.category_id.is_(None),
                Budget.category_id == observation.category_id,
            )
        rows = self.session.execute(
            select(Budget.id, Budget.period_start, Budget.period_end).where(
                Budget.is_active.is_(True),
                Budget.period_start <= observation.day,
                Budget.period_end >= observation.day,
                category_match,
            )
        ).all()
        return {CacheKey(row.id, row.period_start, row.period_end) for row in rows}

    def plan(
        self, prev: Optional[TransactionSnapshot], next_: Optional[TransactionSnapshot]
    ) -> set[CacheKey]:
        keys: set[CacheKey] = set()
        for observation in self.observations(prev, next_):
            keys |= self.affected_keys(observation)
        return keys
