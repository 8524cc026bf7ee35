from contextlib import contextmanager
from datetime import date, datetime

from sqlalchemy.orm import Session

import scheduler
from budget_cache import BudgetProgressCache
from models import AccountType, CategoryType, TransactionType
from schemas import AccountIn, BudgetIn, CategoryIn, TransactionIn
from services import AccountService, BudgetService, CategoryService, TransactionService


def _use_engine(monkeypatch, engine) -> None:
    @contextmanager
    def scope():
        with Session(engine) as session:
            yield session
            session.commit()

    monkeypatch.setattr(scheduler, "session_scope", scope)


def test_balance_job_repairs_drift(engine, monkeypatch) -> None:
    _use_engine(monkeypatch, engine)
    with Session(engine) as session:
        account = AccountService(session).create(
            AccountIn(name="Cash", type=AccountType.cash, initial_balance_cents=5000)
        )
        account.current_balance_cents = 42
        session.commit()
        account_id = account.id

    scheduler.SchedulerManager()._run_balance_rebuild("test")

    with Session(engine) as session:
        assert AccountService(session).get(account_id).current_balance_cents == 5000


def test_cache_job_refreshes_stale_rows(engine, monkeypatch) -> None:
    _use_engine(monkeypatch, engine)
    with Session(engine) as session:
        account = AccountService(session).create(
            AccountIn(name="Cash", type=AccountType.cash, initial_balance_cents=0)
        )
        food = CategoryService(session).create(
            CategoryIn(name="Food", type=CategoryType.expense)
        )
        budget = BudgetService(session).create(
            BudgetIn(
                name="Food",
                category_id=food.id,
                amount_cents=1000,
                period_start=date(2024, 1, 1),
                period_end=date(2024, 1, 31),
            )
        )
        TransactionService(session).create(
            TransactionIn(
                type=TransactionType.expense,
                account_id=account.id,
                category_id=food.id,
                amount_cents=300,
                description="Bread",
                occurred_at=datetime(2024, 1, 4, 9, 0),
            )
        )
        BudgetProgressCache(session).seed(
            budget.id, date(2024, 1, 1), date(2024, 1, 31), 1
        )
        session.commit()
        budget_id = budget.id

    scheduler.SchedulerManager()._run_cache_rebuild("test")

    with Session(engine) as session:
        cached = BudgetProgressCache(session).peek(
            budget_id, date(2024, 1, 1), date(2024, 1, 31)
        )
        assert cached == 300
