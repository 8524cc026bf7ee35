from datetime import date, datetime

import pytest

from budget_cache import (
    BudgetInvalidationPlanner,
    BudgetProgressCache,
    CacheKey,
    Observation,
)
from errors import CacheInconsistencyWarning
from events import BudgetProgressInvalidated, EventBus
from models import (
    AccountType,
    CategoryType,
    Transaction,
    TransactionSnapshot,
    TransactionType,
)
from schemas import AccountIn, BudgetIn, CategoryIn, TransactionIn, TransactionPatch
from services import AccountService, BudgetService, CategoryService, TransactionService

JAN = (date(2024, 1, 1), date(2024, 1, 31))
FEB = (date(2024, 2, 1), date(2024, 2, 29))


def _ledger(session):
    account = AccountService(session).create(
        AccountIn(name="Checking", type=AccountType.checking, initial_balance_cents=100000)
    )
    categories = CategoryService(session)
    food = categories.create(CategoryIn(name="Food", type=CategoryType.expense))
    transport = categories.create(CategoryIn(name="Transport", type=CategoryType.expense))
    salary = categories.create(CategoryIn(name="Salary", type=CategoryType.income))
    return account, food, transport, salary


def _budget(session, category_id, period=JAN, **extra):
    return BudgetService(session).create(
        BudgetIn(
            name="Budget",
            category_id=category_id,
            amount_cents=50000,
            period_start=period[0],
            period_end=period[1],
            **extra,
        )
    )


def _txn(account_id, category_id, cents, when, type=TransactionType.expense):
    return TransactionIn(
        type=type,
        account_id=account_id,
        category_id=category_id,
        amount_cents=cents,
        description="Entry",
        occurred_at=when,
    )


def _snapshot(type, day, category_id):
    return TransactionSnapshot(
        id="t1",
        type=type,
        account_id="a1",
        destination_account_id=None,
        category_id=category_id,
        amount_cents=100,
        occurred_at=datetime.combine(day, datetime.min.time()),
        is_pending=False,
    )


def test_observations_ignore_non_expenses() -> None:
    income = _snapshot(TransactionType.income, date(2024, 1, 5), "salary")
    assert BudgetInvalidationPlanner.observations(None, income) == []


def test_observations_cover_both_sides_of_a_move() -> None:
    before = _snapshot(TransactionType.expense, date(2024, 1, 5), "food")
    after = _snapshot(TransactionType.expense, date(2024, 2, 5), "food")
    assert BudgetInvalidationPlanner.observations(before, after) == [
        Observation(date(2024, 1, 5), "food"),
        Observation(date(2024, 2, 5), "food"),
    ]
    assert BudgetInvalidationPlanner.observations(before, before) == [
        Observation(date(2024, 1, 5), "food")
    ]


def test_food_expense_invalidates_and_income_does_not(session) -> None:
    account, food, _, salary = _ledger(session)
    budget = _budget(session, food.id)
    cache = BudgetProgressCache(session)
    bus = EventBus()
    invalidations: list[BudgetProgressInvalidated] = []
    bus.subscribe(BudgetProgressInvalidated, invalidations.append)
    service = TransactionService(session, bus)
    assert cache.peek(budget.id, *JAN) == 0

    service.create(_txn(account.id, food.id, 12000, datetime(2024, 1, 15, 13, 0)))
    assert cache.peek(budget.id, *JAN) is None
    assert invalidations[0].keys == frozenset({CacheKey(budget.id, *JAN)})
    assert BudgetService(session).progress(budget.id).spent_cents == 12000

    service.create(
        _txn(
            account.id,
            salary.id,
            300000,
            datetime(2024, 1, 15, 9, 0),
            type=TransactionType.income,
        )
    )
    assert cache.peek(budget.id, *JAN) == 12000
    assert len(invalidations) == 1


def test_general_and_category_budgets_are_invalidated_precisely(session) -> None:
    account, food, transport, _ = _ledger(session)
    general = _budget(session, None)
    food_budget = _budget(session, food.id)
    cache = BudgetProgressCache(session)
    service = TransactionService(session)

    service.create(_txn(account.id, food.id, 1000, datetime(2024, 1, 10)))
    assert cache.peek(general.id, *JAN) is None
    assert cache.peek(food_budget.id, *JAN) is None

    BudgetService(session).active_progress()
    service.create(_txn(account.id, transport.id, 400, datetime(2024, 1, 11)))
    assert cache.peek(general.id, *JAN) is None
    assert cache.peek(food_budget.id, *JAN) == 1000
    assert BudgetService(session).progress(general.id).spent_cents == 1400


def test_moving_an_expense_refreshes_both_periods(session) -> None:
    account, food, _, _ = _ledger(session)
    january = _budget(session, food.id, JAN)
    february = _budget(session, food.id, FEB)
    cache = BudgetProgressCache(session)
    service = TransactionService(session)
    txn = service.create(_txn(account.id, food.id, 2500, datetime(2024, 1, 30)))
    budgets = BudgetService(session)
    assert budgets.progress(january.id).spent_cents == 2500
    assert budgets.progress(february.id).spent_cents == 0

    service.update(txn.id, TransactionPatch(occurred_at=datetime(2024, 2, 2, 10, 0)))

    assert cache.peek(january.id, *JAN) is None
    assert cache.peek(february.id, *FEB) is None
    assert budgets.progress(january.id).spent_cents == 0
    assert budgets.progress(february.id).spent_cents == 2500


def test_recategorising_refreshes_both_budgets(session) -> None:
    account, food, transport, _ = _ledger(session)
    food_budget = _budget(session, food.id)
    transport_budget = _budget(session, transport.id)
    service = TransactionService(session)
    txn = service.create(_txn(account.id, food.id, 800, datetime(2024, 1, 12)))
    budgets = BudgetService(session)
    budgets.active_progress()

    service.update(txn.id, TransactionPatch(category_id=transport.id))

    assert budgets.progress(food_budget.id).spent_cents == 0
    assert budgets.progress(transport_budget.id).spent_cents == 800


def test_deleting_an_expense_invalidates(session) -> None:
    account, food, _, _ = _ledger(session)
    budget = _budget(session, food.id)
    service = TransactionService(session)
    txn = service.create(_txn(account.id, food.id, 800, datetime(2024, 1, 12)))
    budgets = BudgetService(session)
    assert budgets.progress(budget.id).spent_cents == 800

    service.delete(txn.id)

    assert BudgetProgressCache(session).peek(budget.id, *JAN) is None
    assert budgets.progress(budget.id).spent_cents == 0


def test_inactive_budgets_are_left_alone(session) -> None:
    account, food, _, _ = _ledger(session)
    paused = _budget(session, food.id, is_active=False)

    TransactionService(session).create(
        _txn(account.id, food.id, 500, datetime(2024, 1, 8))
    )

    assert BudgetProgressCache(session).peek(paused.id, *JAN) == 0


def test_atomic_mode_rolls_back_when_planning_fails(session, monkeypatch) -> None:
    account, food, _, _ = _ledger(session)
    budget = _budget(session, food.id)

    def broken_plan(self, prev, next_):
        raise RuntimeError("planner offline")

    monkeypatch.setattr(BudgetInvalidationPlanner, "plan", broken_plan)
    service = TransactionService(session, invalidation_mode="atomic")
    with pytest.raises(RuntimeError):
        service.create(_txn(account.id, food.id, 700, datetime(2024, 1, 9)))

    assert session.query(Transaction).count() == 0
    assert AccountService(session).get(account.id).current_balance_cents == 100000
    assert BudgetProgressCache(session).peek(budget.id, *JAN) == 0


def test_deferred_mode_invalidates_after_commit(session) -> None:
    account, food, _, _ = _ledger(session)
    budget = _budget(session, food.id)
    service = TransactionService(session, invalidation_mode="deferred")

    service.create(_txn(account.id, food.id, 700, datetime(2024, 1, 9)))

    assert BudgetProgressCache(session).peek(budget.id, *JAN) is None


def test_deferred_mode_keeps_write_and_warns_when_planning_fails(
    session, monkeypatch
) -> None:
    account, food, _, _ = _ledger(session)
    budget = _budget(session, food.id)

    def broken_plan(self, prev, next_):
        raise RuntimeError("planner offline")

    monkeypatch.setattr(BudgetInvalidationPlanner, "plan", broken_plan)
    service = TransactionService(session, invalidation_mode="deferred")
    with pytest.warns(CacheInconsistencyWarning):
        txn = service.create(_txn(account.id, food.id, 700, datetime(2024, 1, 9)))

    assert service.get(txn.id).amount_cents == 700
    assert AccountService(session).get(account.id).current_balance_cents == 99300
    # stale until the next invalidation or rebuild
    assert BudgetProgressCache(session).peek(budget.id, *JAN) == 0


def test_amount_edit_and_pending_flips_refresh_progress(session) -> None:
    account, food, _, _ = _ledger(session)
    budget = _budget(session, food.id)
    service = TransactionService(session)
    budgets = BudgetService(session)
    accounts = AccountService(session)
    txn = service.create(_txn(account.id, food.id, 3000, datetime(2024, 1, 14)))
    assert budgets.progress(budget.id).spent_cents == 3000

    service.update(txn.id, TransactionPatch(amount_cents=5000))
    assert BudgetProgressCache(session).peek(budget.id, *JAN) is None
    assert budgets.progress(budget.id).spent_cents == 5000

    service.update(txn.id, TransactionPatch(is_pending=True))
    assert budgets.progress(budget.id).spent_cents == 0
    assert accounts.get(account.id).current_balance_cents == 100000

    service.update(txn.id, TransactionPatch(is_pending=False))
    assert budgets.progress(budget.id).spent_cents == 5000
    assert accounts.get(account.id).current_balance_cents == 95000
