import logging
from datetime import date
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Request, Response
from sqlalchemy.orm import Session

from database import SessionLocal
from errors import IntegrityError, NotFoundError, TransientStoreError
from events import (
    AccountBalancesChanged,
    BudgetProgressInvalidated,
    EventBus,
    TransactionsChanged,
)
from models import Account, Budget, Category, CategoryType, Transaction, TransactionType
from periods import resolve_period
from scheduler import SchedulerManager
from schemas import (
    AccountIn,
    AccountPatch,
    BudgetIn,
    BudgetPatch,
    CategoryIn,
    TransactionIn,
    TransactionOut,
    TransactionPatch,
)
from services import (
    AccountService,
    BudgetFilters,
    BudgetProgress,
    BudgetService,
    CategoryService,
    TransactionFilters,
    TransactionService,
)

logger = logging.getLogger(__name__)

app = FastAPI(title="Ledger")


def _load_app_version() -> str:
    try:
        import tomllib
    except Exception:
        return "unknown"
    try:
        with open("pyproject.toml", "rb") as f:
            data = tomllib.load(f)
        return str(data.get("project", {}).get("version", "unknown"))
    except Exception:
        return "unknown"


APP_VERSION = _load_app_version()


def _log_event(event: object) -> None:
    logger.info(f"ledger_event: {event!r}")


app.state.bus = EventBus()
for _kind in (TransactionsChanged, AccountBalancesChanged, BudgetProgressInvalidated):
    app.state.bus.subscribe(_kind, _log_event)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_bus(request: Request) -> EventBus:
    return request.app.state.bus


scheduler_manager = SchedulerManager()


@app.on_event("startup")
def startup_event():
    scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


def http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, IntegrityError):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, TransientStoreError):
        return HTTPException(status_code=503, detail=str(exc))
    return HTTPException(status_code=400, detail=str(exc))


LEDGER_ERRORS = (ValueError, TransientStoreError)


def account_payload(account: Account) -> dict[str, object]:
    return {
        "id": account.id,
        "name": account.name,
        "type": account.type.value,
        "initial_balance_cents": account.initial_balance_cents,
        "current_balance_cents": account.current_balance_cents,
        "color": account.color,
        "is_archived": account.is_archived,
        "description": account.description,
    }


def category_payload(category: Category) -> dict[str, object]:
    return {
        "id": category.id,
        "name": category.name,
        "type": category.type.value,
        "color": category.color,
    }


def budget_payload(budget: Budget) -> dict[str, object]:
    return {
        "id": budget.id,
        "name": budget.name,
        "category_id": budget.category_id,
        "amount_cents": budget.amount_cents,
        "period_type": budget.period_type.value,
        "period_start": budget.period_start.isoformat(),
        "period_end": budget.period_end.isoformat(),
        "alert_percentage": budget.alert_percentage,
        "is_active": budget.is_active,
    }


def progress_payload(progress: BudgetProgress) -> dict[str, object]:
    return {
        "budget": budget_payload(progress.budget),
        "spent_cents": progress.spent_cents,
        "percentage": round(progress.percentage, 2),
        "remaining_cents": progress.remaining_cents,
        "is_exceeded": progress.is_exceeded,
        "needs_alert": progress.needs_alert,
    }


def transaction_payload(txn: Transaction) -> dict[str, object]:
    return TransactionOut.model_validate(txn).model_dump(mode="json")


def filters_from_request(request: Request) -> TransactionFilters:
    params = request.query_params
    try:
        period = resolve_period(
            params.get("period"), params.get("start"), params.get("end")
        )
        types = [TransactionType(value) for value in params.getlist("type")]
        amount_min = params.get("amount_min")
        amount_max = params.get("amount_max")
        pending = params.get("pending")
        return TransactionFilters(
            account_ids=params.getlist("account"),
            category_ids=params.getlist("category"),
            types=types,
            date_from=period.start if period else None,
            date_to=period.end if period else None,
            amount_min=int(amount_min) if amount_min else None,
            amount_max=int(amount_max) if amount_max else None,
            search_text=params.get("q") or None,
            tags=params.getlist("tag"),
            is_pending=None if pending is None else pending in ("1", "true", "yes"),
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.get("/api/health")
def api_health():
    return {"status": "ok", "version": APP_VERSION}


@app.post("/api/accounts", status_code=201)
def api_create_account(
    data: AccountIn, db: Session = Depends(get_db), bus: EventBus = Depends(get_bus)
):
    try:
        account = AccountService(db, bus).create(data)
    except LEDGER_ERRORS as exc:
        raise http_error(exc) from exc
    return account_payload(account)


@app.get("/api/accounts")
def api_accounts(include_archived: bool = False, db: Session = Depends(get_db)):
    accounts = AccountService(db).list_all(include_archived=include_archived)
    return [account_payload(account) for account in accounts]


@app.get("/api/accounts/summary")
def api_account_summary(db: Session = Depends(get_db)):
    return AccountService(db).balance_summary()


@app.get("/api/accounts/{account_id}")
def api_account(account_id: str, db: Session = Depends(get_db)):
    try:
        account = AccountService(db).get(account_id)
    except LEDGER_ERRORS as exc:
        raise http_error(exc) from exc
    return account_payload(account)


@app.patch("/api/accounts/{account_id}")
def api_update_account(
    account_id: str,
    patch: AccountPatch,
    db: Session = Depends(get_db),
    bus: EventBus = Depends(get_bus),
):
    try:
        account = AccountService(db, bus).update(account_id, patch)
    except LEDGER_ERRORS as exc:
        raise http_error(exc) from exc
    return account_payload(account)


@app.post("/api/accounts/{account_id}/archive")
def api_archive_account(account_id: str, db: Session = Depends(get_db)):
    try:
        service = AccountService(db)
        service.archive(account_id)
        account = service.get(account_id)
    except LEDGER_ERRORS as exc:
        raise http_error(exc) from exc
    return account_payload(account)


@app.delete("/api/accounts/{account_id}", status_code=204)
def api_delete_account(account_id: str, db: Session = Depends(get_db)):
    try:
        AccountService(db).delete(account_id)
    except LEDGER_ERRORS as exc:
        raise http_error(exc) from exc
    return Response(status_code=204)


@app.post("/api/categories", status_code=201)
def api_create_category(data: CategoryIn, db: Session = Depends(get_db)):
    try:
        category = CategoryService(db).create(data)
    except LEDGER_ERRORS as exc:
        raise http_error(exc) from exc
    return category_payload(category)


@app.get("/api/categories")
def api_categories(type: Optional[CategoryType] = None, db: Session = Depends(get_db)):
    return [category_payload(c) for c in CategoryService(db).list_all(type)]


@app.post("/api/transactions", status_code=201)
def api_create_transaction(
    data: TransactionIn, db: Session = Depends(get_db), bus: EventBus = Depends(get_bus)
):
    try:
        txn = TransactionService(db, bus).create(data)
    except LEDGER_ERRORS as exc:
        raise http_error(exc) from exc
    return transaction_payload(txn)


@app.get("/api/transactions")
def api_transactions(request: Request, db: Session = Depends(get_db)):
    filters = filters_from_request(request)
    page = int(request.query_params.get("page", "1"))
    page = max(page, 1)
    limit = int(request.query_params.get("limit", "50"))
    limit = min(max(limit, 1), 100)
    offset = (page - 1) * limit
    txn_service = TransactionService(db)
    items = txn_service.list(filters, limit=limit + 1, offset=offset)
    has_more = len(items) > limit
    items = items[:limit]

    return {
        "items": [transaction_payload(txn) for txn in items],
        "total": txn_service.count(filters),
        "page": page,
        "limit": limit,
        "has_more": has_more,
    }


@app.get("/api/transactions/{transaction_id}")
def api_transaction(transaction_id: str, db: Session = Depends(get_db)):
    try:
        txn = TransactionService(db).get(transaction_id)
    except LEDGER_ERRORS as exc:
        raise http_error(exc) from exc
    return transaction_payload(txn)


@app.patch("/api/transactions/{transaction_id}")
def api_update_transaction(
    transaction_id: str,
    patch: TransactionPatch,
    db: Session = Depends(get_db),
    bus: EventBus = Depends(get_bus),
):
    try:
        txn = TransactionService(db, bus).update(transaction_id, patch)
    except LEDGER_ERRORS as exc:
        raise http_error(exc) from exc
    return transaction_payload(txn)


@app.delete("/api/transactions/{transaction_id}", status_code=204)
def api_delete_transaction(
    transaction_id: str, db: Session = Depends(get_db), bus: EventBus = Depends(get_bus)
):
    try:
        TransactionService(db, bus).delete(transaction_id)
    except LEDGER_ERRORS as exc:
        raise http_error(exc) from exc
    return Response(status_code=204)


@app.post("/api/budgets", status_code=201)
def api_create_budget(
    data: BudgetIn, db: Session = Depends(get_db), bus: EventBus = Depends(get_bus)
):
    try:
        budget = BudgetService(db, bus).create(data)
    except LEDGER_ERRORS as exc:
        raise http_error(exc) from exc
    return budget_payload(budget)


@app.get("/api/budgets")
def api_budgets(
    category_id: Optional[str] = None,
    active: Optional[bool] = None,
    start: Optional[date] = None,
    end: Optional[date] = None,
    db: Session = Depends(get_db),
):
    filters = BudgetFilters(
        category_id=category_id, is_active=active, period_start=start, period_end=end
    )
    return [budget_payload(budget) for budget in BudgetService(db).list_all(filters)]


@app.get("/api/budgets/progress")
def api_budget_progress(db: Session = Depends(get_db)):
    try:
        rows = BudgetService(db).active_progress()
    except LEDGER_ERRORS as exc:
        raise http_error(exc) from exc
    return [progress_payload(progress) for progress in rows]


@app.get("/api/budgets/alerts")
def api_budget_alerts(db: Session = Depends(get_db)):
    try:
        rows = BudgetService(db).alerts()
    except LEDGER_ERRORS as exc:
        raise http_error(exc) from exc
    return [progress_payload(progress) for progress in rows]


@app.get("/api/budgets/{budget_id}")
def api_budget(budget_id: str, db: Session = Depends(get_db)):
    try:
        budget = BudgetService(db).get(budget_id)
    except LEDGER_ERRORS as exc:
        raise http_error(exc) from exc
    return budget_payload(budget)


@app.get("/api/budgets/{budget_id}/progress")
def api_single_budget_progress(budget_id: str, db: Session = Depends(get_db)):
    try:
        progress = BudgetService(db).progress(budget_id)
    except LEDGER_ERRORS as exc:
        raise http_error(exc) from exc
    return progress_payload(progress)


@app.patch("/api/budgets/{budget_id}")
def api_update_budget(
    budget_id: str,
    patch: BudgetPatch,
    db: Session = Depends(get_db),
    bus: EventBus = Depends(get_bus),
):
    try:
        budget = BudgetService(db, bus).update(budget_id, patch)
    except LEDGER_ERRORS as exc:
        raise http_error(exc) from exc
    return budget_payload(budget)


@app.delete("/api/budgets/{budget_id}", status_code=204)
def api_delete_budget(
    budget_id: str, db: Session = Depends(get_db), bus: EventBus = Depends(get_bus)
):
    try:
        BudgetService(db, bus).delete(budget_id)
    except LEDGER_ERRORS as exc:
        raise http_error(exc) from exc
    return Response(status_code=204)
