from dataclasses import dataclass
from datetime import date
from typing import Optional

from models import BudgetPeriodType


@dataclass(frozen=True)
class Period:
    slug: str
    start: date
    end: date


def _month_end(year: int, month: int) -> date:
    if month == 12:
        return date(year + 1, 1, 1) - date.resolution
    return date(year, month + 1, 1) - date.resolution


def budget_period_bounds(period_type: BudgetPeriodType, reference: date) -> Period:
    """Calendar period of the given type that contains ``reference``."""
    if period_type == BudgetPeriodType.monthly:
        start = reference.replace(day=1)
        return Period("monthly", start, _month_end(start.year, start.month))
    if period_type == BudgetPeriodType.quarterly:
        first_month = 3 * ((reference.month - 1) // 3) + 1
        start = date(reference.year, first_month, 1)
        return Period("quarterly", start, _month_end(start.year, first_month + 2))
    if period_type == BudgetPeriodType.yearly:
        return Period(
            "yearly", date(reference.year, 1, 1), date(reference.year, 12, 31)
        )
    raise ValueError("Custom budgets require explicit start and end dates")


def resolve_period(
    period: Optional[str],
    start: Optional[str],
    end: Optional[str],
    *,
    today: Optional[date] = None,
) -> Optional[Period]:
    today = today or date.today()
    if not period or period == "all":
        return None
    if period == "last_month":
        first_this = today.replace(day=1)
        last_month_end = first_this - date.resolution
        last_month_start = last_month_end.replace(day=1)
        return Period("last_month", last_month_start, last_month_end)
    if period == "custom":
        if not start or not end:
            raise ValueError("Custom period requires start and end dates")
        start_date = date.fromisoformat(start)
        end_date = date.fromisoformat(end)
        if start_date > end_date:
            raise ValueError("Start date must be before end date")
        return Period("custom", start_date, end_date)
    if period == "this_quarter":
        bounds = budget_period_bounds(BudgetPeriodType.quarterly, today)
        return Period("this_quarter", bounds.start, bounds.end)
    if period == "this_year":
        bounds = budget_period_bounds(BudgetPeriodType.yearly, today)
        return Period("this_year", bounds.start, bounds.end)

    # this month
    bounds = budget_period_bounds(BudgetPeriodType.monthly, today)
    return Period("this_month", bounds.start, bounds.end)
