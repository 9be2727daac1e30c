from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Iterable, Mapping, Optional, Sequence

from ..models import AlertType, Budget, BudgetAlert, BudgetPeriod, BudgetProgress, Transaction

DEFAULT_ALERT_THRESHOLD = 0.9
ZERO = Decimal("0")
ONE = Decimal("1")


def month_start(value: date) -> date:
    return value.replace(day=1)


def add_months(value: date, months: int) -> date:
    month_index = value.month - 1 + months
    return date(value.year + month_index // 12, month_index % 12 + 1, 1)


def period_bounds(starts_on: date, period: BudgetPeriod = BudgetPeriod.month) -> tuple[date, date]:
    """Return the [start, end) window a budget anchored at ``starts_on`` covers."""
    if period == BudgetPeriod.month:
        start = month_start(starts_on)
        return start, add_months(start, 1)
    raise ValueError(f"Unsupported budget period: {period}")


def classify(ratio: Decimal, threshold: float = DEFAULT_ALERT_THRESHOLD) -> AlertType:
    if ratio >= ONE:
        return AlertType.over
    if ratio >= Decimal(str(threshold)):
        return AlertType.warning
    return AlertType.none


def compute_progress(
    budget: Budget,
    transactions: Iterable[Transaction],
    threshold: float = DEFAULT_ALERT_THRESHOLD,
    category_name: Optional[str] = None,
) -> BudgetProgress:
    """Spent is the sum of outflows in the budget's category and period.

    Inflows such as refunds do not reduce spent. Remaining is not clamped,
    so an overspent budget reports a negative remaining.
    """
    start, end = period_bounds(budget.starts_on, budget.period)
    spent = sum(
        (
            -t.amount
            for t in transactions
            if t.category_id == budget.category_id and start <= t.date < end and t.amount < 0
        ),
        ZERO,
    )
    ratio = spent / budget.limit if budget.limit > 0 else ZERO
    return BudgetProgress(
        budget_id=budget.id,
        category_id=budget.category_id,
        limit=budget.limit,
        currency=budget.currency,
        spent=spent,
        remaining=budget.limit - spent,
        ratio=ratio,
        alert_type=classify(ratio, threshold),
        category_name=category_name,
    )


def budgets_for_period(budgets: Iterable[Budget], period_start: date) -> list[Budget]:
    anchor = month_start(period_start)
    return [b for b in budgets if b.active and month_start(b.starts_on) == anchor]


def progress_for_period(
    budgets: Iterable[Budget],
    transactions: Sequence[Transaction],
    period_start: date,
    threshold: float = DEFAULT_ALERT_THRESHOLD,
    category_names: Optional[Mapping[str, str]] = None,
) -> list[BudgetProgress]:
    names = category_names or {}
    return [
        compute_progress(b, transactions, threshold, names.get(b.category_id))
        for b in budgets_for_period(budgets, period_start)
    ]


def alert_message(progress: BudgetProgress, category_name: Optional[str] = None) -> str:
    label = category_name or progress.category_name or progress.category_id
    if progress.alert_type == AlertType.over:
        return f"Budget for {label} is exceeded"
    percent = (progress.ratio * 100).quantize(Decimal("0.1"))
    return f"Budget for {label} is nearly used ({percent}%)"


def list_alerts(
    budgets: Iterable[Budget],
    transactions: Sequence[Transaction],
    threshold: float = DEFAULT_ALERT_THRESHOLD,
    category_names: Optional[Mapping[str, str]] = None,
) -> list[BudgetAlert]:
    names = category_names or {}
    alerts = []
    for budget in budgets:
        if not budget.active:
            continue
        progress = compute_progress(budget, transactions, threshold, names.get(budget.category_id))
        if progress.alert_type == AlertType.none:
            continue
        alerts.append(BudgetAlert(progress=progress, message=alert_message(progress)))
    return alerts
