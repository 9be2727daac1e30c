from datetime import date
from decimal import Decimal

import pytest

from slimminder.models import AlertType, Budget, Transaction
from slimminder.services.budgets import (
    add_months,
    classify,
    compute_progress,
    list_alerts,
    period_bounds,
    progress_for_period,
)


def make_budget(limit: str = "200", category_id: str = "groceries", starts_on: date = date(2024, 3, 1), **kwargs) -> Budget:
    return Budget(
        id=kwargs.pop("id", f"budget-{category_id}"),
        user_id="user-1",
        category_id=category_id,
        limit=Decimal(limit),
        currency="EUR",
        starts_on=starts_on,
        **kwargs,
    )


def tx(amount: str, booked: date, category_id: str | None = "groceries") -> Transaction:
    return Transaction(
        id=f"tx-{amount}-{booked.isoformat()}",
        user_id="user-1",
        amount=Decimal(amount),
        currency="EUR",
        date=booked,
        category_id=category_id,
    )


def test_progress_counts_only_matching_category_and_period() -> None:
    transactions = [
        tx("-50", date(2024, 3, 5)),
        tx("-60", date(2024, 3, 20)),
        tx("-999", date(2024, 3, 10), category_id="rent"),
    ]

    progress = compute_progress(make_budget(), transactions)

    assert progress.spent == Decimal("110")
    assert progress.remaining == Decimal("90")
    assert progress.ratio == Decimal("0.55")
    assert progress.alert_type == AlertType.none


def test_progress_warning_near_limit() -> None:
    progress = compute_progress(make_budget(), [tx("-190", date(2024, 3, 5))])

    assert progress.ratio == Decimal("0.95")
    assert progress.alert_type == AlertType.warning


def test_progress_over_limit_keeps_negative_remaining() -> None:
    progress = compute_progress(make_budget(), [tx("-250", date(2024, 3, 5))])

    assert progress.remaining == Decimal("-50")
    assert progress.alert_type == AlertType.over


def test_refunds_do_not_reduce_spent() -> None:
    transactions = [tx("-100", date(2024, 3, 5)), tx("40", date(2024, 3, 6))]

    progress = compute_progress(make_budget(), transactions)

    assert progress.spent == Decimal("100")


def test_spent_is_zero_for_income_only_and_empty_sets() -> None:
    assert compute_progress(make_budget(), []).spent == Decimal("0")
    assert compute_progress(make_budget(), [tx("500", date(2024, 3, 2))]).spent == Decimal("0")


def test_period_edges_are_start_inclusive_end_exclusive() -> None:
    transactions = [
        tx("-10", date(2024, 2, 29)),
        tx("-20", date(2024, 3, 1)),
        tx("-30", date(2024, 3, 31)),
        tx("-40", date(2024, 4, 1)),
    ]

    progress = compute_progress(make_budget(starts_on=date(2024, 3, 17)), transactions)

    assert progress.spent == Decimal("50")


def test_zero_limit_never_divides() -> None:
    progress = compute_progress(make_budget(limit="0"), [tx("-10", date(2024, 3, 5))])

    assert progress.ratio == Decimal("0")
    assert progress.alert_type == AlertType.none
    assert progress.remaining == Decimal("-10")


@pytest.mark.parametrize(
    ("ratio", "expected"),
    [
        ("0.8999", AlertType.none),
        ("0.9", AlertType.warning),
        ("0.9999", AlertType.warning),
        ("1.0", AlertType.over),
        ("1.5", AlertType.over),
    ],
)
def test_alert_boundaries(ratio: str, expected: AlertType) -> None:
    assert classify(Decimal(ratio)) == expected


def test_spent_exactly_at_threshold_is_warning() -> None:
    progress = compute_progress(make_budget(limit="100"), [tx("-90", date(2024, 3, 5))])

    assert progress.alert_type == AlertType.warning


def test_spent_exactly_at_limit_is_over() -> None:
    progress = compute_progress(make_budget(limit="100"), [tx("-100", date(2024, 3, 5))])

    assert progress.alert_type == AlertType.over
    assert progress.remaining == Decimal("0")


def test_custom_threshold() -> None:
    progress = compute_progress(make_budget(), [tx("-110", date(2024, 3, 5))], threshold=0.5)

    assert progress.alert_type == AlertType.warning


def test_month_arithmetic_rolls_over_year() -> None:
    assert period_bounds(date(2024, 12, 15)) == (date(2024, 12, 1), date(2025, 1, 1))
    assert add_months(date(2024, 1, 1), 14) == date(2025, 3, 1)


def test_progress_for_period_selects_active_budgets_anchored_in_month() -> None:
    budgets = [
        make_budget(id="march"),
        make_budget(id="april", starts_on=date(2024, 4, 1)),
        make_budget(id="disabled", category_id="fuel", active=False),
    ]

    rows = progress_for_period(budgets, [tx("-50", date(2024, 3, 5))], date(2024, 3, 20))

    assert [r.budget_id for r in rows] == ["march"]
    assert rows[0].spent == Decimal("50")


def test_list_alerts_distinguishes_over_and_near_limit() -> None:
    budgets = [
        make_budget(category_id="groceries"),
        make_budget(category_id="fuel", limit="100"),
        make_budget(category_id="fun", limit="1000"),
        make_budget(category_id="travel", limit="10", active=False),
    ]
    transactions = [
        tx("-190", date(2024, 3, 5), "groceries"),
        tx("-130", date(2024, 3, 5), "fuel"),
        tx("-10", date(2024, 3, 5), "fun"),
        tx("-99", date(2024, 3, 5), "travel"),
    ]

    alerts = list_alerts(budgets, transactions, category_names={"groceries": "Groceries"})

    by_category = {a.progress.category_id: a for a in alerts}
    assert set(by_category) == {"groceries", "fuel"}
    assert by_category["groceries"].alert_type == AlertType.warning
    assert by_category["groceries"].message == "Budget for Groceries is nearly used (95.0%)"
    assert by_category["fuel"].alert_type == AlertType.over
    assert by_category["fuel"].message == "Budget for fuel is exceeded"


def test_progress_for_period_carries_category_names() -> None:
    budgets = [make_budget(category_id="cat-1"), make_budget(category_id="cat-2")]

    rows = progress_for_period(budgets, [], date(2024, 3, 1), category_names={"cat-1": "Boodschappen"})

    names = {r.category_id: r.category_name for r in rows}
    assert names == {"cat-1": "Boodschappen", "cat-2": None}
