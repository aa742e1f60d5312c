from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Tuple

from ledger.balances import Movement, MovementKind, movement_kind, movement_magnitude
from ledger.currency_conversion import ZERO, Converter

HUNDRED = Decimal("100")
FAR_OVER_THRESHOLD = Decimal("110")
OVER_THRESHOLD = Decimal("100")
HIGH_THRESHOLD = Decimal("80")
LOW_USAGE_THRESHOLD = Decimal("30")

STATUS_NO_AMOUNT = "no amount set"
STATUS_FAR_OVER = "far over"
STATUS_OVER = "over"
STATUS_HIGH = "high"
STATUS_ON_TRACK = "on track"


@dataclass(frozen=True)
class Budget:
    id: int
    category: str
    limit: Decimal
    currency: str
    month: str
    note: Optional[str] = None


@dataclass(frozen=True)
class BudgetRow:
    budget_id: int
    category: str
    currency: str
    limit: Decimal
    spent: Decimal
    percent_used: Optional[Decimal]
    status: str


@dataclass(frozen=True)
class BudgetReport:
    month: str
    display_currency: str
    rows: List[BudgetRow] = field(default_factory=list)
    total_limit: Decimal = ZERO
    total_spent: Decimal = ZERO
    percent_used: Decimal = ZERO
    summary: str = "no_budgets"
    high_risk: List[BudgetRow] = field(default_factory=list)
    near_limit: List[BudgetRow] = field(default_factory=list)
    low_usage: List[BudgetRow] = field(default_factory=list)
    unbudgeted: List[Tuple[str, Decimal]] = field(default_factory=list)


def normalize_category(label: Optional[str]) -> str:
    return (label or "").strip().lower()


def budget_status(limit: Decimal, percent_used: Optional[Decimal]) -> str:
    if limit == ZERO or percent_used is None:
        return STATUS_NO_AMOUNT
    if percent_used >= FAR_OVER_THRESHOLD:
        return STATUS_FAR_OVER
    if percent_used >= OVER_THRESHOLD:
        return STATUS_OVER
    if percent_used >= HIGH_THRESHOLD:
        return STATUS_HIGH
    return STATUS_ON_TRACK


def budgets_for_month(budgets: Iterable[Budget], month: str) -> List[Budget]:
    return [budget for budget in budgets if budget.month == month]


def expenses_for_month(movements: Iterable[Movement], month: str) -> List[Movement]:
    return [
        movement
        for movement in movements
        if movement_kind(movement) == MovementKind.EXPENSE
        and movement.date is not None
        and movement.date.isoformat()[:7] == month
    ]


def evaluate_budgets(
    budgets: Iterable[Budget],
    movements: Iterable[Movement],
    month: str,
    converter: Converter,
) -> BudgetReport:
    month_budgets = budgets_for_month(budgets, month)
    expenses = expenses_for_month(movements, month)

    spent_by_category: Dict[str, Decimal] = {}
    for movement in expenses:
        key = normalize_category(movement.category)
        spent_by_category[key] = spent_by_category.get(key, ZERO) + converter.to_display(
            movement_magnitude(movement), movement.currency
        )

    rows = [
        _evaluate_row(budget, spent_by_category, converter) for budget in month_budgets
    ]

    total_limit = sum((row.limit for row in rows), ZERO)
    total_spent = sum((row.spent for row in rows), ZERO)
    percent_used = total_spent / total_limit * HUNDRED if total_limit > ZERO else ZERO

    return BudgetReport(
        month=month,
        display_currency=converter.display_currency,
        rows=rows,
        total_limit=total_limit,
        total_spent=total_spent,
        percent_used=percent_used,
        summary=_summary_key(rows, total_limit, percent_used, len(expenses)),
        high_risk=[row for row in rows if _used(row) >= OVER_THRESHOLD],
        near_limit=[row for row in rows if HIGH_THRESHOLD <= _used(row) < OVER_THRESHOLD],
        low_usage=[
            row for row in rows if row.spent > ZERO and _used(row) <= LOW_USAGE_THRESHOLD
        ],
        unbudgeted=unbudgeted_categories(month_budgets, expenses, converter),
    )


def unbudgeted_categories(
    month_budgets: Iterable[Budget],
    expenses: Iterable[Movement],
    converter: Converter,
) -> List[Tuple[str, Decimal]]:
    """Expense categories with spend but no budget, largest spend first."""
    budgeted = {normalize_category(budget.category) for budget in month_budgets}
    labels: Dict[str, str] = {}
    totals: Dict[str, Decimal] = {}
    for movement in expenses:
        label = (movement.category or "").strip()
        if not label:
            continue
        key = label.lower()
        if key in budgeted:
            continue
        labels.setdefault(key, label)
        totals[key] = totals.get(key, ZERO) + converter.to_display(
            movement_magnitude(movement), movement.currency
        )
    ordered = sorted(totals.items(), key=lambda item: item[1], reverse=True)
    return [(labels[key], total) for key, total in ordered]


def _evaluate_row(
    budget: Budget, spent_by_category: Dict[str, Decimal], converter: Converter
) -> BudgetRow:
    limit = converter.to_display(budget.limit, budget.currency)
    spent = spent_by_category.get(normalize_category(budget.category), ZERO)
    percent_used = spent / limit * HUNDRED if limit > ZERO else None
    return BudgetRow(
        budget_id=budget.id,
        category=budget.category,
        currency=budget.currency,
        limit=limit,
        spent=spent,
        percent_used=percent_used,
        status=budget_status(limit, percent_used),
    )


def _used(row: BudgetRow) -> Decimal:
    return row.percent_used if row.percent_used is not None else ZERO


def _summary_key(
    rows: List[BudgetRow], total_limit: Decimal, percent_used: Decimal, expense_count: int
) -> str:
    if not rows:
        return "no_budgets"
    if total_limit == ZERO:
        return "no_limits"
    if percent_used >= OVER_THRESHOLD:
        return "over"
    if percent_used >= HIGH_THRESHOLD:
        return "near_limit"
    if percent_used <= LOW_USAGE_THRESHOLD and expense_count > 0:
        return "low_usage"
    if expense_count == 0:
        return "no_expenses"
    return "on_track"
