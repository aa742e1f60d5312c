"""Time-bucketed cashflow views over a list of movements.

Every amount is converted to the converter's display currency at aggregation
time. Month keys are ``YYYY-MM`` and day keys ``YYYY-MM-DD``; both are
zero-padded so string order matches chronological order.
"""
from __future__ import annotations

from calendar import monthrange
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Tuple, Union

from ledger.balances import (
    Account,
    Movement,
    MovementKind,
    movement_kind,
    movement_magnitude,
)
from ledger.budget_engine import normalize_category
from ledger.currency_conversion import ZERO, Converter, coerce_amount

HUNDRED = Decimal("100")
DEFAULT_WINDOW_MONTHS = 6
DEFAULT_INCOME_LABEL = "Income"
DEFAULT_EXPENSE_LABEL = "Expenses"
UNKNOWN_ACCOUNT_LABEL = "Unknown account"
UNCATEGORIZED_LABEL = "Uncategorized"

MonthRef = Union[str, date]


@dataclass(frozen=True)
class MonthlyBucket:
    month: str
    income: Decimal = ZERO
    expense: Decimal = ZERO
    net: Decimal = ZERO


@dataclass(frozen=True)
class CalendarDay:
    date: str
    income: Decimal = ZERO
    expense: Decimal = ZERO
    net: Decimal = ZERO
    is_positive: bool = True


@dataclass(frozen=True)
class MonthlyCalendar:
    year: int
    month: int
    days: List[CalendarDay] = field(default_factory=list)


@dataclass(frozen=True)
class SankeyNode:
    id: str
    name: str
    type: str  # "income" | "account" | "category"


@dataclass(frozen=True)
class SankeyLink:
    source: str
    target: str
    value: Decimal


@dataclass(frozen=True)
class SankeyGraph:
    nodes: List[SankeyNode] = field(default_factory=list)
    links: List[SankeyLink] = field(default_factory=list)


@dataclass(frozen=True)
class SpendingInsight:
    current_month: str
    previous_month: str
    current_expense: Decimal
    previous_expense: Decimal
    total_delta: Decimal
    total_delta_percent: Decimal
    top_category: Optional[str] = None
    top_category_delta: Decimal = ZERO
    top_category_delta_percent: Decimal = ZERO


@dataclass(frozen=True)
class CategoryChange:
    name: str
    current_total: Decimal
    previous_total: Decimal
    abs_change: Decimal
    pct_change: Optional[Decimal]


@dataclass(frozen=True)
class MovementTotals:
    income: Decimal = ZERO
    expense: Decimal = ZERO
    transfer: Decimal = ZERO


def month_key(value: date) -> str:
    return f"{value.year:04d}-{value.month:02d}"


def day_key(value: date) -> str:
    return f"{value.year:04d}-{value.month:02d}-{value.day:02d}"


def parse_month_key(value: MonthRef) -> Tuple[int, int]:
    if isinstance(value, date):
        return value.year, value.month
    try:
        year_text, month_text = value.strip().split("-")[:2]
        year, month = int(year_text), int(month_text)
    except (AttributeError, ValueError) as exc:
        raise ValueError("Invalid month format. Use YYYY-MM.") from exc
    if not 1 <= month <= 12:
        raise ValueError("Invalid month format. Use YYYY-MM.")
    return year, month


def shift_month(year: int, month: int, months: int) -> Tuple[int, int]:
    month_index = (year * 12 + month - 1) + months
    return month_index // 12, month_index % 12 + 1


def trailing_month_keys(end_month: MonthRef, count: int = DEFAULT_WINDOW_MONTHS) -> List[str]:
    """``count`` contiguous month keys ending at ``end_month``, oldest first."""
    if count <= 0:
        raise ValueError("count must be greater than zero.")
    year, month = parse_month_key(end_month)
    keys = []
    for offset in range(count - 1, -1, -1):
        shifted_year, shifted_month = shift_month(year, month, -offset)
        keys.append(f"{shifted_year:04d}-{shifted_month:02d}")
    return keys


def monthly_cashflow(
    movements: Iterable[Movement],
    converter: Converter,
    end_month: MonthRef,
    months: int = DEFAULT_WINDOW_MONTHS,
) -> List[MonthlyBucket]:
    keys = trailing_month_keys(end_month, months)
    totals: Dict[str, List[Decimal]] = {key: [ZERO, ZERO] for key in keys}
    for movement in movements:
        if movement.date is None:
            continue
        bucket = totals.get(month_key(movement.date))
        if bucket is None:
            continue
        _accumulate(bucket, movement, converter)
    return [
        MonthlyBucket(month=key, income=income, expense=expense, net=income - expense)
        for key, (income, expense) in totals.items()
    ]


def daily_calendar(
    movements: Iterable[Movement],
    converter: Converter,
    year: int,
    month: int,
) -> MonthlyCalendar:
    if not 1 <= month <= 12:
        raise ValueError("month must be between 1 and 12.")
    last_day = monthrange(year, month)[1]
    totals: Dict[str, List[Decimal]] = {
        day_key(date(year, month, day)): [ZERO, ZERO] for day in range(1, last_day + 1)
    }
    for movement in movements:
        if movement.date is None:
            continue
        bucket = totals.get(day_key(movement.date))
        if bucket is None:
            continue
        _accumulate(bucket, movement, converter)

    days = []
    for key, (income, expense) in totals.items():
        net = income - expense
        days.append(
            CalendarDay(date=key, income=income, expense=expense, net=net, is_positive=net >= ZERO)
        )
    return MonthlyCalendar(year=year, month=month, days=days)


def cashflow_sankey(
    movements: Iterable[Movement],
    accounts: Iterable[Account],
    year: Optional[int] = None,
    month: Optional[int] = None,
    converter: Optional[Converter] = None,
) -> SankeyGraph:
    """Income category -> account -> expense category flow graph.

    Node ids derive only from category text and account id, so the same data
    always yields the same graph.
    """
    account_names = {account.id: account.name for account in accounts}
    target_month = f"{year:04d}-{month:02d}" if year is not None and month is not None else None

    nodes: Dict[str, SankeyNode] = {}
    links: Dict[Tuple[str, str], Decimal] = {}

    def ensure_node(node_id: str, name: str, node_type: str) -> None:
        if node_id not in nodes:
            nodes[node_id] = SankeyNode(id=node_id, name=name, type=node_type)

    def add_link(source: str, target: str, value: Decimal) -> None:
        links[(source, target)] = links.get((source, target), ZERO) + value

    for movement in movements:
        kind = movement_kind(movement)
        if kind not in (MovementKind.INCOME, MovementKind.EXPENSE):
            continue
        if target_month is not None and (
            movement.date is None or month_key(movement.date) != target_month
        ):
            continue
        amount = coerce_amount(movement.amount)
        if amount <= ZERO:
            continue
        if converter is not None:
            amount = converter.to_display(amount, movement.currency)

        default_label = DEFAULT_INCOME_LABEL if kind == MovementKind.INCOME else DEFAULT_EXPENSE_LABEL
        category = (movement.category or "").strip() or default_label

        account_ref = movement.account_id if movement.account_id is not None else "unknown"
        account_node = f"account:{account_ref}"
        ensure_node(account_node, account_names.get(movement.account_id, UNKNOWN_ACCOUNT_LABEL), "account")

        if kind == MovementKind.INCOME:
            income_node = f"income:{category}"
            ensure_node(income_node, category, "income")
            add_link(income_node, account_node, amount)
        else:
            category_node = f"category:{category}"
            ensure_node(category_node, category, "category")
            add_link(account_node, category_node, amount)

    return SankeyGraph(
        nodes=list(nodes.values()),
        links=[
            SankeyLink(source=source, target=target, value=value)
            for (source, target), value in links.items()
        ],
    )


def spending_insight(
    movements: Iterable[Movement],
    converter: Converter,
    current_month: MonthRef,
    previous_month: Optional[MonthRef] = None,
) -> SpendingInsight:
    year, month = parse_month_key(current_month)
    current_key = f"{year:04d}-{month:02d}"
    if previous_month is None:
        prev_year, prev_month = shift_month(year, month, -1)
    else:
        prev_year, prev_month = parse_month_key(previous_month)
    previous_key = f"{prev_year:04d}-{prev_month:02d}"

    movement_list = list(movements)
    current_totals, current_labels = _expense_by_category(movement_list, converter, current_key)
    previous_totals, _ = _expense_by_category(movement_list, converter, previous_key)
    current_expense = _month_expense(movement_list, converter, current_key)
    previous_expense = _month_expense(movement_list, converter, previous_key)

    top_category: Optional[str] = None
    top_delta = ZERO
    top_delta_percent = ZERO
    for key, current_value in current_totals.items():
        previous_value = previous_totals.get(key, ZERO)
        delta = current_value - previous_value
        if delta > top_delta:
            top_delta = delta
            top_delta_percent = delta / previous_value * HUNDRED if previous_value > ZERO else HUNDRED
            top_category = current_labels[key]

    total_delta = current_expense - previous_expense
    return SpendingInsight(
        current_month=current_key,
        previous_month=previous_key,
        current_expense=current_expense,
        previous_expense=previous_expense,
        total_delta=total_delta,
        total_delta_percent=(
            total_delta / previous_expense * HUNDRED if previous_expense > ZERO else ZERO
        ),
        top_category=top_category,
        top_category_delta=top_delta,
        top_category_delta_percent=top_delta_percent,
    )


def category_report(
    movements: Iterable[Movement],
    converter: Converter,
    year: int,
    month: int,
    kind: str = MovementKind.EXPENSE,
) -> List[CategoryChange]:
    """Per-category totals for a month against the month before it."""
    normalized_kind = MovementKind.validate(kind)
    if normalized_kind == MovementKind.TRANSFER:
        raise ValueError("Category reports support income or expense only.")
    current_key = f"{year:04d}-{month:02d}"
    prev_year, prev_month = shift_month(year, month, -1)
    previous_key = f"{prev_year:04d}-{prev_month:02d}"

    movement_list = list(movements)
    current_totals, labels = _totals_by_category(
        movement_list, converter, current_key, normalized_kind, UNCATEGORIZED_LABEL
    )
    previous_totals, previous_labels = _totals_by_category(
        movement_list, converter, previous_key, normalized_kind, UNCATEGORIZED_LABEL
    )
    for key, label in previous_labels.items():
        labels.setdefault(key, label)

    rows = []
    for key, label in labels.items():
        current_total = current_totals.get(key, ZERO)
        previous_total = previous_totals.get(key, ZERO)
        abs_change = current_total - previous_total
        rows.append(
            CategoryChange(
                name=label,
                current_total=current_total,
                previous_total=previous_total,
                abs_change=abs_change,
                pct_change=abs_change / previous_total * HUNDRED if previous_total > ZERO else None,
            )
        )
    rows.sort(key=lambda row: row.current_total, reverse=True)
    return rows


def filter_movements(
    movements: Iterable[Movement],
    query: Optional[str] = None,
    kind: Optional[str] = None,
    category: Optional[str] = None,
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
) -> List[Movement]:
    """Search movements, newest first."""
    normalized_kind = MovementKind.validate(kind) if kind else None
    needle = query.strip().lower() if query else ""
    matches = []
    for movement in movements:
        if needle:
            haystack = " ".join(
                str(part)
                for part in (movement.category or "", movement.account_id or "", movement.note or "")
            ).lower()
            if needle not in haystack:
                continue
        if normalized_kind and movement_kind(movement) != normalized_kind:
            continue
        if category and movement.category != category:
            continue
        if date_from and (movement.date is None or movement.date < date_from):
            continue
        if date_to and (movement.date is None or movement.date > date_to):
            continue
        matches.append(movement)
    return sorted(matches, key=lambda movement: movement.date or date.min, reverse=True)


def movement_totals(movements: Iterable[Movement], converter: Converter) -> MovementTotals:
    income = expense = transfer = ZERO
    for movement in movements:
        amount = converter.to_display(movement_magnitude(movement), movement.currency)
        kind = movement_kind(movement)
        if kind == MovementKind.INCOME:
            income += amount
        elif kind == MovementKind.EXPENSE:
            expense += amount
        elif kind == MovementKind.TRANSFER:
            transfer += amount
    return MovementTotals(income=income, expense=expense, transfer=transfer)


def _accumulate(bucket: List[Decimal], movement: Movement, converter: Converter) -> None:
    kind = movement_kind(movement)
    if kind not in (MovementKind.INCOME, MovementKind.EXPENSE):
        return
    amount = converter.to_display(movement_magnitude(movement), movement.currency)
    if kind == MovementKind.INCOME:
        bucket[0] += amount
    else:
        bucket[1] += amount


def _month_expense(
    movements: Iterable[Movement], converter: Converter, target_month: str
) -> Decimal:
    bucket = [ZERO, ZERO]
    for movement in movements:
        if movement.date is not None and month_key(movement.date) == target_month:
            _accumulate(bucket, movement, converter)
    return bucket[1]


def _expense_by_category(
    movements: Iterable[Movement], converter: Converter, target_month: str
) -> Tuple[Dict[str, Decimal], Dict[str, str]]:
    return _totals_by_category(movements, converter, target_month, MovementKind.EXPENSE, None)


def _totals_by_category(
    movements: Iterable[Movement],
    converter: Converter,
    target_month: str,
    kind: str,
    blank_label: Optional[str],
) -> Tuple[Dict[str, Decimal], Dict[str, str]]:
    totals: Dict[str, Decimal] = {}
    labels: Dict[str, str] = {}
    for movement in movements:
        if movement_kind(movement) != kind or movement.date is None:
            continue
        if month_key(movement.date) != target_month:
            continue
        label = (movement.category or "").strip()
        if not label:
            if blank_label is None:
                continue
            label = blank_label
        key = normalize_category(label)
        labels.setdefault(key, label)
        totals[key] = totals.get(key, ZERO) + converter.to_display(
            movement_magnitude(movement), movement.currency
        )
    return totals, labels
