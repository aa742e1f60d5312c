from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import date
from decimal import Decimal
from typing import Iterable, List, Optional

from ledger.currency_conversion import ZERO, coerce_amount

HUNDRED = Decimal("100")


@dataclass(frozen=True)
class SavingGoal:
    id: Optional[int]
    account_id: int
    label: str
    target_amount: Decimal
    current_amount: Decimal = ZERO
    deadline: Optional[date] = None


def goal_progress(goal: SavingGoal) -> Decimal:
    target = coerce_amount(goal.target_amount)
    if target <= ZERO:
        return ZERO
    return min(HUNDRED, coerce_amount(goal.current_amount) / target * HUNDRED)


def remaining_amount(goal: SavingGoal) -> Decimal:
    return max(ZERO, coerce_amount(goal.target_amount) - coerce_amount(goal.current_amount))


def contribute(goal: SavingGoal, amount: Decimal | int | str) -> SavingGoal:
    value = coerce_amount(amount)
    if not value:
        return goal
    return replace(goal, current_amount=coerce_amount(goal.current_amount) + value)


def goals_for_account(goals: Iterable[SavingGoal], account_id: int) -> List[SavingGoal]:
    return [goal for goal in goals if goal.account_id == account_id]
