from __future__ import annotations

from calendar import monthrange
from dataclasses import dataclass, replace
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, List, Optional

from ledger.currency_conversion import ZERO, coerce_amount, normalize_currency

DAYS_PER_YEAR = Decimal("365")
HUNDRED = Decimal("100")
CENT = Decimal("0.01")


class DepositStatus:
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    values = {ACTIVE, COMPLETED, CANCELLED}

    @classmethod
    def validate(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in cls.values:
            raise ValueError("Invalid term deposit status.")
        return normalized


@dataclass(frozen=True)
class TermDeposit:
    id: Optional[int]
    account_id: int
    currency: str
    principal: Decimal
    rate_annual: Decimal
    start_date: date
    end_date: date
    status: str = DepositStatus.ACTIVE


def add_months(start_date: date, months: int) -> date:
    total_month = start_date.month - 1 + months
    year = start_date.year + total_month // 12
    month = total_month % 12 + 1
    day = min(start_date.day, monthrange(year, month)[1])
    return date(year, month, day)


def create_term_deposit(
    account_id: int,
    currency: str,
    principal: Decimal | int | str,
    rate_annual: Decimal | int | str,
    start_date: date,
    months: int,
    deposit_id: Optional[int] = None,
) -> TermDeposit:
    principal_value = coerce_amount(principal)
    rate_value = coerce_amount(rate_annual)
    if principal_value <= ZERO:
        raise ValueError("principal must be greater than zero.")
    if rate_value < ZERO:
        raise ValueError("rate_annual must not be negative.")
    if months < 0:
        raise ValueError("months must not be negative.")
    return TermDeposit(
        id=deposit_id,
        account_id=account_id,
        currency=normalize_currency(currency),
        principal=principal_value,
        rate_annual=rate_value,
        start_date=start_date,
        end_date=add_months(start_date, months),
    )


def project_final_amount(
    principal: Decimal | int | str,
    rate_annual: Decimal | int | str,
    start_date: date,
    end_date: date,
) -> Decimal:
    """Compound growth over the deposit term on a 365-day year."""
    principal_value = coerce_amount(principal)
    growth = 1 + coerce_amount(rate_annual) / HUNDRED
    if growth <= ZERO:
        raise ValueError("rate_annual must be greater than -100.")
    days = max(0, (end_date - start_date).days)
    years = Decimal(days) / DAYS_PER_YEAR
    final = principal_value * growth ** years
    return final.quantize(CENT, rounding=ROUND_HALF_UP)


def projected_amount(deposit: TermDeposit) -> Decimal:
    return project_final_amount(
        deposit.principal, deposit.rate_annual, deposit.start_date, deposit.end_date
    )


def projected_interest(deposit: TermDeposit) -> Decimal:
    return projected_amount(deposit) - deposit.principal


def is_matured(deposit: TermDeposit, today: date) -> bool:
    return deposit.status == DepositStatus.ACTIVE and deposit.end_date <= today


def matured_deposits(deposits: Iterable[TermDeposit], today: date) -> List[TermDeposit]:
    return [deposit for deposit in deposits if is_matured(deposit, today)]


def complete_deposit(deposit: TermDeposit) -> TermDeposit:
    if deposit.status == DepositStatus.COMPLETED:
        return deposit
    if deposit.status == DepositStatus.CANCELLED:
        raise ValueError("Cancelled deposits cannot be completed.")
    return replace(deposit, status=DepositStatus.COMPLETED)


def cancel_deposit(deposit: TermDeposit) -> TermDeposit:
    if deposit.status == DepositStatus.CANCELLED:
        return deposit
    if deposit.status == DepositStatus.COMPLETED:
        raise ValueError("Completed deposits cannot be cancelled.")
    return replace(deposit, status=DepositStatus.CANCELLED)
