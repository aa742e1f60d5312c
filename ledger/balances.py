from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
import logging
from typing import Dict, Iterable, List, Mapping, MutableMapping, Optional, Tuple

from ledger.currency_conversion import ZERO, Converter, coerce_amount

logger = logging.getLogger(__name__)

HUNDRED = Decimal("100")


class MovementKind:
    INCOME = "INCOME"
    EXPENSE = "EXPENSE"
    TRANSFER = "TRANSFER"
    values = {INCOME, EXPENSE, TRANSFER}
    aliases = {"INGRESO": INCOME, "GASTO": EXPENSE, "TRANSFERENCIA": TRANSFER}

    @classmethod
    def validate(cls, value: str) -> str:
        normalized = value.strip().upper()
        normalized = cls.aliases.get(normalized, normalized)
        if normalized not in cls.values:
            raise ValueError("Invalid movement kind.")
        return normalized


@dataclass(frozen=True)
class Account:
    id: int
    name: str
    currency: str


@dataclass(frozen=True)
class Movement:
    id: int
    date: date
    kind: str
    amount: Decimal
    currency: str
    category: Optional[str] = None
    account_id: Optional[int] = None
    from_account_id: Optional[int] = None
    to_account_id: Optional[int] = None
    note: Optional[str] = None


@dataclass(frozen=True)
class BalanceRow:
    account_id: int
    name: str
    currency: str
    native_balance: Decimal
    converted_balance: Decimal
    share: Decimal


@dataclass(frozen=True)
class BalanceReport:
    display_currency: str
    rows: List[BalanceRow] = field(default_factory=list)
    total: Decimal = ZERO
    richest: Optional[BalanceRow] = None
    totals_by_currency: Dict[str, Decimal] = field(default_factory=dict)


def movement_kind(movement: Movement) -> Optional[str]:
    try:
        return MovementKind.validate(movement.kind)
    except (ValueError, AttributeError):
        return None


def movement_magnitude(movement: Movement) -> Decimal:
    return abs(coerce_amount(movement.amount))


def movement_deltas(movement: Movement) -> List[Tuple[Optional[int], Decimal]]:
    """Signed per-account contributions of one movement, in its own currency."""
    kind = movement_kind(movement)
    amount = movement_magnitude(movement)
    if kind == MovementKind.INCOME:
        return [(movement.account_id, amount)]
    if kind == MovementKind.EXPENSE:
        return [(movement.account_id, -amount)]
    if kind == MovementKind.TRANSFER:
        return [
            (movement.from_account_id, -amount),
            (movement.to_account_id, amount),
        ]
    return []


def apply_movement(
    balances: MutableMapping[int, Decimal],
    accounts: Mapping[int, Account],
    movement: Movement,
    converter: Converter,
    sign: int = 1,
) -> MutableMapping[int, Decimal]:
    for account_id, delta in movement_deltas(movement):
        if account_id is None or not delta:
            continue
        account = accounts.get(account_id)
        if account is None:
            logger.debug(
                "Movement %s references missing account %s, skipping",
                movement.id,
                account_id,
            )
            continue
        converted = converter.convert(delta, movement.currency, account.currency)
        balances[account_id] = balances.get(account_id, ZERO) + converted * sign
    return balances


def revert_movement(
    balances: MutableMapping[int, Decimal],
    accounts: Mapping[int, Account],
    movement: Movement,
    converter: Converter,
) -> MutableMapping[int, Decimal]:
    return apply_movement(balances, accounts, movement, converter, sign=-1)


def index_accounts(accounts: Iterable[Account]) -> Dict[int, Account]:
    return {account.id: account for account in accounts}


def compute_balances(
    accounts: Iterable[Account],
    movements: Iterable[Movement],
    converter: Converter,
) -> Dict[int, Decimal]:
    """Native-currency balance per account, in account order."""
    account_index = index_accounts(accounts)
    balances: Dict[int, Decimal] = {account_id: ZERO for account_id in account_index}
    for movement in movements:
        apply_movement(balances, account_index, movement, converter)
    return balances


def balance_report(
    accounts: Iterable[Account],
    movements: Iterable[Movement],
    converter: Converter,
) -> BalanceReport:
    account_list = list(accounts)
    display_currency = converter.display_currency
    balances = compute_balances(account_list, movements, converter)

    total = ZERO
    converted: List[Tuple[Account, Decimal, Decimal]] = []
    totals_by_currency: Dict[str, Decimal] = {}
    for account in account_list:
        native = balances.get(account.id, ZERO)
        in_display = converter.convert(native, account.currency, display_currency)
        total += in_display
        converted.append((account, native, in_display))
        totals_by_currency[account.currency] = (
            totals_by_currency.get(account.currency, ZERO) + native
        )

    rows = [
        BalanceRow(
            account_id=account.id,
            name=account.name,
            currency=account.currency,
            native_balance=native,
            converted_balance=in_display,
            share=(in_display / total * HUNDRED) if total > ZERO else ZERO,
        )
        for account, native, in_display in converted
    ]

    return BalanceReport(
        display_currency=display_currency,
        rows=rows,
        total=total,
        richest=richest_account(rows),
        totals_by_currency=totals_by_currency,
    )


def richest_account(rows: List[BalanceRow]) -> Optional[BalanceRow]:
    if not rows:
        return None
    richest = rows[0]
    for row in rows[1:]:
        if row.converted_balance > richest.converted_balance:
            richest = row
    return richest
