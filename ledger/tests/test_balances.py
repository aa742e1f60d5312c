import unittest
from datetime import date
from decimal import Decimal

from ledger.balances import (
    Account,
    Movement,
    MovementKind,
    apply_movement,
    balance_report,
    compute_balances,
    index_accounts,
    revert_movement,
)
from ledger.currency_conversion import Converter, StaticRateProvider


def movement(movement_id, kind, amount, currency="USD", **kwargs) -> Movement:
    return Movement(
        id=movement_id,
        date=kwargs.pop("date", date(2024, 5, 1)),
        kind=kind,
        amount=amount,
        currency=currency,
        **kwargs,
    )


class BalanceTests(unittest.TestCase):
    def setUp(self) -> None:
        self.converter = Converter(
            rate_provider=StaticRateProvider(rates={"USD": Decimal("1"), "UYU": Decimal("40")}),
            display_currency="USD",
        )
        self.accounts = [
            Account(id=1, name="Cash", currency="USD"),
            Account(id=2, name="Savings", currency="UYU"),
        ]

    def test_income_and_expense_adjust_single_account(self) -> None:
        balances = compute_balances(
            self.accounts,
            [
                movement(1, "INCOME", Decimal("100"), account_id=1),
                movement(2, "EXPENSE", Decimal("30"), account_id=1),
            ],
            self.converter,
        )

        self.assertEqual(balances, {1: Decimal("70"), 2: Decimal("0")})

    def test_transfer_preserves_total_in_display_currency(self) -> None:
        movements = [
            movement(1, "INCOME", Decimal("100"), account_id=1),
            movement(
                2,
                MovementKind.TRANSFER,
                Decimal("25"),
                from_account_id=1,
                to_account_id=2,
            ),
        ]

        before = balance_report(self.accounts, movements[:1], self.converter)
        after = balance_report(self.accounts, movements, self.converter)

        self.assertEqual(after.total, before.total)
        self.assertEqual(after.rows[0].native_balance, Decimal("75"))
        self.assertEqual(after.rows[1].native_balance, Decimal("1000"))

    def test_movement_currency_converted_into_account_currency(self) -> None:
        balances = compute_balances(
            self.accounts,
            [movement(1, "GASTO", Decimal("400"), currency="UYU", account_id=1)],
            self.converter,
        )

        self.assertEqual(balances[1], Decimal("-10"))

    def test_apply_then_revert_is_identity(self) -> None:
        index = index_accounts(self.accounts)
        balances = {1: Decimal("12.34"), 2: Decimal("500")}
        transfer = movement(
            9, "TRANSFER", Decimal("3.21"), from_account_id=1, to_account_id=2
        )

        apply_movement(balances, index, transfer, self.converter)
        revert_movement(balances, index, transfer, self.converter)

        self.assertEqual(balances, {1: Decimal("12.34"), 2: Decimal("500")})

    def test_missing_account_is_ignored(self) -> None:
        balances = compute_balances(
            self.accounts,
            [
                movement(1, "INCOME", Decimal("50"), account_id=99),
                movement(2, "TRANSFER", Decimal("5"), from_account_id=99, to_account_id=1),
            ],
            self.converter,
        )

        self.assertEqual(balances, {1: Decimal("5"), 2: Decimal("0")})

    def test_bad_amount_and_unknown_kind_count_as_zero(self) -> None:
        balances = compute_balances(
            self.accounts,
            [
                movement(1, "INCOME", "not a number", account_id=1),
                movement(2, "REFUND", Decimal("10"), account_id=1),
            ],
            self.converter,
        )

        self.assertEqual(balances[1], Decimal("0"))

    def test_share_and_richest_account(self) -> None:
        report = balance_report(
            self.accounts,
            [
                movement(1, "INCOME", Decimal("30"), account_id=1),
                movement(2, "INCOME", Decimal("2800"), currency="UYU", account_id=2),
            ],
            self.converter,
        )

        self.assertEqual(report.total, Decimal("100"))
        self.assertEqual(report.rows[0].share, Decimal("30"))
        self.assertEqual(report.rows[1].share, Decimal("70"))
        self.assertEqual(report.richest.account_id, 2)
        self.assertEqual(
            report.totals_by_currency, {"USD": Decimal("30"), "UYU": Decimal("2800")}
        )

    def test_richest_tie_keeps_first_account(self) -> None:
        report = balance_report(
            self.accounts,
            [
                movement(1, "INCOME", Decimal("10"), account_id=1),
                movement(2, "INCOME", Decimal("400"), currency="UYU", account_id=2),
            ],
            self.converter,
        )

        self.assertEqual(report.richest.account_id, 1)

    def test_share_is_zero_when_total_is_not_positive(self) -> None:
        report = balance_report(
            self.accounts,
            [movement(1, "EXPENSE", Decimal("10"), account_id=1)],
            self.converter,
        )

        self.assertEqual(report.total, Decimal("-10"))
        self.assertEqual([row.share for row in report.rows], [Decimal("0"), Decimal("0")])

    def test_empty_accounts_produce_empty_report(self) -> None:
        report = balance_report([], [], self.converter)

        self.assertEqual(report.rows, [])
        self.assertIsNone(report.richest)
        self.assertEqual(report.total, Decimal("0"))


if __name__ == "__main__":
    unittest.main()
