import unittest
from decimal import Decimal

from ledger.currency_conversion import (
    Converter,
    RateProviderUnavailable,
    RateTable,
    RefreshingRateProvider,
    StaticRateProvider,
    coerce_amount,
    convert_amount,
    format_amount,
    normalize_currency,
)


class FakeSource:
    def __init__(self, tables) -> None:
        self.tables = list(tables)
        self.calls = 0

    def fetch_table(self) -> RateTable:
        self.calls += 1
        result = self.tables.pop(0)
        if isinstance(result, Exception):
            raise result
        return result


class CurrencyConversionTests(unittest.TestCase):
    def setUp(self) -> None:
        self.provider = StaticRateProvider(
            rates={
                "USD": Decimal("1"),
                "EUR": Decimal("2"),
                "JPY": Decimal("4"),
            }
        )

    def test_same_currency_returns_original_amount(self) -> None:
        amount = convert_amount(
            Decimal("12.50"),
            "USD",
            "USD",
            rate_provider=self.provider,
        )

        self.assertEqual(amount, Decimal("12.50"))

    def test_same_currency_is_exact_for_unknown_codes(self) -> None:
        amount = convert_amount(Decimal("0.10"), "XYZ", "xyz", rate_provider=self.provider)

        self.assertEqual(amount, Decimal("0.10"))

    def test_conversion_goes_through_reference_currency(self) -> None:
        amount = convert_amount(
            Decimal("10"),
            "EUR",
            "JPY",
            rate_provider=self.provider,
        )

        self.assertEqual(amount, Decimal("20"))

    def test_normalizes_currency_codes(self) -> None:
        amount = convert_amount(
            Decimal("6"),
            " eur ",
            "jpy",
            rate_provider=self.provider,
        )

        self.assertEqual(amount, Decimal("12"))

    def test_default_table_converts_usd_to_uyu(self) -> None:
        amount = convert_amount(Decimal("100"), "USD", "UYU")

        self.assertEqual(amount, Decimal("4000"))

    def test_round_trip_returns_close_to_original(self) -> None:
        provider = StaticRateProvider()
        there = convert_amount(Decimal("123.45"), "EUR", "ARS", rate_provider=provider)
        back = convert_amount(there, "ARS", "EUR", rate_provider=provider)

        self.assertAlmostEqual(back, Decimal("123.45"), places=6)

    def test_missing_currency_falls_back_to_default_table(self) -> None:
        amount = convert_amount(
            Decimal("5.5"),
            "BRL",
            "USD",
            rate_provider=self.provider,
        )

        self.assertEqual(amount, Decimal("1"))

    def test_currency_unknown_everywhere_uses_rate_one(self) -> None:
        amount = convert_amount(Decimal("7"), "XYZ", "USD", rate_provider=self.provider)

        self.assertEqual(amount, Decimal("7"))

    def test_invalid_currency_code_raises(self) -> None:
        with self.assertRaises(ValueError):
            convert_amount(Decimal("5"), "US", "USD", rate_provider=self.provider)

    def test_rate_table_forces_reference_to_one_and_drops_bad_rates(self) -> None:
        table = RateTable({"USD": Decimal("3"), "EUR": Decimal("0"), "uyu": "39.5", "b4d": 1})

        self.assertEqual(table.rates, {"USD": Decimal("1"), "UYU": Decimal("39.5")})

    def test_normalize_currency(self) -> None:
        self.assertEqual(normalize_currency(" uyu "), "UYU")
        with self.assertRaises(ValueError):
            normalize_currency("U5D")


class ConverterTests(unittest.TestCase):
    def test_invalid_codes_fall_back_to_display_currency(self) -> None:
        converter = Converter(display_currency="UYU")

        self.assertEqual(converter.convert(Decimal("10"), None), Decimal("10"))
        self.assertEqual(converter.convert(Decimal("10"), "not-a-code"), Decimal("10"))

    def test_bad_amount_counts_as_zero(self) -> None:
        converter = Converter()

        self.assertEqual(converter.to_display("abc", "EUR"), Decimal("0"))
        self.assertEqual(converter.to_display(None, "EUR"), Decimal("0"))

    def test_to_display_uses_display_currency(self) -> None:
        converter = Converter(display_currency="uyu")

        self.assertEqual(converter.display_currency, "UYU")
        self.assertEqual(converter.to_display(Decimal("2"), "USD"), Decimal("80"))


class CoerceAmountTests(unittest.TestCase):
    def test_handles_strings_numbers_and_garbage(self) -> None:
        self.assertEqual(coerce_amount("12.30"), Decimal("12.30"))
        self.assertEqual(coerce_amount(4), Decimal("4"))
        self.assertEqual(coerce_amount("NaN"), Decimal("0"))
        self.assertEqual(coerce_amount("Infinity"), Decimal("0"))
        self.assertEqual(coerce_amount(True), Decimal("0"))
        self.assertEqual(coerce_amount([]), Decimal("0"))


class RefreshingRateProviderTests(unittest.TestCase):
    def test_uses_fallback_until_first_refresh(self) -> None:
        provider = RefreshingRateProvider(source=FakeSource([]))

        self.assertTrue(provider.is_stale())
        self.assertEqual(provider.get_rate("UYU"), Decimal("40"))

    def test_successful_refresh_replaces_table(self) -> None:
        source = FakeSource([RateTable({"UYU": Decimal("42")}, fetched_at=100.0)])
        provider = RefreshingRateProvider(source=source, clock=lambda: 100.0)

        self.assertTrue(provider.refresh())
        self.assertEqual(provider.get_rate("UYU"), Decimal("42"))
        self.assertEqual(provider.get_rate("EUR"), Decimal("0.92"))
        self.assertFalse(provider.is_stale())

    def test_failed_refresh_keeps_previous_table(self) -> None:
        source = FakeSource(
            [
                RateTable({"UYU": Decimal("42")}, fetched_at=100.0),
                RateProviderUnavailable("down"),
            ]
        )
        provider = RefreshingRateProvider(source=source, clock=lambda: 100.0)
        provider.refresh()

        with self.assertLogs("ledger.currency_conversion", level="WARNING"):
            self.assertFalse(provider.refresh())
        self.assertEqual(provider.get_rate("UYU"), Decimal("42"))
        self.assertEqual(provider.last_refreshed_at, 100.0)

    def test_table_becomes_stale_after_threshold(self) -> None:
        now = [0.0]
        source = FakeSource([RateTable({"UYU": Decimal("42")}, fetched_at=0.0)])
        provider = RefreshingRateProvider(
            source=source, stale_after_seconds=60, clock=lambda: now[0]
        )
        provider.refresh()

        now[0] = 60.0
        self.assertFalse(provider.is_stale())
        now[0] = 61.0
        self.assertTrue(provider.is_stale())

    def test_snapshot_merges_live_rates_over_defaults(self) -> None:
        source = FakeSource([RateTable({"UYU": Decimal("41")}, fetched_at=1.0)])
        provider = RefreshingRateProvider(source=source)
        provider.refresh()

        snapshot = provider.snapshot()
        self.assertEqual(snapshot["UYU"], Decimal("41"))
        self.assertEqual(snapshot["ARS"], Decimal("900"))
        self.assertEqual(snapshot["USD"], Decimal("1"))


class FormatAmountTests(unittest.TestCase):
    def test_formats_es_uy_by_default(self) -> None:
        self.assertEqual(format_amount(Decimal("1234.5"), "USD"), "US$ 1.234,50")

    def test_formats_en_us(self) -> None:
        self.assertEqual(format_amount(Decimal("1234567.891"), "USD", "en-US"), "$1,234,567.89")

    def test_formats_negative_amounts(self) -> None:
        self.assertEqual(format_amount(Decimal("-50"), "UYU"), "-$ 50,00")

    def test_unknown_symbol_uses_code(self) -> None:
        self.assertEqual(format_amount(Decimal("3"), "CHF", "pt-BR"), "CHF 3,00")


if __name__ == "__main__":
    unittest.main()
