import threading
import unittest
from decimal import Decimal

from ledger.currency_conversion import RateProviderUnavailable, RateTable, RefreshingRateProvider
from ledger.rate_refresher import RateRefresher


class CountingSource:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.calls = 0
        self.fetched = threading.Event()

    def fetch_table(self) -> RateTable:
        self.calls += 1
        self.fetched.set()
        if self.fail:
            raise RateProviderUnavailable("offline")
        return RateTable({"UYU": Decimal("41")}, fetched_at=1000.0)


class RateRefresherTests(unittest.TestCase):
    def test_refresh_if_stale_fetches_only_when_stale(self) -> None:
        source = CountingSource()
        provider = RefreshingRateProvider(source=source, clock=lambda: 1000.0)
        refresher = RateRefresher(provider, interval_seconds=60)

        self.assertTrue(refresher.refresh_if_stale())
        self.assertFalse(refresher.refresh_if_stale())
        self.assertEqual(source.calls, 1)

    def test_refresh_now_ignores_staleness(self) -> None:
        source = CountingSource()
        provider = RefreshingRateProvider(source=source, clock=lambda: 1000.0)
        refresher = RateRefresher(provider, interval_seconds=60)

        refresher.refresh_now()
        refresher.refresh_now()

        self.assertEqual(source.calls, 2)

    def test_failed_refresh_keeps_fallback_rates(self) -> None:
        provider = RefreshingRateProvider(source=CountingSource(fail=True))
        refresher = RateRefresher(provider, interval_seconds=60)

        with self.assertLogs("ledger.currency_conversion", level="WARNING"):
            self.assertFalse(refresher.refresh_now())
        self.assertEqual(provider.get_rate("UYU"), Decimal("40"))

    def test_start_refreshes_stale_table_and_stop_joins(self) -> None:
        source = CountingSource()
        provider = RefreshingRateProvider(source=source, clock=lambda: 1000.0)
        refresher = RateRefresher(provider, interval_seconds=3600)

        refresher.start()
        try:
            self.assertTrue(source.fetched.wait(2))
            self.assertTrue(refresher.running)
        finally:
            refresher.stop()

        self.assertFalse(refresher.running)
        self.assertEqual(provider.get_rate("UYU"), Decimal("41"))

    def test_stop_without_start_is_noop(self) -> None:
        refresher = RateRefresher(RefreshingRateProvider(source=CountingSource()))

        refresher.stop()

        self.assertFalse(refresher.running)

    def test_rejects_non_positive_interval(self) -> None:
        with self.assertRaises(ValueError):
            RateRefresher(RefreshingRateProvider(source=CountingSource()), interval_seconds=0)


if __name__ == "__main__":
    unittest.main()
