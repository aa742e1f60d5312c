from __future__ import annotations

import logging
import threading

from ledger.currency_conversion import RefreshingRateProvider

logger = logging.getLogger(__name__)

STALE_AFTER_SECONDS = 12 * 60 * 60
REFRESH_INTERVAL_SECONDS = 6 * 60 * 60


class RateRefresher:
    """Background owner of exchange-rate polling.

    ``start()`` refreshes right away when the table is stale and then every
    ``interval_seconds``; ``stop()`` wakes the worker and joins it.
    """

    def __init__(
        self,
        provider: RefreshingRateProvider,
        interval_seconds: float = REFRESH_INTERVAL_SECONDS,
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be greater than zero.")
        self.provider = provider
        self.interval_seconds = interval_seconds
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def refresh_if_stale(self) -> bool:
        if not self.provider.is_stale():
            return False
        return self.provider.refresh()

    def refresh_now(self) -> bool:
        return self.provider.refresh()

    def start(self) -> None:
        if self.running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run,
            name="fx-rate-refresher",
            daemon=True,
        )
        self._thread.start()
        logger.info("Exchange rate refresher started (every %ss)", self.interval_seconds)

    def stop(self, timeout: float | None = 5) -> None:
        thread = self._thread
        if thread is None:
            return
        self._stop_event.set()
        thread.join(timeout)
        self._thread = None
        logger.info("Exchange rate refresher stopped")

    def _run(self) -> None:
        self.refresh_if_stale()
        while not self._stop_event.wait(self.interval_seconds):
            self.refresh_now()
