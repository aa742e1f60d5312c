from __future__ import annotations

from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
import json
import logging
import threading
import time
from typing import Callable, Mapping, Protocol
from urllib.error import HTTPError, URLError
from urllib.parse import urlencode
from urllib.request import urlopen

logger = logging.getLogger(__name__)

ZERO = Decimal("0")
ONE = Decimal("1")
CENT = Decimal("0.01")

REFERENCE_CURRENCY = "USD"

DEFAULT_RATES: dict[str, Decimal] = {
    "USD": Decimal("1"),
    "EUR": Decimal("0.92"),
    "UYU": Decimal("40"),
    "ARS": Decimal("900"),
    "BRL": Decimal("5.5"),
    "GBP": Decimal("0.79"),
    "JPY": Decimal("147.50"),
    "CAD": Decimal("1.34"),
    "AUD": Decimal("1.52"),
    "CHF": Decimal("0.88"),
}

DEFAULT_SYMBOLS = ("EUR", "UYU", "ARS", "BRL")


class RateProvider(Protocol):
    def get_rate(self, currency: str) -> Decimal:
        ...


class RateProviderUnavailable(RuntimeError):
    """Raised when a rate source cannot deliver a usable table."""


@dataclass(frozen=True)
class RateTable:
    """Snapshot of rates expressed as units of currency per 1 reference unit."""

    rates: Mapping[str, Decimal]
    fetched_at: float | None = None
    reference: str = REFERENCE_CURRENCY

    def __post_init__(self) -> None:
        cleaned: dict[str, Decimal] = {}
        for code, value in self.rates.items():
            try:
                normalized = normalize_currency(code)
            except ValueError:
                continue
            rate = coerce_amount(value)
            if rate > ZERO:
                cleaned[normalized] = rate
        cleaned[normalize_currency(self.reference)] = ONE
        object.__setattr__(self, "rates", cleaned)

    def lookup(self, currency: str) -> Decimal | None:
        return self.rates.get(currency)


def _default_rate(currency: str) -> Decimal:
    rate = DEFAULT_RATES.get(currency)
    if rate is None:
        logger.debug("No rate known for %s, treating it as the reference currency", currency)
        return ONE
    return rate


@dataclass(frozen=True)
class StaticRateProvider:
    """Deterministic, in-memory FX rates.

    Rates are expressed as target currency per 1 USD. A currency missing from
    the configured table falls back to DEFAULT_RATES and then to 1.
    """

    rates: Mapping[str, Decimal] = None

    def __post_init__(self) -> None:
        table = RateTable(self.rates if self.rates is not None else DEFAULT_RATES)
        object.__setattr__(self, "rates", table.rates)

    def get_rate(self, currency: str) -> Decimal:
        normalized = normalize_currency(currency)
        rate = self.rates.get(normalized)
        if rate is None:
            return _default_rate(normalized)
        return rate


@dataclass
class ExchangeRateHostProvider:
    """Fetches the latest reference-based table from an exchangerate.host style API."""

    base_url: str = "https://api.exchangerate.host/latest"
    base_currency: str = REFERENCE_CURRENCY
    symbols: tuple[str, ...] = DEFAULT_SYMBOLS
    timeout: float = 8

    def fetch_table(self) -> RateTable:
        base_currency = normalize_currency(self.base_currency)
        query = urlencode({"base": base_currency, "symbols": ",".join(self.symbols)})
        url = f"{self.base_url}?{query}"
        try:
            with urlopen(url, timeout=self.timeout) as response:
                payload = json.load(response)
        except (HTTPError, URLError, TimeoutError, OSError, json.JSONDecodeError) as exc:
            raise RateProviderUnavailable("Exchange rate API unavailable") from exc

        rates = payload.get("rates") if isinstance(payload, dict) else None
        if not isinstance(rates, dict):
            raise RateProviderUnavailable("Exchange rate response missing rates")

        parsed: dict[str, Decimal] = {}
        for code in self.symbols:
            normalized = normalize_currency(code)
            value = coerce_amount(rates.get(normalized))
            parsed[normalized] = value if value > ZERO else _default_rate(normalized)
        return RateTable(parsed, fetched_at=time.time(), reference=base_currency)


@dataclass
class RefreshingRateProvider:
    """Process-wide rate table that keeps the last good snapshot.

    Readers always see the last successfully fetched table; a failed refresh
    leaves it in place.
    """

    source: ExchangeRateHostProvider
    fallback: StaticRateProvider = field(default_factory=StaticRateProvider)
    stale_after_seconds: float = 12 * 60 * 60
    clock: Callable[[], float] = time.time
    _table: RateTable | None = None
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    @property
    def table(self) -> RateTable | None:
        return self._table

    @property
    def last_refreshed_at(self) -> float | None:
        return self._table.fetched_at if self._table else None

    def is_stale(self) -> bool:
        fetched_at = self.last_refreshed_at
        if fetched_at is None:
            return True
        return self.clock() - fetched_at > self.stale_after_seconds

    def refresh(self) -> bool:
        with self._lock:
            try:
                table = self.source.fetch_table()
            except RateProviderUnavailable as exc:
                logger.warning("Exchange rate refresh failed, keeping previous table: %s", exc)
                return False
            if table.fetched_at is None:
                table = RateTable(table.rates, fetched_at=self.clock(), reference=table.reference)
            self._table = table
        logger.debug("Exchange rates refreshed: %s", dict(table.rates))
        return True

    def snapshot(self) -> dict[str, Decimal]:
        rates = dict(self.fallback.rates)
        if self._table is not None:
            rates.update(self._table.rates)
        return rates

    def get_rate(self, currency: str) -> Decimal:
        normalized = normalize_currency(currency)
        table = self._table
        if table is not None:
            rate = table.lookup(normalized)
            if rate is not None:
                return rate
        return self.fallback.get_rate(normalized)


def convert_amount(
    amount: Decimal | int | float | str,
    source_currency: str,
    target_currency: str,
    rate_provider: RateProvider | None = None,
) -> Decimal:
    """Convert a monetary amount through the reference currency."""
    provider = rate_provider or StaticRateProvider()
    normalized_source = normalize_currency(source_currency)
    normalized_target = normalize_currency(target_currency)
    coerced_amount = _coerce_strict(amount)

    if normalized_source == normalized_target:
        return coerced_amount

    source_rate = provider.get_rate(normalized_source)
    target_rate = provider.get_rate(normalized_target)
    amount_in_reference = coerced_amount / source_rate
    return amount_in_reference * target_rate


@dataclass(frozen=True)
class Converter:
    """Non-raising conversion bound to a rate provider and a display currency.

    Aggregations go through this so one malformed record degrades to a zero
    or same-currency contribution instead of failing the whole report.
    """

    rate_provider: RateProvider = field(default_factory=StaticRateProvider)
    display_currency: str = REFERENCE_CURRENCY

    def __post_init__(self) -> None:
        object.__setattr__(
            self,
            "display_currency",
            safe_normalize_currency(self.display_currency, REFERENCE_CURRENCY),
        )

    def convert(
        self,
        amount: Decimal | int | float | str | None,
        source_currency: str | None,
        target_currency: str | None = None,
    ) -> Decimal:
        target = safe_normalize_currency(target_currency, self.display_currency)
        source = safe_normalize_currency(source_currency, target)
        return convert_amount(
            coerce_amount(amount),
            source,
            target,
            rate_provider=self.rate_provider,
        )

    def to_display(
        self, amount: Decimal | int | float | str | None, source_currency: str | None
    ) -> Decimal:
        return self.convert(amount, source_currency, self.display_currency)


def normalize_currency(value: str) -> str:
    normalized = value.strip().upper()
    if len(normalized) != 3 or not normalized.isalpha():
        raise ValueError("Currency must be a 3-letter ISO 4217 code.")
    return normalized


def safe_normalize_currency(value: str | None, fallback: str) -> str:
    if not value or not isinstance(value, str):
        return fallback
    try:
        return normalize_currency(value)
    except ValueError:
        return fallback


def coerce_amount(value: object) -> Decimal:
    """Decimal for any numeric-looking input, zero for anything else."""
    if value is None or isinstance(value, bool):
        return ZERO
    if isinstance(value, Decimal):
        result = value
    else:
        try:
            result = Decimal(str(value).strip())
        except (InvalidOperation, ValueError, TypeError):
            return ZERO
    if not result.is_finite():
        return ZERO
    return result


def _coerce_strict(amount: Decimal | int | float | str) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))


# (thousands separator, decimal separator, symbol before number with a space)
LOCALE_FORMATS: dict[str, tuple[str, str, bool]] = {
    "es-UY": (".", ",", True),
    "pt-BR": (".", ",", True),
    "en-US": (",", ".", False),
}

CURRENCY_SYMBOLS: dict[str, str] = {
    "USD": "US$",
    "EUR": "€",
    "UYU": "$",
    "ARS": "ARS",
    "BRL": "R$",
    "GBP": "£",
    "JPY": "¥",
}


def format_amount(
    amount: Decimal | int | float | str,
    currency: str,
    locale: str = "es-UY",
) -> str:
    """Render an amount for display. Performs no conversion."""
    thousands, decimal_sep, spaced = LOCALE_FORMATS.get(locale, LOCALE_FORMATS["es-UY"])
    code = normalize_currency(currency)
    symbol = CURRENCY_SYMBOLS.get(code, code)
    if locale == "en-US" and code == "USD":
        symbol = "$"

    value = coerce_amount(amount).quantize(CENT, rounding=ROUND_HALF_UP)
    sign = "-" if value < ZERO else ""
    integer_part, fraction = f"{abs(value):.2f}".split(".")
    groups = []
    while len(integer_part) > 3:
        groups.insert(0, integer_part[-3:])
        integer_part = integer_part[:-3]
    groups.insert(0, integer_part)
    number = f"{thousands.join(groups)}{decimal_sep}{fraction}"
    separator = " " if spaced else ""
    return f"{sign}{symbol}{separator}{number}"
