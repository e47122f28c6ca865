from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from types import MappingProxyType
from typing import Callable, Iterable, Mapping

logger = logging.getLogger(__name__)

BASE_CURRENCY = "USD"
CENTS = Decimal("0.01")
DEFAULT_LOCALE = "en_US"

# (group separator, decimal separator)
LOCALE_SEPARATORS: dict[str, tuple[str, str]] = {
    "en_US": (",", "."),
    "en_GB": (",", "."),
    "en_AU": (",", "."),
    "en_CA": (",", "."),
    "ja_JP": (",", "."),
    "zh_CN": (",", "."),
    "en_IN": (",", "."),
    "de_DE": (".", ","),
    "es_ES": (".", ","),
    "it_IT": (".", ","),
    "pt_BR": (".", ","),
    "fr_FR": (" ", ","),
    "de_CH": ("’", "."),
}


class UnknownCurrency(ValueError):
    """Raised when a currency code is not in the rate table."""


def normalize_currency(value: str) -> str:
    normalized = value.strip().upper()
    if len(normalized) != 3 or not normalized.isalpha():
        raise ValueError("Currency must be a 3-letter ISO 4217 code.")
    return normalized


def _coerce_amount(amount: Decimal | int | float | str) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))


@dataclass(frozen=True)
class Currency:
    """A currency and its rate, in units of this currency per 1 base unit."""

    code: str
    symbol: str
    name: str
    rate: Decimal

    def __post_init__(self) -> None:
        object.__setattr__(self, "code", normalize_currency(self.code))
        object.__setattr__(self, "rate", _coerce_amount(self.rate))
        if not self.rate.is_finite() or self.rate <= 0:
            raise ValueError(f"Rate for {self.code} must be positive.")

    def to_dict(self) -> dict:
        return {
            "code": self.code,
            "symbol": self.symbol,
            "name": self.name,
            "rate": str(self.rate),
        }

    @classmethod
    def from_dict(cls, payload: Mapping) -> Currency:
        try:
            return cls(
                code=payload["code"],
                symbol=payload["symbol"],
                name=payload["name"],
                rate=payload["rate"],
            )
        except (KeyError, TypeError, InvalidOperation) as exc:
            raise ValueError("Currency requires code, symbol, name and rate.") from exc


DEFAULT_CURRENCIES: tuple[Currency, ...] = (
    Currency("USD", "$", "US Dollar", Decimal("1")),
    Currency("EUR", "€", "Euro", Decimal("0.85")),
    Currency("GBP", "£", "British Pound", Decimal("0.73")),
    Currency("JPY", "¥", "Japanese Yen", Decimal("110")),
    Currency("CAD", "C$", "Canadian Dollar", Decimal("1.25")),
    Currency("AUD", "A$", "Australian Dollar", Decimal("1.35")),
    Currency("CHF", "Fr", "Swiss Franc", Decimal("0.92")),
    Currency("CNY", "¥", "Chinese Yuan", Decimal("6.45")),
    Currency("INR", "₹", "Indian Rupee", Decimal("74.5")),
    Currency("BRL", "R$", "Brazilian Real", Decimal("5.2")),
)


class CurrencyTable:
    """Latest rate snapshot plus the subscribers that want new ones.

    A snapshot is a read-only mapping that is swapped as a whole on publish;
    readers holding an older snapshot keep a consistent view.
    """

    def __init__(
        self,
        currencies: Iterable[Currency] = DEFAULT_CURRENCIES,
        base_currency: str = BASE_CURRENCY,
    ) -> None:
        self.base_currency = normalize_currency(base_currency)
        initial = {currency.code: currency for currency in currencies}
        if self.base_currency not in initial:
            raise ValueError(f"Base currency {self.base_currency} missing from table.")
        self._snapshot: Mapping[str, Currency] = MappingProxyType(initial)
        self._subscribers: list[Callable[[Mapping[str, Currency]], None]] = []

    def snapshot(self) -> Mapping[str, Currency]:
        return self._snapshot

    def get(self, code: str, snapshot: Mapping[str, Currency] | None = None) -> Currency:
        rates = self._snapshot if snapshot is None else snapshot
        try:
            normalized = normalize_currency(code)
        except ValueError as exc:
            raise UnknownCurrency(f"Unknown currency: {code!r}") from exc
        try:
            return rates[normalized]
        except KeyError as exc:
            raise UnknownCurrency(f"Unknown currency: {normalized}") from exc

    @property
    def base(self) -> Currency:
        return self._snapshot[self.base_currency]

    def rates(self) -> dict[str, Decimal]:
        return {code: currency.rate for code, currency in self._snapshot.items()}

    def publish(self, rates: Mapping[str, Decimal]) -> Mapping[str, Currency]:
        """Replace the snapshot with new rates for known currencies.

        Codes missing from ``rates`` keep their previous value. Every new rate is
        validated before anything is swapped in.
        """
        updated = dict(self._snapshot)
        for code, rate in rates.items():
            normalized = normalize_currency(code)
            current = updated.get(normalized)
            if current is None:
                logger.debug("Ignoring rate for untracked currency %s", normalized)
                continue
            updated[normalized] = replace(current, rate=_coerce_amount(rate))
        return self._swap(updated)

    def override(self, code: str, rate: Decimal | int | str) -> Currency:
        currency = self.get(code)
        if currency.code == self.base_currency:
            raise ValueError("The base currency rate is fixed at 1.")
        self.publish({currency.code: _coerce_amount(rate)})
        return self._snapshot[currency.code]

    def subscribe(
        self, callback: Callable[[Mapping[str, Currency]], None]
    ) -> Callable[[], None]:
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def _swap(self, updated: dict[str, Currency]) -> Mapping[str, Currency]:
        snapshot = MappingProxyType(updated)
        self._snapshot = snapshot
        for callback in list(self._subscribers):
            try:
                callback(snapshot)
            except Exception:
                logger.exception("Rate subscriber %r failed", callback)
        return snapshot


def convert(amount_base: Decimal | int | str, currency: Currency) -> Decimal:
    return _coerce_amount(amount_base) * currency.rate


def format_amount(
    amount_base: Decimal | int | str,
    currency: Currency,
    locale: str | None = DEFAULT_LOCALE,
) -> str:
    value = convert(amount_base, currency).quantize(CENTS, rounding=ROUND_HALF_UP)
    sign = "-" if value < 0 else ""
    separators = LOCALE_SEPARATORS.get(_normalize_locale(locale))
    if separators is None:
        return f"{sign}{currency.symbol}{abs(value):.2f}"
    group, decimal_point = separators
    grouped = f"{abs(value):,.2f}"
    # Swap through a placeholder so "," and "." can trade places.
    grouped = grouped.replace(",", "\x00").replace(".", decimal_point).replace("\x00", group)
    return f"{sign}{currency.symbol}{grouped}"


def base_inverse(currency: Currency) -> Currency:
    return replace(currency, rate=Decimal("1") / currency.rate)


def resolve_display_currency(
    table: CurrencyTable,
    code: str | None,
    snapshot: Mapping[str, Currency] | None = None,
) -> Currency:
    rates = table.snapshot() if snapshot is None else snapshot
    if not code:
        return rates[table.base_currency]
    try:
        return table.get(code, snapshot=rates)
    except UnknownCurrency:
        logger.warning("Unknown display currency %r, using %s", code, table.base_currency)
        return rates[table.base_currency]


def _normalize_locale(value: str | None) -> str:
    if not value:
        return ""
    return value.strip().split(".")[0].replace("-", "_")
