from __future__ import annotations

import asyncio
import inspect
import json
import logging
import random
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Awaitable, Callable, Iterable, Mapping, Protocol, Union
from urllib.error import HTTPError, URLError
from urllib.request import urlopen

from fintrack.currency_conversion import (
    BASE_CURRENCY,
    DEFAULT_CURRENCIES,
    Currency,
    CurrencyTable,
    normalize_currency,
)

logger = logging.getLogger(__name__)

DEFAULT_REFRESH_INTERVAL = 5 * 60
DEFAULT_SPREAD = Decimal("0.02")

IDLE = "idle"
POLLING = "polling"

Rates = Mapping[str, Decimal]


class RateSourceUnavailable(RuntimeError):
    """Raised when a rate source cannot produce a usable table."""


class RateSource(Protocol):
    def fetch_rates(
        self, current: Mapping[str, Currency]
    ) -> Union[Rates, Awaitable[Rates]]: ...


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


class Clock(Protocol):
    """The slice of ``asyncio.AbstractEventLoop`` the scheduler relies on."""

    def time(self) -> float: ...

    def call_at(self, when: float, callback: Callable[..., Any], *args: Any) -> TimerHandle: ...


@dataclass(frozen=True)
class StaticRateSource:
    rates: Mapping[str, Decimal]

    def fetch_rates(self, current: Mapping[str, Currency]) -> Rates:
        return dict(self.rates)


@dataclass
class PerturbedRateSource:
    """Stand-in feed: reference rates nudged by a bounded random factor.

    Each non-base rate becomes ``reference * (1 - spread + U(0, 2 * spread))``.
    Swap for a live source when one is configured.
    """

    reference: Iterable[Currency] = DEFAULT_CURRENCIES
    spread: Decimal = DEFAULT_SPREAD
    base_currency: str = BASE_CURRENCY
    rng: random.Random = field(default_factory=random.Random)

    def __post_init__(self) -> None:
        self.reference = tuple(self.reference)
        if not Decimal("0") <= self.spread < Decimal("1"):
            raise ValueError("spread must be in [0, 1).")

    def fetch_rates(self, current: Mapping[str, Currency]) -> Rates:
        rates: dict[str, Decimal] = {}
        for currency in self.reference:
            if currency.code == self.base_currency:
                rates[currency.code] = Decimal("1")
                continue
            jitter = Decimal(str(self.rng.random())) * 2 * self.spread
            rates[currency.code] = currency.rate * (Decimal("1") - self.spread + jitter)
        return rates


@dataclass
class FrankfurterRateSource:
    base_currency: str = BASE_CURRENCY
    base_url: str = "https://api.frankfurter.app"
    timeout_seconds: float = 8

    async def fetch_rates(self, current: Mapping[str, Currency]) -> Rates:
        # urllib blocks, so keep the socket read off the event loop.
        return await asyncio.to_thread(self._fetch_rates, sorted(current))

    def _fetch_rates(self, codes: list[str]) -> Rates:
        base_currency = normalize_currency(self.base_currency)
        url = f"{self.base_url}/latest?from={base_currency}"
        try:
            with urlopen(url, timeout=self.timeout_seconds) as response:
                payload = json.load(response)
        except (HTTPError, URLError, TimeoutError, json.JSONDecodeError) as exc:
            raise RateSourceUnavailable("Frankfurter API unavailable") from exc

        rates = payload.get("rates")
        if not isinstance(rates, dict):
            raise RateSourceUnavailable("Frankfurter response missing rates")

        parsed = {normalize_currency(code): Decimal(str(value)) for code, value in rates.items()}
        parsed[base_currency] = Decimal("1")
        return {code: parsed[code] for code in codes if code in parsed}


class RefreshScheduler:
    """Re-pulls the rate table every ``interval`` seconds while polling.

    Ticks are armed at absolute deadlines on ``clock`` (the running event loop
    unless one is injected), so a slow refresh never shifts the cadence. A
    failed refresh is logged and the previous snapshot stays in effect.
    """

    def __init__(
        self,
        table: CurrencyTable,
        source: RateSource,
        interval: float = DEFAULT_REFRESH_INTERVAL,
        clock: Clock | None = None,
    ) -> None:
        if interval <= 0:
            raise ValueError("interval must be greater than zero.")
        self.table = table
        self.source = source
        self.interval = interval
        self._clock = clock
        self._active_clock: Clock | None = None
        self._handle: TimerHandle | None = None
        self._pending: asyncio.Future | None = None
        self._next_deadline = 0.0
        self.state = IDLE
        self.updates = 0
        self.failures = 0
        self.last_error: BaseException | None = None

    @property
    def is_polling(self) -> bool:
        return self.state == POLLING

    def start(self) -> None:
        if self.state == POLLING:
            return
        clock = self._clock or asyncio.get_running_loop()
        self._active_clock = clock
        self._next_deadline = clock.time() + self.interval
        self._handle = clock.call_at(self._next_deadline, self._tick)
        self.state = POLLING
        logger.info("Rate refresh polling every %ss", self.interval)

    def stop(self) -> None:
        if self.state == IDLE:
            return
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
        if self._pending is not None and not self._pending.done():
            self._pending.cancel()
        self._pending = None
        self._active_clock = None
        self.state = IDLE
        logger.info("Rate refresh stopped")

    async def refresh_now(self) -> bool:
        """Run one refresh outside the cadence and wait for it to finish.

        Works in either state. Returns True when a new snapshot was published.
        """
        try:
            rates = self.source.fetch_rates(self.table.snapshot())
            if inspect.isawaitable(rates):
                rates = await rates
        except Exception as exc:
            self._record_failure(exc)
            return False
        return self._apply(rates)

    def _tick(self) -> None:
        if self.state != POLLING or self._active_clock is None:
            return
        self._next_deadline += self.interval
        self._handle = self._active_clock.call_at(self._next_deadline, self._tick)
        self._refresh()

    def _refresh(self) -> None:
        if self._pending is not None and not self._pending.done():
            logger.info("Rate refresh still in flight, skipping tick")
            return
        try:
            result = self.source.fetch_rates(self.table.snapshot())
        except Exception as exc:
            self._record_failure(exc)
            return
        if not inspect.isawaitable(result):
            self._apply(result)
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError as exc:
            if inspect.iscoroutine(result):
                result.close()
            self._record_failure(exc)
            return
        self._pending = loop.create_task(self._complete(result))

    async def _complete(self, pending: Awaitable[Rates]) -> None:
        # stop() cancels this task, so reaching the end means the fetch is wanted.
        try:
            rates = await pending
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._record_failure(exc)
            return
        self._apply(rates)

    def _apply(self, rates: Rates) -> bool:
        try:
            if not rates:
                raise RateSourceUnavailable("Rate source returned no rates")
            self.table.publish(rates)
        except Exception as exc:
            self._record_failure(exc)
            return False
        self.updates += 1
        logger.debug("Published rate snapshot #%s", self.updates)
        return True

    def _record_failure(self, exc: BaseException) -> None:
        self.failures += 1
        self.last_error = exc
        logger.warning("Rate refresh failed; keeping previous rates", exc_info=exc)
