from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date, timedelta
from decimal import Decimal
from typing import Iterable

from fintrack.ledger import ZERO, Transaction, check_transaction

PERIOD_PATTERN = re.compile(r"^(\d{4})-(\d{2})$")
DEFAULT_TREND_MONTHS = 6


class InvalidPeriod(ValueError):
    """Raised for a period key that is not a well-formed YYYY-MM month."""


@dataclass(frozen=True, order=True)
class Period:
    year: int
    month: int

    def __post_init__(self) -> None:
        if not 1 <= self.month <= 12 or not 1 <= self.year <= 9999:
            raise InvalidPeriod(f"Invalid period: {self.year:04d}-{self.month:02d}")

    @classmethod
    def parse(cls, value: str | Period) -> Period:
        if isinstance(value, Period):
            return value
        if not isinstance(value, str):
            raise InvalidPeriod("Invalid month format. Use YYYY-MM.")
        match = PERIOD_PATTERN.match(value.strip())
        if not match:
            raise InvalidPeriod("Invalid month format. Use YYYY-MM.")
        return cls(int(match.group(1)), int(match.group(2)))

    @classmethod
    def current(cls, today: date | None = None) -> Period:
        today = today or date.today()
        return cls(today.year, today.month)

    @property
    def key(self) -> str:
        return f"{self.year:04d}-{self.month:02d}"

    @property
    def start(self) -> date:
        return date(self.year, self.month, 1)

    @property
    def end(self) -> date:
        return self.shift(1).start - timedelta(days=1)

    def contains(self, value: date) -> bool:
        return value.year == self.year and value.month == self.month

    def shift(self, months: int) -> Period:
        month_index = (self.year * 12 + self.month - 1) + months
        return Period(month_index // 12, month_index % 12 + 1)

    def __str__(self) -> str:
        return self.key


@dataclass(frozen=True)
class Summary:
    income: Decimal
    expenses: Decimal
    balance: Decimal


@dataclass(frozen=True)
class TrendPoint:
    period: Period
    income: Decimal
    expenses: Decimal
    savings: Decimal


@dataclass(frozen=True)
class CategoryTotal:
    category: str
    amount: Decimal
    percentage: Decimal


def aggregate(transactions: Iterable[Transaction], period: str | Period) -> Summary:
    resolved = Period.parse(period)
    income = ZERO
    expenses = ZERO
    for txn in transactions:
        check_transaction(txn)
        if not resolved.contains(txn.date):
            continue
        if txn.type == "income":
            income += txn.amount
        else:
            expenses += txn.amount
    return Summary(income=income, expenses=expenses, balance=income - expenses)


def monthly_trend(
    transactions: Iterable[Transaction],
    end_period: str | Period,
    months: int = DEFAULT_TREND_MONTHS,
) -> list[TrendPoint]:
    """Per-month totals for the `months` months ending at `end_period`, oldest first."""
    if months < 1:
        raise ValueError("months must be at least 1.")
    last = Period.parse(end_period)
    records = list(transactions)
    points = []
    for offset in range(months - 1, -1, -1):
        period = last.shift(-offset)
        summary = aggregate(records, period)
        points.append(
            TrendPoint(
                period=period,
                income=summary.income,
                expenses=summary.expenses,
                savings=summary.balance,
            )
        )
    return points


def category_totals(
    transactions: Iterable[Transaction],
    period: str | Period,
    txn_type: str = "expense",
) -> list[CategoryTotal]:
    resolved = Period.parse(period)
    if txn_type not in ("income", "expense"):
        raise ValueError(f"Unsupported transaction type: {txn_type}")

    totals: dict[str, Decimal] = {}
    for txn in transactions:
        check_transaction(txn)
        if txn.type != txn_type or not resolved.contains(txn.date):
            continue
        label = txn.category.strip().lower() or "other"
        totals[label] = totals.get(label, ZERO) + txn.amount

    grand_total = sum(totals.values(), ZERO)
    # sorted() is stable, so equal totals keep first-seen order.
    ranked = sorted(totals.items(), key=lambda item: item[1], reverse=True)
    return [
        CategoryTotal(
            category=category,
            amount=amount,
            percentage=(amount / grand_total * Decimal("100")) if grand_total else ZERO,
        )
        for category, amount in ranked
    ]
