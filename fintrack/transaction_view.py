from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Iterable, Sequence

from fintrack.ledger import Transaction, check_transactions

FILTERS = {"all", "income", "expense"}
SORT_FIELDS = {"date", "amount", "category"}
SORT_DIRECTIONS = {"asc", "desc"}
DEFAULT_SORT_FIELD = "date"
DEFAULT_SORT_DIRECTION = "desc"

SORT_KEYS: dict[str, Callable[[Transaction], object]] = {
    "date": lambda txn: txn.date,
    "amount": lambda txn: txn.amount,
    "category": lambda txn: txn.category.casefold(),
}


class InvalidViewOption(ValueError):
    """Raised for an unknown filter, sort field or sort direction."""


@dataclass(frozen=True)
class SortState:
    """Current list ordering.

    Selecting the active field again flips the direction. Selecting a different
    field starts it at ``desc`` so the newest or largest records come first.
    """

    field: str = DEFAULT_SORT_FIELD
    direction: str = DEFAULT_SORT_DIRECTION

    def __post_init__(self) -> None:
        _check_option(self.field, SORT_FIELDS, "sort field")
        _check_option(self.direction, SORT_DIRECTIONS, "sort direction")

    def toggle(self, field: str) -> SortState:
        if field == self.field:
            return SortState(field, "asc" if self.direction == "desc" else "desc")
        return SortState(field, DEFAULT_SORT_DIRECTION)


def view(
    transactions: Iterable[Transaction],
    filter: str = "all",
    sort_field: str = DEFAULT_SORT_FIELD,
    sort_dir: str = DEFAULT_SORT_DIRECTION,
) -> list[Transaction]:
    _check_option(filter, FILTERS, "filter")
    _check_option(sort_field, SORT_FIELDS, "sort field")
    _check_option(sort_dir, SORT_DIRECTIONS, "sort direction")

    records = check_transactions(transactions)
    selected = [txn for txn in records if filter == "all" or txn.type == filter]
    # Python's sort is stable for reverse=True too: equal keys keep input order.
    return sorted(selected, key=SORT_KEYS[sort_field], reverse=sort_dir == "desc")


def view_with_state(
    transactions: Iterable[Transaction],
    filter: str,
    state: SortState,
) -> list[Transaction]:
    return view(transactions, filter, state.field, state.direction)


def normalize_option(value: str | None, default: str) -> str:
    if value is None:
        return default
    return value.strip().lower() or default


def _check_option(value: str, allowed: Sequence[str] | set[str], label: str) -> None:
    if value not in allowed:
        raise InvalidViewOption(
            f"Unsupported {label}: {value!r}. Use one of {', '.join(sorted(allowed))}."
        )
