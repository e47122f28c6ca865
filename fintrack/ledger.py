from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Iterable, Optional

ZERO = Decimal("0")
TRANSACTION_TYPES = {"income", "expense"}

# Advisory labels for grouping and icons. Categories stay free-form strings.
EXPENSE_CATEGORIES = (
    "groceries",
    "rent",
    "utilities",
    "transportation",
    "entertainment",
    "shopping",
    "health",
    "education",
    "travel",
    "food",
    "other",
)
INCOME_CATEGORIES = ("salary", "freelance", "investment", "gift", "refund", "other")


class InvalidTransaction(ValueError):
    """Raised when a record breaks the transaction invariants."""


@dataclass(frozen=True)
class Transaction:
    id: str
    type: str
    amount: Decimal
    category: str
    date: date
    note: Optional[str] = None


def is_known_category(category: str, txn_type: str | None = None) -> bool:
    normalized = category.strip().lower()
    if txn_type == "income":
        return normalized in INCOME_CATEGORIES
    if txn_type == "expense":
        return normalized in EXPENSE_CATEGORIES
    return normalized in EXPENSE_CATEGORIES or normalized in INCOME_CATEGORIES


def check_transaction(txn: Transaction) -> Transaction:
    if not isinstance(txn.id, str) or not txn.id:
        raise InvalidTransaction("Transaction id must be a non-empty string.")
    if not isinstance(txn.type, str) or txn.type not in TRANSACTION_TYPES:
        raise InvalidTransaction(f"Invalid transaction type: {txn.type!r}")
    if not isinstance(txn.amount, Decimal):
        raise InvalidTransaction(f"Transaction {txn.id} amount must be a Decimal.")
    if not txn.amount.is_finite() or txn.amount < ZERO:
        raise InvalidTransaction(f"Transaction {txn.id} amount must be non-negative.")
    if not isinstance(txn.date, date):
        raise InvalidTransaction(f"Transaction {txn.id} date must be a calendar date.")
    if not isinstance(txn.category, str):
        raise InvalidTransaction(f"Transaction {txn.id} category must be a string.")
    if txn.note is not None and not isinstance(txn.note, str):
        raise InvalidTransaction(f"Transaction {txn.id} note must be a string.")
    return txn


def check_transactions(transactions: Iterable[Transaction]) -> list[Transaction]:
    return [check_transaction(txn) for txn in transactions]


def build_transaction(
    id: str,
    type: str,
    amount: Decimal | int | str,
    category: str,
    date: date | str,
    note: str | None = None,
) -> Transaction:
    """Coerce loosely typed fields (strings from storage or JSON) into a record.

    Amounts given as floats are refused: they have already lost precision.
    """
    if isinstance(amount, float):
        raise InvalidTransaction("Amount must be given as Decimal, int or str.")
    try:
        coerced_amount = amount if isinstance(amount, Decimal) else Decimal(str(amount))
    except InvalidOperation as exc:
        raise InvalidTransaction(f"Invalid amount: {amount!r}") from exc
    return check_transaction(
        Transaction(
            id=str(id),
            type=type.strip().lower() if isinstance(type, str) else type,
            amount=coerced_amount,
            category=category.strip() if isinstance(category, str) else category,
            date=_coerce_date(date),
            note=note.strip() if note else None,
        )
    )


def _coerce_date(value: date | str) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return datetime.strptime(value, "%Y-%m-%d").date()
    except (TypeError, ValueError) as exc:
        raise InvalidTransaction("Date must be in YYYY-MM-DD format.") from exc
