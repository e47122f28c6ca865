import unittest
from datetime import date
from decimal import Decimal

from fintrack.ledger import InvalidTransaction, Transaction
from fintrack.transaction_view import InvalidViewOption, SortState, view, view_with_state


def txn(id: str, type: str, amount: str, day: date, category: str = "other") -> Transaction:
    return Transaction(id=id, type=type, amount=Decimal(amount), category=category, date=day)


class ViewTests(unittest.TestCase):
    def setUp(self) -> None:
        self.transactions = [
            txn("a", "expense", "40", date(2025, 4, 5), category="food"),
            txn("b", "expense", "10", date(2025, 4, 8), category="Rent"),
            txn("c", "income", "100", date(2025, 4, 1), category="salary"),
        ]

    def test_filters_and_sorts_by_amount_ascending(self) -> None:
        result = view(self.transactions, "expense", "amount", "asc")

        self.assertEqual([t.id for t in result], ["b", "a"])
        self.assertEqual([t.amount for t in result], [Decimal("10"), Decimal("40")])

    def test_defaults_to_all_newest_first(self) -> None:
        result = view(self.transactions)

        self.assertEqual([t.id for t in result], ["b", "a", "c"])

    def test_dates_compare_across_year_boundary(self) -> None:
        transactions = [
            txn("dec", "expense", "1", date(2024, 12, 31)),
            txn("jan", "expense", "1", date(2025, 1, 1)),
            txn("feb", "expense", "1", date(2024, 2, 10)),
        ]

        result = view(transactions, "all", "date", "asc")

        self.assertEqual([t.id for t in result], ["feb", "dec", "jan"])

    def test_category_sort_ignores_case(self) -> None:
        result = view(self.transactions, "all", "category", "asc")

        self.assertEqual([t.category for t in result], ["food", "Rent", "salary"])

    def test_ties_keep_input_order_in_both_directions(self) -> None:
        transactions = [
            txn("1", "expense", "5", date(2025, 4, 2)),
            txn("2", "expense", "9", date(2025, 4, 1)),
            txn("3", "expense", "5", date(2025, 4, 3)),
            txn("4", "expense", "5", date(2025, 4, 4)),
        ]

        ascending = view(transactions, "all", "amount", "asc")
        descending = view(transactions, "all", "amount", "desc")

        self.assertEqual([t.id for t in ascending], ["1", "3", "4", "2"])
        self.assertEqual([t.id for t in descending], ["2", "1", "3", "4"])

    def test_descending_is_reverse_of_ascending_without_ties(self) -> None:
        transactions = [
            txn(str(day), "expense", "1", date(2025, 3, day)) for day in (9, 2, 27, 14, 1)
        ]

        ascending = view(transactions, "all", "date", "asc")
        descending = view(transactions, "all", "date", "desc")

        self.assertEqual(descending, list(reversed(ascending)))

    def test_reapplying_the_same_view_is_idempotent(self) -> None:
        once = view(self.transactions, "expense", "category", "desc")

        self.assertEqual(view(once, "expense", "category", "desc"), once)

    def test_does_not_mutate_input(self) -> None:
        original = list(self.transactions)

        result = view(self.transactions, "all", "amount", "desc")

        self.assertEqual(self.transactions, original)
        self.assertIsNot(result, self.transactions)

    def test_empty_input_returns_empty_list(self) -> None:
        self.assertEqual(view([], "income", "category", "asc"), [])

    def test_rejects_unknown_options(self) -> None:
        with self.assertRaises(InvalidViewOption):
            view(self.transactions, "transfer")
        with self.assertRaises(InvalidViewOption):
            view(self.transactions, "all", "note")
        with self.assertRaises(InvalidViewOption):
            view(self.transactions, "all", "date", "up")

    def test_invalid_record_fails_even_when_filtered_out(self) -> None:
        broken = txn("d", "income", "-5", date(2025, 4, 2))

        with self.assertRaises(InvalidTransaction):
            view(self.transactions + [broken], "expense")


class SortStateTests(unittest.TestCase):
    def test_same_field_flips_direction(self) -> None:
        state = SortState()

        self.assertEqual(state.toggle("date"), SortState("date", "asc"))
        self.assertEqual(state.toggle("date").toggle("date"), SortState("date", "desc"))

    def test_new_field_resets_to_descending(self) -> None:
        state = SortState("date", "asc")

        self.assertEqual(state.toggle("amount"), SortState("amount", "desc"))

    def test_view_with_state(self) -> None:
        transactions = [
            txn("x", "income", "3", date(2025, 4, 1)),
            txn("y", "income", "7", date(2025, 4, 2)),
        ]

        result = view_with_state(transactions, "income", SortState().toggle("amount"))

        self.assertEqual([t.id for t in result], ["y", "x"])


if __name__ == "__main__":
    unittest.main()
