import unittest
from decimal import Decimal

from fintrack.currency_conversion import (
    Currency,
    CurrencyTable,
    UnknownCurrency,
    base_inverse,
    convert,
    format_amount,
    resolve_display_currency,
)


class ConvertTests(unittest.TestCase):
    def setUp(self) -> None:
        self.eur = Currency("EUR", "€", "Euro", Decimal("0.85"))

    def test_multiplies_by_rate(self) -> None:
        self.assertEqual(convert(Decimal("100"), self.eur), Decimal("85.00"))

    def test_conversion_keeps_full_precision(self) -> None:
        self.assertEqual(convert("0.01", self.eur), Decimal("0.0085"))

    def test_conversion_is_monotonic(self) -> None:
        amounts = [Decimal(value) for value in ("0", "0.01", "1", "99.99", "100", "12345.67")]

        converted = [convert(amount, self.eur) for amount in amounts]

        self.assertEqual(converted, sorted(converted))

    def test_round_trip_through_inverse(self) -> None:
        jpy = Currency("JPY", "¥", "Japanese Yen", Decimal("147.123457"))
        for currency in (self.eur, jpy):
            for amount in (Decimal("0.01"), Decimal("1"), Decimal("98765.43")):
                with self.subTest(code=currency.code, amount=amount):
                    back = convert(convert(amount, currency), base_inverse(currency))
                    self.assertLessEqual(abs(back - amount), Decimal("1e-6"))

    def test_rejects_non_positive_rate(self) -> None:
        with self.assertRaises(ValueError):
            Currency("EUR", "€", "Euro", Decimal("0"))
        with self.assertRaises(ValueError):
            Currency("EUR", "€", "Euro", Decimal("-1"))

    def test_normalizes_currency_codes(self) -> None:
        self.assertEqual(Currency(" eur ", "€", "Euro", "0.85").code, "EUR")


class FormatAmountTests(unittest.TestCase):
    def setUp(self) -> None:
        self.eur = Currency("EUR", "€", "Euro", Decimal("0.85"))
        self.usd = Currency("USD", "$", "US Dollar", Decimal("1"))

    def test_formats_with_symbol_and_two_digits(self) -> None:
        self.assertEqual(format_amount(Decimal("100"), self.eur), "€85.00")

    def test_groups_thousands(self) -> None:
        self.assertEqual(format_amount(Decimal("1234567.891"), self.usd), "$1,234,567.89")

    def test_uses_locale_separators(self) -> None:
        self.assertEqual(format_amount(Decimal("1234.5"), self.usd, "de_DE"), "$1.234,50")
        self.assertEqual(format_amount(Decimal("1234.5"), self.usd, "pt-BR"), "$1.234,50")

    def test_unknown_locale_falls_back_to_fixed_format(self) -> None:
        self.assertEqual(format_amount(Decimal("1234.5"), self.usd, "xx_YY"), "$1234.50")
        self.assertEqual(format_amount(Decimal("1234.5"), self.usd, None), "$1234.50")

    def test_rounds_half_up_at_display_only(self) -> None:
        self.assertEqual(format_amount(Decimal("0.005"), self.usd), "$0.01")

    def test_negative_values_put_sign_before_symbol(self) -> None:
        self.assertEqual(format_amount(Decimal("-10"), self.eur), "-€8.50")


class CurrencyTableTests(unittest.TestCase):
    def setUp(self) -> None:
        self.table = CurrencyTable(
            [
                Currency("USD", "$", "US Dollar", Decimal("1")),
                Currency("EUR", "€", "Euro", Decimal("2")),
                Currency("JPY", "¥", "Japanese Yen", Decimal("4")),
            ]
        )

    def test_default_table_holds_reference_rates(self) -> None:
        table = CurrencyTable()

        self.assertEqual(table.base.code, "USD")
        self.assertEqual(table.get("EUR").rate, Decimal("0.85"))
        self.assertEqual(table.get("JPY").symbol, "¥")

    def test_get_unknown_currency_raises(self) -> None:
        with self.assertRaises(UnknownCurrency):
            self.table.get("CAD")
        with self.assertRaises(UnknownCurrency):
            self.table.get("not-a-code")

    def test_display_currency_falls_back_to_base(self) -> None:
        with self.assertLogs("fintrack.currency_conversion", level="WARNING"):
            currency = resolve_display_currency(self.table, "CAD")

        self.assertEqual(currency.code, "USD")
        self.assertEqual(resolve_display_currency(self.table, None).code, "USD")
        self.assertEqual(resolve_display_currency(self.table, "eur").code, "EUR")

    def test_publish_swaps_snapshot_and_keeps_missing_codes(self) -> None:
        before = self.table.snapshot()
        seen = []
        self.table.subscribe(seen.append)

        after = self.table.publish({"EUR": Decimal("2.5"), "GBP": Decimal("0.7")})

        self.assertEqual(before["EUR"].rate, Decimal("2"))
        self.assertEqual(after["EUR"].rate, Decimal("2.5"))
        self.assertEqual(after["JPY"].rate, Decimal("4"))
        self.assertNotIn("GBP", after)
        self.assertEqual(seen, [after])

    def test_publish_rejects_bad_rate_without_partial_update(self) -> None:
        with self.assertRaises(ValueError):
            self.table.publish({"EUR": Decimal("3"), "JPY": Decimal("0")})

        self.assertEqual(self.table.rates()["EUR"], Decimal("2"))
        self.assertEqual(self.table.rates()["JPY"], Decimal("4"))

    def test_snapshot_is_read_only(self) -> None:
        with self.assertRaises(TypeError):
            self.table.snapshot()["EUR"] = Currency("EUR", "€", "Euro", Decimal("9"))

    def test_override_updates_single_rate(self) -> None:
        currency = self.table.override("jpy", "5")

        self.assertEqual(currency.rate, Decimal("5"))
        self.assertEqual(self.table.get("JPY").rate, Decimal("5"))

    def test_base_rate_cannot_be_overridden(self) -> None:
        with self.assertRaises(ValueError):
            self.table.override("USD", "2")

    def test_unsubscribe_stops_notifications(self) -> None:
        seen = []
        unsubscribe = self.table.subscribe(seen.append)
        unsubscribe()

        self.table.publish({"EUR": Decimal("3")})

        self.assertEqual(seen, [])

    def test_failing_subscriber_does_not_block_publish(self) -> None:
        def broken(snapshot) -> None:
            raise RuntimeError("boom")

        seen = []
        self.table.subscribe(broken)
        self.table.subscribe(seen.append)

        with self.assertLogs("fintrack.currency_conversion", level="ERROR"):
            self.table.publish({"EUR": Decimal("3")})

        self.assertEqual(self.table.get("EUR").rate, Decimal("3"))
        self.assertEqual(len(seen), 1)

    def test_currency_dict_shape(self) -> None:
        payload = self.table.get("EUR").to_dict()

        self.assertEqual(payload, {"code": "EUR", "symbol": "€", "name": "Euro", "rate": "2"})
        self.assertEqual(Currency.from_dict(payload), self.table.get("EUR"))


if __name__ == "__main__":
    unittest.main()
