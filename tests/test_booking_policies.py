from __future__ import annotations

import unittest
from datetime import date, datetime, timedelta

from booking_policies import (
    PAST_DATE_MESSAGE,
    DateCheckKind,
    convert_to_local,
    format_price,
    is_past_date,
    parse_iso_date,
    resolve_region,
    sanitize_date_input,
    validate_card_number,
    validate_departure_date,
)
from flight_catalog import DEFAULT_FLIGHTS

TODAY = date(2026, 3, 1)


def _plus(days: int) -> date:
    return TODAY + timedelta(days=days)


class TestDatePolicy(unittest.TestCase):
    def test_past_dates_are_rejected(self) -> None:
        for days in (1, 2, 30, 400):
            check = validate_departure_date(_plus(-days), TODAY)
            self.assertEqual(check.kind, DateCheckKind.PAST_DATE, days)
            self.assertEqual(check.message(), PAST_DATE_MESSAGE)

    def test_window_is_inclusive_on_both_ends(self) -> None:
        for days in (0, 1, 30, 59, 60):
            self.assertTrue(validate_departure_date(_plus(days), TODAY).ok, days)

    def test_too_far_ahead_reports_days_over(self) -> None:
        check = validate_departure_date(_plus(65), TODAY)
        self.assertEqual(check.kind, DateCheckKind.TOO_FAR_AHEAD)
        self.assertEqual(check.days_over, 5)
        self.assertEqual(
            check.message(),
            "Flights can only be booked up to 60 days in advance. Your selected date is 5 day(s) beyond the limit.",
        )
        self.assertEqual(validate_departure_date(_plus(61), TODAY).days_over, 1)

    def test_time_of_day_is_ignored(self) -> None:
        late_today = datetime(2026, 3, 1, 23, 59)
        self.assertTrue(validate_departure_date(TODAY, late_today).ok)
        self.assertTrue(validate_departure_date(datetime(2026, 3, 1, 0, 1), TODAY).ok)

    def test_empty_is_not_an_error(self) -> None:
        for value in ("", None, "   "):
            check = validate_departure_date(value, TODAY)
            self.assertEqual(check.kind, DateCheckKind.EMPTY)
            self.assertFalse(check.is_error)
            self.assertEqual(check.message(), "")

    def test_iso_strings_are_accepted(self) -> None:
        self.assertTrue(validate_departure_date("2026-03-11", "2026-03-01").ok)

    def test_custom_window(self) -> None:
        check = validate_departure_date(_plus(10), TODAY, max_booking_days=7)
        self.assertEqual(check.kind, DateCheckKind.TOO_FAR_AHEAD)
        self.assertEqual(check.days_over, 3)
        self.assertIn("up to 7 days", check.message())

    def test_is_past_date_ignores_forward_window(self) -> None:
        self.assertTrue(is_past_date(_plus(-1), TODAY))
        self.assertFalse(is_past_date(_plus(200), TODAY))
        self.assertFalse(is_past_date("", TODAY))

    def test_parse_iso_date_rejects_impossible_dates(self) -> None:
        self.assertEqual(parse_iso_date("2026-03-11"), date(2026, 3, 11))
        with self.assertRaises(ValueError):
            parse_iso_date("2026-02-30")
        with self.assertRaises(ValueError):
            parse_iso_date("11/03/2026")


class TestSanitizeDateInput(unittest.TestCase):
    def test_valid_value_passes_through(self) -> None:
        self.assertEqual(sanitize_date_input("2026-03-11"), "2026-03-11")

    def test_angle_brackets_are_stripped(self) -> None:
        self.assertEqual(sanitize_date_input("<2026-03-11>"), "2026-03-11")

    def test_non_conforming_values_become_empty(self) -> None:
        for raw in ("03/11/2026", "2026-3-1", "<script>alert(1)</script>", "2026-03-11T10:00", "tomorrow"):
            self.assertEqual(sanitize_date_input(raw), "", raw)

    def test_empty_and_none(self) -> None:
        self.assertEqual(sanitize_date_input(""), "")
        self.assertEqual(sanitize_date_input(None), "")


class TestCardPolicy(unittest.TestCase):
    def test_sixteen_digits_pass(self) -> None:
        self.assertTrue(validate_card_number("1234567812345678").ok)
        self.assertTrue(validate_card_number("4111 1111 1111 1111").ok)
        self.assertTrue(validate_card_number("\t4111111111111111\n").ok)

    def test_mismatch_reports_observed_length(self) -> None:
        check = validate_card_number("4111 1111 1111 111")
        self.assertFalse(check.ok)
        self.assertEqual(check.actual, 15)
        self.assertEqual(
            check.message(),
            "Card number must contain exactly 16 digits. You entered 15 digit(s).",
        )
        self.assertEqual(validate_card_number("1234").actual, 4)
        self.assertEqual(validate_card_number("").actual, 0)
        self.assertEqual(validate_card_number(None).actual, 0)

    def test_non_digits_are_counted_not_rejected(self) -> None:
        self.assertTrue(validate_card_number("abcd-efgh-ijkl-m").ok)
        self.assertEqual(validate_card_number("4111-1111-1111-1111").actual, 19)


class TestPricingPolicy(unittest.TestCase):
    def test_tr_renders_lira_with_dot_grouping(self) -> None:
        self.assertEqual(format_price(125, "TR"), "₺3.750")
        self.assertEqual(format_price(95, "TR"), "₺2.850")
        self.assertEqual(format_price(1, "TR"), "₺30")
        self.assertEqual(format_price(40000, "TR"), "₺1.200.000")

    def test_show_both_appends_usd(self) -> None:
        self.assertEqual(format_price(125, "TR", show_both=True), "₺3.750 ($125)")

    def test_other_regions_get_plain_usd(self) -> None:
        self.assertEqual(format_price(125, "US"), "$125")
        self.assertEqual(format_price(1250, "US"), "$1250")
        self.assertEqual(format_price(125, "US", show_both=True), "$125")

    def test_region_defaults_to_tr(self) -> None:
        self.assertEqual(resolve_region(None), "TR")
        self.assertEqual(resolve_region(" us "), "US")
        self.assertEqual(format_price(125), "₺3.750")

    def test_conversion_is_multiplicative(self) -> None:
        self.assertEqual(convert_to_local(100), 100 * convert_to_local(1))
        self.assertEqual(convert_to_local(0.5), 15)
        self.assertEqual(convert_to_local(0.05), 2)  # 1.5 rounds half up

    def test_display_embeds_rounded_magnitude(self) -> None:
        for flight in DEFAULT_FLIGHTS:
            shown = format_price(flight.price, "TR")
            digits = shown.replace("₺", "").replace(".", "")
            self.assertEqual(int(digits), round(flight.price * 30))

    def test_deterministic(self) -> None:
        self.assertEqual(format_price(137, "TR", show_both=True), format_price(137, "TR", show_both=True))


if __name__ == "__main__":
    unittest.main()
