import unittest

from patrol.services.durations import (
    MS_PER_DAY,
    MS_PER_MONTH,
    MS_PER_WEEK,
    MS_PER_YEAR,
    format_clock_ms,
    format_duration_ms,
    is_valid_duration,
    parse_duration_ms,
)


class DurationParsingTests(unittest.TestCase):
    def test_parse_supported_units(self) -> None:
        self.assertEqual(parse_duration_ms("2 weeks"), 2 * MS_PER_WEEK)
        self.assertEqual(parse_duration_ms("14d"), 14 * MS_PER_DAY)
        self.assertEqual(parse_duration_ms("1 day"), MS_PER_DAY)
        self.assertEqual(parse_duration_ms("1mo"), MS_PER_MONTH)
        self.assertEqual(parse_duration_ms("3 Months"), 3 * MS_PER_MONTH)
        self.assertEqual(parse_duration_ms(" 1 year "), MS_PER_YEAR)
        self.assertEqual(parse_duration_ms("2y"), 2 * MS_PER_YEAR)

    def test_parse_rejects_garbage_and_zero(self) -> None:
        self.assertIsNone(parse_duration_ms(None))
        self.assertIsNone(parse_duration_ms(""))
        self.assertIsNone(parse_duration_ms("soon"))
        self.assertIsNone(parse_duration_ms("0 days"))
        self.assertIsNone(parse_duration_ms("5 hours"))
        self.assertIsNone(parse_duration_ms("-2 weeks"))
        self.assertFalse(is_valid_duration("two weeks"))
        self.assertTrue(is_valid_duration("2w"))


class DurationFormattingTests(unittest.TestCase):
    def test_format_duration_uses_largest_units_first(self) -> None:
        self.assertEqual(format_duration_ms(MS_PER_WEEK + 2 * MS_PER_DAY), "1 week 2 days")
        self.assertEqual(format_duration_ms(MS_PER_MONTH), "1 month")
        self.assertEqual(format_duration_ms(MS_PER_YEAR + 2 * MS_PER_WEEK), "1 year 2 weeks")

    def test_format_duration_small_and_negative_values(self) -> None:
        self.assertEqual(format_duration_ms(0), "0 days")
        self.assertEqual(format_duration_ms(3 * 60 * 60 * 1000), "0 days")
        self.assertEqual(format_duration_ms(-5), "0 days")

    def test_format_clock(self) -> None:
        self.assertEqual(format_clock_ms(3_723_000), "1h 2m 3s")
        self.assertEqual(format_clock_ms(999), "0h 0m 0s")
        self.assertEqual(format_clock_ms(-10), "0h 0m 0s")


if __name__ == "__main__":
    unittest.main()
