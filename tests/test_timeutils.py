import unittest
from datetime import date, datetime, timezone

from tripboard.timeutils import (
    format_clock_time,
    intervals_overlap,
    parse_clock_time,
    parse_instant,
    resolve_timezone,
    resolve_window,
)


class ClockTimeTests(unittest.TestCase):
    def test_parse_twelve_hour_labels(self) -> None:
        self.assertEqual(parse_clock_time("2:30 PM"), 14 * 60 + 30)
        self.assertEqual(parse_clock_time("12:05 am"), 5)
        self.assertEqual(parse_clock_time("12:00 PM"), 12 * 60)
        self.assertEqual(parse_clock_time("9:15 a.m."), 9 * 60 + 15)

    def test_parse_twenty_four_hour_labels(self) -> None:
        self.assertEqual(parse_clock_time("14:30"), 14 * 60 + 30)
        self.assertEqual(parse_clock_time("0:00"), 0)

    def test_unparseable_labels_return_none(self) -> None:
        for label in ("", None, "noon", "25:00", "13:00 PM", "2:75 PM", "TBD"):
            self.assertIsNone(parse_clock_time(label), label)

    def test_format_clock_time(self) -> None:
        self.assertEqual(format_clock_time(datetime(2026, 6, 1, 14, 5, tzinfo=timezone.utc)), "2:05 PM")
        self.assertEqual(format_clock_time(datetime(2026, 6, 1, 0, 30, tzinfo=timezone.utc)), "12:30 AM")
        self.assertEqual(format_clock_time(None), "TBD")


class InstantTests(unittest.TestCase):
    def test_parse_instant_accepts_z_suffix(self) -> None:
        parsed = parse_instant("2026-06-01T10:00:00Z")
        self.assertEqual(parsed, datetime(2026, 6, 1, 10, 0, tzinfo=timezone.utc))

    def test_parse_instant_naive_is_utc(self) -> None:
        self.assertEqual(parse_instant("2026-06-01T10:00:00").tzinfo, timezone.utc)

    def test_parse_instant_date_is_midnight(self) -> None:
        self.assertEqual(parse_instant(date(2026, 6, 1)), datetime(2026, 6, 1, tzinfo=timezone.utc))

    def test_parse_instant_blank_and_invalid(self) -> None:
        self.assertIsNone(parse_instant(""))
        with self.assertRaises(ValueError):
            parse_instant("not-a-date")

    def test_resolve_timezone(self) -> None:
        self.assertIs(resolve_timezone("UTC"), timezone.utc)
        self.assertIs(resolve_timezone(""), timezone.utc)


class WindowTests(unittest.TestCase):
    def test_default_duration_applies_without_end(self) -> None:
        window = resolve_window("2026-06-01T14:00:00Z")
        self.assertEqual(window, (date(2026, 6, 1), 14 * 60, 15 * 60))

    def test_explicit_end_is_used(self) -> None:
        window = resolve_window("2026-06-01T14:30:00Z", "2026-06-01T16:00:00Z")
        self.assertEqual(window, (date(2026, 6, 1), 14 * 60 + 30, 16 * 60))

    def test_end_before_start_falls_back_to_default(self) -> None:
        window = resolve_window("2026-06-01T14:00:00Z", "2026-06-01T13:00:00Z", default_minutes=30)
        self.assertEqual(window, (date(2026, 6, 1), 14 * 60, 14 * 60 + 30))

    def test_time_label_overrides_start(self) -> None:
        window = resolve_window("2026-06-01T00:00:00Z", time_label="7:30 PM")
        self.assertEqual(window, (date(2026, 6, 1), 19 * 60 + 30, 20 * 60 + 30))

    def test_missing_start(self) -> None:
        self.assertIsNone(resolve_window(None))

    def test_intervals_touching_do_not_overlap(self) -> None:
        self.assertFalse(intervals_overlap(60, 120, 120, 180))
        self.assertTrue(intervals_overlap(60, 121, 120, 180))


if __name__ == "__main__":
    unittest.main()
