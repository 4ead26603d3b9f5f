"""Tests for cron schedule evaluation."""

from datetime import datetime, timedelta, timezone

from django.test import TestCase

from relay.exceptions import InvalidRequestError
from relay.sync.schedule import next_run_after, parse_schedule


def utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


class NextRunAfterTests(TestCase):
    def test_daily(self):
        self.assertEqual(next_run_after("0 3 * * *", utc(2024, 1, 15, 10, 30)), utc(2024, 1, 16, 3, 0))

    def test_step_minutes(self):
        self.assertEqual(next_run_after("*/15 * * * *", utc(2024, 1, 15, 10, 7)), utc(2024, 1, 15, 10, 15))

    def test_strictly_after(self):
        self.assertEqual(next_run_after("0 * * * *", utc(2024, 1, 15, 10, 0)), utc(2024, 1, 15, 11, 0))
        self.assertEqual(next_run_after("0 * * * *", utc(2024, 1, 15, 10, 0, 30)), utc(2024, 1, 15, 11, 0))

    def test_day_of_month_or_day_of_week(self):
        # Either restricted day field matches: the 1st of the month or a Monday
        self.assertEqual(next_run_after("0 0 1 * 1", utc(2024, 1, 2, 0, 0)), utc(2024, 1, 8, 0, 0))

    def test_month_rollover(self):
        self.assertEqual(next_run_after("30 6 1 * *", utc(2024, 12, 31, 23, 59)), utc(2025, 1, 1, 6, 30))

    def test_naive_input_is_utc(self):
        self.assertEqual(next_run_after("0 3 * * *", datetime(2024, 1, 15, 10, 30)), utc(2024, 1, 16, 3, 0))

    def test_other_timezones_are_converted(self):
        plus_two = timezone(timedelta(hours=2))
        # 04:30 at +02:00 is 02:30 UTC
        self.assertEqual(
            next_run_after("0 3 * * *", datetime(2024, 1, 15, 4, 30, tzinfo=plus_two)),
            utc(2024, 1, 15, 3, 0),
        )

    def test_never_fires(self):
        with self.assertRaises(InvalidRequestError):
            next_run_after("0 0 30 2 *", utc(2024, 1, 1))


class ParseScheduleTests(TestCase):
    def test_wrong_field_count(self):
        with self.assertRaises(InvalidRequestError):
            parse_schedule("0 3 * *")
        with self.assertRaises(InvalidRequestError):
            parse_schedule("")

    def test_out_of_range(self):
        with self.assertRaises(InvalidRequestError):
            parse_schedule("61 * * * *")

    def test_normalizes_whitespace(self):
        schedule = parse_schedule("  0   3 * * 1-5 ")
        self.assertEqual(schedule.expression, "0 3 * * 1-5")
        self.assertEqual(schedule.hours, frozenset({3}))
        self.assertTrue(schedule.dow_restricted)
        self.assertFalse(schedule.dom_restricted)
