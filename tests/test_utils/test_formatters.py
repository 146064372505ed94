"""Tests for display formatters."""

from rideshare_tracker.utils.formatters import (
    format_cents,
    format_duration,
    format_miles,
    format_rate,
)


class TestFormatCents:
    def test_basic(self):
        assert format_cents(2550) == "$25.50"

    def test_zero(self):
        assert format_cents(0) == "$0.00"

    def test_thousands(self):
        assert format_cents(123456) == "$1,234.56"

    def test_negative(self):
        assert format_cents(-199) == "-$1.99"


class TestFormatDuration:
    def test_hours_minutes_seconds(self):
        assert format_duration(3725) == "1:02:05"

    def test_under_a_minute(self):
        assert format_duration(9) == "0:00:09"

    def test_negative_clamped(self):
        assert format_duration(-5) == "0:00:00"


def test_format_rate():
    assert format_rate(23.456) == "$23.46/hr"


def test_format_miles():
    assert format_miles(12.34) == "12.3 mi"
