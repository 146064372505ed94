"""Tests for live shift statistics."""

from datetime import datetime, timezone

import pytest

from rideshare_tracker.database.models import Shift
from rideshare_tracker.tracker.stats import compute_shift_stats


def test_no_shift_gives_zeros():
    stats = compute_shift_stats(None)
    assert stats.rides == 0
    assert stats.rate_per_hour == 0.0


def test_ended_shift_uses_end_time():
    shift = Shift(
        started_at="2024-05-01T10:00:00+00:00",
        ended_at="2024-05-01T12:00:00+00:00",
        earnings_cents=5000, tips_cents=1000, ride_count=4,
        distance_miles=31.5,
    )
    stats = compute_shift_stats(shift)
    assert stats.duration == 7200
    assert stats.rate_per_hour == pytest.approx(25.0)
    assert stats.tips == 1000
    assert stats.rides == 4
    assert stats.distance == 31.5


def test_active_shift_runs_to_now():
    shift = Shift(started_at="2024-05-01T10:00:00Z", earnings_cents=1500)
    now = datetime(2024, 5, 1, 10, 30, tzinfo=timezone.utc)
    stats = compute_shift_stats(shift, now=now)
    assert stats.duration == 1800
    assert stats.rate_per_hour == pytest.approx(30.0)


def test_rate_excludes_tips():
    shift = Shift(
        started_at="2024-05-01T10:00:00+00:00",
        ended_at="2024-05-01T11:00:00+00:00",
        earnings_cents=2000, tips_cents=5000,
    )
    assert compute_shift_stats(shift).rate_per_hour == pytest.approx(20.0)


def test_zero_duration_has_zero_rate():
    shift = Shift(
        started_at="2024-05-01T10:00:00+00:00",
        ended_at="2024-05-01T10:00:00+00:00",
        earnings_cents=2000,
    )
    assert compute_shift_stats(shift).rate_per_hour == 0.0
