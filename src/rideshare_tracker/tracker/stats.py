"""Live shift statistics shown on the active-shift and summary screens."""

from datetime import datetime
from typing import Optional

from rideshare_tracker.database.models import Shift, ShiftStats
from rideshare_tracker.utils.timeutil import parse_iso, utc_now


def compute_shift_stats(shift: Optional[Shift],
                        now: Optional[datetime] = None) -> ShiftStats:
    """Derive display stats from a shift row.

    Duration runs to ``ended_at`` for finished shifts and to ``now`` for
    the active one. The hourly rate counts fares only, not tips.
    """
    if shift is None:
        return ShiftStats()

    start = parse_iso(shift.started_at)
    end = parse_iso(shift.ended_at) if shift.ended_at else (now or utc_now())
    duration = max((end - start).total_seconds(), 0.0)
    hours = duration / 3600.0
    rate = (shift.earnings_cents / 100.0) / hours if hours > 0 else 0.0

    return ShiftStats(
        rides=shift.ride_count,
        earnings=shift.earnings_cents,
        tips=shift.tips_cents,
        duration=int(duration),
        rate_per_hour=rate,
        distance=shift.distance_miles,
    )
