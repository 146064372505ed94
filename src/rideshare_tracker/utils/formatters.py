"""Formatting utilities for display values."""


def format_cents(cents: int) -> str:
    """Format integer cents as USD currency."""
    sign = "-" if cents < 0 else ""
    return f"{sign}${abs(cents) / 100:,.2f}"


def format_duration(seconds: int) -> str:
    """Format a duration as H:MM:SS."""
    seconds = max(int(seconds), 0)
    hours, rem = divmod(seconds, 3600)
    minutes, secs = divmod(rem, 60)
    return f"{hours}:{minutes:02d}:{secs:02d}"


def format_rate(dollars_per_hour: float) -> str:
    """Format an hourly rate, e.g. '$23.50/hr'."""
    return f"${dollars_per_hour:,.2f}/hr"


def format_miles(miles: float) -> str:
    return f"{miles:,.1f} mi"
