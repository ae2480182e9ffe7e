"""
Common helpers: day/hour buckets and numeric formatting.
"""

import math
from datetime import datetime, timezone


def utc_day(timestamp: float) -> str:
    """Calendar day (UTC) of a timestamp, as YYYY-MM-DD."""
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).strftime("%Y-%m-%d")


def hour_bucket(timestamp: float) -> int:
    """Index of the wall-clock hour containing timestamp."""
    return int(timestamp // 3600)


def format_duration(seconds: float) -> str:
    """Format duration in seconds to human-readable string."""
    if seconds < 60:
        return f"{seconds:.2f}s"
    elif seconds < 3600:
        return f"{seconds / 60:.1f}m"
    return f"{seconds / 3600:.1f}h"


def floor_to_step(value: float, step: float) -> float:
    """
    Floor value to a multiple of step.

    A small tolerance keeps values like 0.3 / 0.1 from flooring one step low.
    """
    if step <= 0:
        raise ValueError("step must be positive")
    steps = math.floor(value / step + 1e-9)
    return round(steps * step, 12)


def calculate_percentage(value: float, total: float) -> float:
    """Calculate percentage with zero-division protection."""
    if total == 0:
        return 0.0
    return (value / total) * 100


def format_profit(percentage: float) -> str:
    """Format a percentage value with an explicit sign, e.g. ``+1.23%``."""
    if percentage >= 0:
        return f"+{percentage:.2f}%"
    return f"{percentage:.2f}%"

