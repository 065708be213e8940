"""Consecutive-day streak derivation."""

from __future__ import annotations

from datetime import date, timedelta
from typing import Iterable


def current_streak(days: Iterable[date], today: date) -> int:
    """Count consecutive study days ending today (or yesterday).

    Walks backward from `today` and stops at the first missing day. When
    nothing is recorded for today yet the walk starts from yesterday, so
    an unbroken run is still reported until the day is over.
    """
    present = set(days)
    if not present:
        return 0
    cursor = today if today in present else today - timedelta(days=1)
    streak = 0
    while cursor in present:
        streak += 1
        cursor -= timedelta(days=1)
    return streak


def longest_streak(days: Iterable[date]) -> int:
    """Length of the longest run of consecutive days."""
    ordered = sorted(set(days))
    best = 0
    run = 0
    previous = None
    for d in ordered:
        if previous is not None and d - previous == timedelta(days=1):
            run += 1
        else:
            run = 1
        best = max(best, run)
        previous = d
    return best
