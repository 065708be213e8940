"""Ranking period windows and UTC time helpers."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional

PERIOD_TYPES = ("today", "weekly", "monthly", "allTime")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes read back from SQLite."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def period_window(period_type: str, now: Optional[datetime] = None) -> tuple[Optional[datetime], str]:
    """Return `(start, label)` for a ranking period.

    `start` is None for `allTime`. Weeks start on Monday (ISO weeks) and
    the label has the form `2026-W42`; months are labelled `2026-10`.
    """
    if period_type not in PERIOD_TYPES:
        raise ValueError(f"invalid ranking type: {period_type}")
    now = as_utc(now or utcnow())
    midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
    if period_type == "today":
        return midnight, midnight.date().isoformat()
    if period_type == "weekly":
        start = midnight - timedelta(days=midnight.weekday())
        iso_year, iso_week, _ = start.isocalendar()
        return start, f"{iso_year}-W{iso_week:02d}"
    if period_type == "monthly":
        start = midnight.replace(day=1)
        return start, f"{start.year}-{start.month:02d}"
    return None, "all"
