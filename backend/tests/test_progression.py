from datetime import date, datetime, timezone

import pytest

from studyapp.utils import progression, streaks
from studyapp.utils.periods import period_window


def test_level_thresholds():
    assert progression.level_from_xp(0) == 1
    assert progression.level_from_xp(99) == 1
    assert progression.level_from_xp(100) == 2
    assert progression.level_from_xp(399) == 2
    assert progression.level_from_xp(400) == 3
    assert progression.level_from_xp(-50) == 1


def test_level_mapping_is_monotonic():
    levels = [progression.level_from_xp(xp) for xp in range(0, 20000, 37)]
    assert levels == sorted(levels)


def test_xp_required_is_inverse_of_level():
    for level in range(1, 60):
        required = progression.xp_required_for_level(level)
        assert progression.level_from_xp(required) == level
        if required > 0:
            assert progression.level_from_xp(required - 1) == level - 1


def test_xp_required_rejects_level_zero():
    with pytest.raises(ValueError):
        progression.xp_required_for_level(0)


def test_xp_to_next_level():
    info = progression.xp_to_next_level(250)
    assert info['current_level'] == 2
    assert info['next_level'] == 3
    assert info['xp_to_next'] == 150
    assert info['progress'] == 50.0


def test_session_xp():
    # 10 minutes, 4 problems, 3 correct, first session of the day
    assert progression.session_xp(10, 4, 3, 1) == 10 + 20 + 9 + 10
    assert progression.session_xp(0.9, 0, 0) == 0


def test_titles_and_accuracy():
    assert progression.level_title(1) == 'Beginner'
    assert progression.level_title(12) == 'Senior'
    assert progression.streak_tier(0) == 'Newcomer'
    assert progression.streak_tier(7) == 'Intermediate'
    assert progression.accuracy(3, 4) == 75
    assert progression.accuracy(0, 0) == 0


def test_current_streak_counts_back_from_today():
    today = date(2026, 3, 10)
    days = [date(2026, 3, 10), date(2026, 3, 9), date(2026, 3, 8), date(2026, 3, 6)]
    assert streaks.current_streak(days, today) == 3


def test_current_streak_survives_until_day_ends():
    today = date(2026, 3, 10)
    assert streaks.current_streak([date(2026, 3, 9), date(2026, 3, 8)], today) == 2
    assert streaks.current_streak([date(2026, 3, 8)], today) == 0
    assert streaks.current_streak([], today) == 0


def test_longest_streak():
    days = [date(2026, 1, d) for d in (1, 2, 3, 5, 6, 7, 8, 20)]
    assert streaks.longest_streak(days) == 4
    assert streaks.longest_streak([]) == 0


def test_period_windows():
    now = datetime(2026, 10, 15, 13, 30, tzinfo=timezone.utc)  # a Thursday
    start, label = period_window('weekly', now)
    assert start == datetime(2026, 10, 12, tzinfo=timezone.utc)
    assert label == '2026-W42'
    start, label = period_window('monthly', now)
    assert start.day == 1 and label == '2026-10'
    start, label = period_window('today', now)
    assert start == datetime(2026, 10, 15, tzinfo=timezone.utc)
    assert period_window('allTime', now) == (None, 'all')
    with pytest.raises(ValueError):
        period_window('yearly', now)
