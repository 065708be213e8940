"""XP and level arithmetic.

All functions here are pure: they take numbers and return numbers (or
small dicts) without touching the database. `services.StudyService`
uses them to award XP when a session ends.
"""

from __future__ import annotations

import math

XP_PER_MINUTE = 1
XP_PER_PROBLEM = 5
XP_PER_CORRECT = 3
XP_PER_STREAK_BONUS = 10

LEVEL_TITLES = [
    (50, "Grandmaster"),
    (40, "Master"),
    (30, "Expert"),
    (20, "Advanced"),
    (15, "Professional"),
    (10, "Senior"),
    (5, "Intermediate"),
    (1, "Beginner"),
]

STREAK_TIERS = [
    (100, "Legend"),
    (50, "Master"),
    (30, "Expert"),
    (14, "Pro"),
    (7, "Intermediate"),
    (3, "Beginner"),
    (0, "Newcomer"),
]


def level_from_xp(total_xp: int) -> int:
    """Return the level for `total_xp`: floor(sqrt(xp / 100)) + 1."""
    xp = max(0, int(total_xp))
    # isqrt keeps exact thresholds (e.g. 400 XP is level 3, not 2.9999)
    return math.isqrt(xp // 100) + 1


def xp_required_for_level(level: int) -> int:
    """Return the total XP at which `level` is reached."""
    if level < 1:
        raise ValueError("level must be >= 1")
    return (level - 1) ** 2 * 100


def xp_to_next_level(current_xp: int) -> dict:
    """Describe progress from the current level towards the next one."""
    current_xp = max(0, int(current_xp))
    current_level = level_from_xp(current_xp)
    next_level = current_level + 1
    floor_xp = xp_required_for_level(current_level)
    next_xp = xp_required_for_level(next_level)
    progress = (current_xp - floor_xp) / (next_xp - floor_xp) * 100
    return {
        'current_level': current_level,
        'next_level': next_level,
        'xp_to_next': next_xp - current_xp,
        'progress': round(max(0.0, min(100.0, progress)), 2),
    }


def session_xp(duration_minutes: float, problems_solved: int, correct_answers: int, streak_bonus: int = 0) -> int:
    """XP earned by a single study session."""
    study = math.floor(max(0.0, duration_minutes) * XP_PER_MINUTE)
    return (
        study
        + max(0, problems_solved) * XP_PER_PROBLEM
        + max(0, correct_answers) * XP_PER_CORRECT
        + max(0, streak_bonus) * XP_PER_STREAK_BONUS
    )


def level_title(level: int) -> str:
    for threshold, title in LEVEL_TITLES:
        if level >= threshold:
            return title
    return LEVEL_TITLES[-1][1]


def streak_tier(streak: int) -> str:
    for threshold, name in STREAK_TIERS:
        if streak >= threshold:
            return name
    return STREAK_TIERS[-1][1]


def accuracy(correct: int, total: int) -> int:
    """Percentage of correct answers rounded to an integer (0 when no answers)."""
    if total <= 0:
        return 0
    return round(correct / total * 100)
