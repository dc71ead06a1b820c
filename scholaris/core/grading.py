"""
Grade arithmetic: percentage and the letter-grade threshold table.
"""

from typing import List, Tuple

from .exceptions import ValidationError

# Inclusive lower bounds, checked top-down.
LETTER_GRADE_THRESHOLDS: List[Tuple[float, str]] = [
    (90, "A+"),
    (85, "A"),
    (80, "A-"),
    (75, "B+"),
    (70, "B"),
    (65, "B-"),
    (60, "C+"),
    (55, "C"),
    (50, "C-"),
    (45, "D"),
]
FAILING_GRADE = "F"


def letter_grade(percentage: float) -> str:
    """Map a percentage to its letter grade."""
    for lower_bound, letter in LETTER_GRADE_THRESHOLDS:
        if percentage >= lower_bound:
            return letter
    return FAILING_GRADE


def percentage(points_earned: float, max_points: float) -> float:
    """Unrounded ``points_earned / max_points * 100``."""
    if max_points is None or max_points <= 0:
        raise ValidationError("Max points must be greater than 0", details={"field": "maxPoints"})
    return (points_earned / max_points) * 100


def validate_points(points_earned: float, max_points: float) -> None:
    """Enforce 0 <= points_earned <= max_points."""
    if max_points is None or max_points <= 0:
        raise ValidationError("Max points must be greater than 0", details={"field": "maxPoints"})
    if points_earned is None or points_earned < 0 or points_earned > max_points:
        raise ValidationError(
            "Points earned must be between 0 and max points",
            details={"field": "pointsEarned"}
        )
