"""
SM-2 Spaced Repetition Scheduler.

Variant of SuperMemo 2 with four self-reported grades:

AGAIN (0) - Forgot, show again in a few minutes
HARD  (2) - Recalled with serious difficulty
GOOD  (3) - Recalled with normal effort
EASY  (5) - Recalled instantly

The scheduler is pure: the only input that is not part of the prior state
and grade is the clock used to stamp ``next_due_at``.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import IntEnum

from loguru import logger

from voicecards.config import get_settings
from voicecards.errors import UnrecognizedGradeError

LATEST_DUE = datetime.max.replace(tzinfo=UTC)


class Grade(IntEnum):
    """Self-reported recall strength. Values follow the 0-5 SM-2 scale."""

    AGAIN = 0
    HARD = 2
    GOOD = 3
    EASY = 5

    @property
    def is_correct(self) -> bool:
        return self >= Grade.GOOD


_GRADE_ALIASES: dict[str, Grade] = {
    "again": Grade.AGAIN,
    "forgot": Grade.AGAIN,
    "fail": Grade.AGAIN,
    "wrong": Grade.AGAIN,
    "hard": Grade.HARD,
    "difficult": Grade.HARD,
    "good": Grade.GOOD,
    "correct": Grade.GOOD,
    "ok": Grade.GOOD,
    "okay": Grade.GOOD,
    "easy": Grade.EASY,
    "simple": Grade.EASY,
    "perfect": Grade.EASY,
}


def parse_grade(text: str, default: Grade | None = None) -> Grade:
    """
    Normalize free-text grade input to a Grade.

    Args:
        text: User input such as "good", " Again ", "perfect"
        default: Grade to fall back to for unrecognized input. When omitted,
                 unrecognized input raises.

    Returns:
        The matching Grade

    Raises:
        UnrecognizedGradeError: If the text is unknown and no default was given
    """
    normalized = (text or "").strip().lower()
    grade = _GRADE_ALIASES.get(normalized)
    if grade is not None:
        return grade

    if default is None:
        raise UnrecognizedGradeError(text)

    logger.warning("Unrecognized grade {!r}, falling back to {}", text, default.name)
    return default


# =============================================================================
# SM-2 Algorithm
# =============================================================================


@dataclass(frozen=True)
class SM2Config:
    """Configuration for the SM-2 variant."""

    initial_ease_factor: float = 2.5
    minimum_ease_factor: float = 1.3
    relearn_delay: timedelta = timedelta(minutes=10)
    hard_multiplier: float = 1.2
    easy_bonus: float = 1.3

    @classmethod
    def from_settings(cls) -> SM2Config:
        settings = get_settings()
        return cls(
            initial_ease_factor=settings.srs_default_ease_factor,
            relearn_delay=timedelta(minutes=settings.srs_relearn_minutes),
        )


# Intervals (days) for the first and second successful review
FIRST_INTERVALS: dict[Grade, int] = {Grade.HARD: 1, Grade.GOOD: 1, Grade.EASY: 4}
SECOND_INTERVALS: dict[Grade, int] = {Grade.HARD: 1, Grade.GOOD: 6, Grade.EASY: 10}

EASE_ADJUSTMENTS: dict[Grade, float] = {
    Grade.AGAIN: -0.2,
    Grade.HARD: -0.15,
    Grade.GOOD: 0.0,
    Grade.EASY: 0.15,
}


@dataclass(frozen=True)
class SchedulingState:
    """Scheduling parameters carried from one review to the next."""

    ease_factor: float = 2.5
    interval_days: int = 0
    repetitions: int = 0


@dataclass(frozen=True)
class ScheduleResult:
    """Output of one scheduling step."""

    ease_factor: float
    interval_days: int
    repetitions: int
    next_due_at: datetime

    @property
    def state(self) -> SchedulingState:
        return SchedulingState(
            ease_factor=self.ease_factor,
            interval_days=self.interval_days,
            repetitions=self.repetitions,
        )


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


class SM2Scheduler:
    """
    Computes the next review from the previous scheduling state and a grade.

    Ease factor never drops below ``minimum_ease_factor`` and has no upper
    bound; intervals grow without limit.
    """

    def __init__(self, config: SM2Config | None = None):
        self.config = config or SM2Config()

    def initial_state(self) -> SchedulingState:
        """Parameters used for a card that has never been reviewed."""
        return SchedulingState(ease_factor=self.config.initial_ease_factor)

    def compute_next(
        self,
        state: SchedulingState,
        grade: Grade,
        now: datetime | None = None,
    ) -> ScheduleResult:
        """
        Calculate the next review.

        Args:
            state: Scheduling state after the previous review
            grade: Grade for the review being recorded
            now: Review time (defaults to the current UTC time)

        Returns:
            ScheduleResult with the new state and due timestamp
        """
        grade = Grade(grade)
        now = now or datetime.now(UTC)
        floor = self.config.minimum_ease_factor

        if grade == Grade.AGAIN:
            ease = max(floor, state.ease_factor + EASE_ADJUSTMENTS[Grade.AGAIN])
            return ScheduleResult(
                ease_factor=ease,
                interval_days=0,
                repetitions=0,
                next_due_at=self.due_at(0, now),
            )

        if state.repetitions == 0:
            interval = FIRST_INTERVALS[grade]
            repetitions = 1
        elif state.repetitions == 1:
            interval = SECOND_INTERVALS[grade]
            repetitions = 2
        else:
            if grade == Grade.HARD:
                growth = self.config.hard_multiplier
            elif grade == Grade.GOOD:
                growth = state.ease_factor
            else:
                growth = state.ease_factor * self.config.easy_bonus
            interval = _round_half_up(state.interval_days * growth)
            repetitions = state.repetitions + 1

        ease = max(floor, state.ease_factor + EASE_ADJUSTMENTS[grade])

        return ScheduleResult(
            ease_factor=ease,
            interval_days=interval,
            repetitions=repetitions,
            next_due_at=self.due_at(interval, now),
        )

    def due_at(self, interval_days: int, reviewed_at: datetime) -> datetime:
        """Due timestamp for an interval; zero-day intervals relearn in minutes."""
        if interval_days <= 0:
            return reviewed_at + self.config.relearn_delay
        if interval_days > (LATEST_DUE - reviewed_at).days:
            # Interval stays unbounded; only the timestamp saturates.
            return LATEST_DUE
        return reviewed_at + timedelta(days=interval_days)


def describe_interval(interval_days: int) -> str:
    """
    Human-readable review delay.

    Examples:
        0 -> "10 minutes", 1 -> "1 day", 12 -> "12 days",
        45 -> "2 months", 800 -> "2 years"
    """
    if interval_days < 1:
        return "10 minutes"
    if interval_days == 1:
        return "1 day"
    if interval_days < 30:
        return f"{interval_days} days"
    if interval_days < 365:
        months = _round_half_up(interval_days / 30)
        return f"{months} month{'s' if months > 1 else ''}"
    years = _round_half_up(interval_days / 365)
    return f"{years} year{'s' if years > 1 else ''}"
