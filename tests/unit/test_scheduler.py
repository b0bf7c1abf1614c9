"""
Unit tests for the SM-2 scheduler and grade parsing.
"""

from datetime import UTC, datetime, timedelta

import pytest

from voicecards.errors import UnrecognizedGradeError
from voicecards.study.scheduler import (
    LATEST_DUE,
    Grade,
    SchedulingState,
    SM2Config,
    SM2Scheduler,
    describe_interval,
    parse_grade,
)

NOW = datetime(2024, 3, 1, 9, 0, tzinfo=UTC)


@pytest.fixture
def scheduler():
    return SM2Scheduler()


class TestAgain:
    """AGAIN resets progress and lowers ease."""

    @pytest.mark.parametrize("ease", [1.3, 1.4, 1.5, 2.5, 3.1])
    @pytest.mark.parametrize("repetitions,interval", [(0, 0), (1, 1), (5, 40)])
    def test_again_resets(self, scheduler, ease, repetitions, interval):
        """AGAIN yields reps 0, interval 0 and ease max(1.3, ease - 0.2)."""
        prior = SchedulingState(ease_factor=ease, interval_days=interval, repetitions=repetitions)
        result = scheduler.compute_next(prior, Grade.AGAIN, NOW)

        assert result.repetitions == 0
        assert result.interval_days == 0
        assert result.ease_factor == pytest.approx(max(1.3, ease - 0.2))

    def test_again_due_in_ten_minutes(self, scheduler):
        """A zero-day interval comes back after the relearn delay."""
        result = scheduler.compute_next(SchedulingState(), Grade.AGAIN, NOW)
        assert result.next_due_at == NOW + timedelta(minutes=10)

    def test_repeated_again_never_below_floor(self, scheduler):
        """Ease is non-increasing under AGAIN and bottoms out at 1.3."""
        state = SchedulingState(ease_factor=2.5, interval_days=30, repetitions=6)
        previous = state.ease_factor
        for _ in range(20):
            state = scheduler.compute_next(state, Grade.AGAIN, NOW).state
            assert state.ease_factor <= previous
            assert state.ease_factor >= 1.3
            previous = state.ease_factor
        assert state.ease_factor == pytest.approx(1.3)


class TestSuccessfulReviews:
    """First, second and later successful reviews."""

    @pytest.mark.parametrize(
        "grade,interval", [(Grade.HARD, 1), (Grade.GOOD, 1), (Grade.EASY, 4)]
    )
    def test_first_review_table(self, scheduler, grade, interval):
        result = scheduler.compute_next(SchedulingState(), grade, NOW)
        assert result.interval_days == interval
        assert result.repetitions == 1

    @pytest.mark.parametrize(
        "grade,interval", [(Grade.HARD, 1), (Grade.GOOD, 6), (Grade.EASY, 10)]
    )
    def test_second_review_table(self, scheduler, grade, interval):
        prior = SchedulingState(ease_factor=2.5, interval_days=1, repetitions=1)
        result = scheduler.compute_next(prior, grade, NOW)
        assert result.interval_days == interval
        assert result.repetitions == 2

    def test_good_good_good_scenario(self, scheduler):
        """1 day, then 6 days, then round(6 x 2.5) = 15 days."""
        first = scheduler.compute_next(scheduler.initial_state(), Grade.GOOD, NOW)
        assert (first.interval_days, first.repetitions, first.ease_factor) == (1, 1, 2.5)

        second = scheduler.compute_next(first.state, Grade.GOOD, NOW)
        assert (second.interval_days, second.repetitions, second.ease_factor) == (6, 2, 2.5)

        third = scheduler.compute_next(second.state, Grade.GOOD, NOW)
        assert (third.interval_days, third.repetitions, third.ease_factor) == (15, 3, 2.5)
        assert third.next_due_at == NOW + timedelta(days=15)

    def test_hard_growth_and_ease_penalty(self, scheduler):
        prior = SchedulingState(ease_factor=2.5, interval_days=10, repetitions=3)
        result = scheduler.compute_next(prior, Grade.HARD, NOW)
        assert result.interval_days == 12
        assert result.ease_factor == pytest.approx(2.35)
        assert result.repetitions == 4

    def test_easy_growth_and_ease_bonus(self, scheduler):
        prior = SchedulingState(ease_factor=2.0, interval_days=10, repetitions=2)
        result = scheduler.compute_next(prior, Grade.EASY, NOW)
        assert result.interval_days == 26
        assert result.ease_factor == pytest.approx(2.15)

    def test_hard_floor_on_ease(self, scheduler):
        prior = SchedulingState(ease_factor=1.35, interval_days=5, repetitions=4)
        result = scheduler.compute_next(prior, Grade.HARD, NOW)
        assert result.ease_factor == pytest.approx(1.3)

    def test_rounds_half_up(self, scheduler):
        """5 x 2.5 = 12.5 rounds to 13, not banker's 12."""
        prior = SchedulingState(ease_factor=2.5, interval_days=5, repetitions=2)
        assert scheduler.compute_next(prior, Grade.GOOD, NOW).interval_days == 13

    def test_no_upper_bound(self, scheduler):
        state = SchedulingState(ease_factor=2.5, interval_days=1, repetitions=1)
        for _ in range(15):
            state = scheduler.compute_next(state, Grade.EASY, NOW).state
        assert state.interval_days > 36500
        assert state.ease_factor > 4.0

    def test_huge_interval_saturates_due_date(self, scheduler):
        prior = SchedulingState(ease_factor=3.0, interval_days=10**12, repetitions=20)
        result = scheduler.compute_next(prior, Grade.GOOD, NOW)
        assert result.interval_days == 3 * 10**12
        assert result.next_due_at == LATEST_DUE

    def test_due_date_just_below_limit(self, scheduler):
        days = (LATEST_DUE - NOW).days
        assert scheduler.due_at(days, NOW) == NOW + timedelta(days=days)
        assert scheduler.due_at(days + 1, NOW) == LATEST_DUE

    def test_pure(self, scheduler):
        """Same prior and grade give the same state regardless of time."""
        prior = SchedulingState(ease_factor=2.2, interval_days=7, repetitions=3)
        a = scheduler.compute_next(prior, Grade.GOOD, NOW)
        b = scheduler.compute_next(prior, Grade.GOOD, NOW + timedelta(days=3))
        assert a.state == b.state
        assert b.next_due_at - a.next_due_at == timedelta(days=3)

    def test_configured_relearn_delay(self):
        scheduler = SM2Scheduler(SM2Config(relearn_delay=timedelta(minutes=5)))
        result = scheduler.compute_next(SchedulingState(), Grade.AGAIN, NOW)
        assert result.next_due_at == NOW + timedelta(minutes=5)


class TestParseGrade:
    """Strict free-text grade parsing."""

    @pytest.mark.parametrize(
        "text,grade",
        [
            ("again", Grade.AGAIN),
            ("  Forgot ", Grade.AGAIN),
            ("hard", Grade.HARD),
            ("GOOD", Grade.GOOD),
            ("okay", Grade.GOOD),
            ("easy", Grade.EASY),
            ("perfect", Grade.EASY),
        ],
    )
    def test_known_aliases(self, text, grade):
        assert parse_grade(text) is grade

    def test_unknown_raises(self):
        with pytest.raises(UnrecognizedGradeError) as exc_info:
            parse_grade("banana")
        assert exc_info.value.text == "banana"

    def test_unknown_is_value_error(self):
        with pytest.raises(ValueError):
            parse_grade("")

    def test_explicit_default(self):
        assert parse_grade("banana", default=Grade.GOOD) is Grade.GOOD

    def test_correctness_threshold(self):
        assert not Grade.AGAIN.is_correct
        assert not Grade.HARD.is_correct
        assert Grade.GOOD.is_correct
        assert Grade.EASY.is_correct


class TestDescribeInterval:
    @pytest.mark.parametrize(
        "days,text",
        [
            (0, "10 minutes"),
            (1, "1 day"),
            (6, "6 days"),
            (29, "29 days"),
            (30, "1 month"),
            (45, "2 months"),
            (364, "12 months"),
            (365, "1 year"),
            (800, "2 years"),
        ],
    )
    def test_describe(self, days, text):
        assert describe_interval(days) == text
