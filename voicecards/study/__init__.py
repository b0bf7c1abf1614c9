"""
Study module.

Provides:
- SM-2 scheduling (scheduler)
- The per-user fetch -> reveal -> grade session machine (session_service)
- Deck management and statistics (deck_service)
"""

from voicecards.study.scheduler import (
    Grade,
    ScheduleResult,
    SchedulingState,
    SM2Config,
    SM2Scheduler,
    describe_interval,
    parse_grade,
)

__all__ = [
    "Grade",
    "ScheduleResult",
    "SchedulingState",
    "SM2Config",
    "SM2Scheduler",
    "describe_interval",
    "parse_grade",
]
