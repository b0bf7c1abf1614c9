"""
Study session state machine.

Each user has at most one card on screen at a time:

    Idle --get_next_card--> Presented --reveal_answer--> Revealed
      ^                        |                            |
      +------ skip_card -------+---- grade_card/skip_card --+

Every operation runs under a per-user lock, and every state write is a
versioned compare-and-swap on ``user_card_state``, so two writers can never
both move the same user's session forward.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from loguru import logger

from voicecards.core.clock import as_utc, utcnow
from voicecards.core.locks import KeyedLock
from voicecards.core.records import ReviewRecord, SessionPhase, SessionState
from voicecards.db.models import Card
from voicecards.db.repository import SqlCardRepository
from voicecards.errors import InvalidStateError, NotFoundError
from voicecards.study.scheduler import (
    Grade,
    SM2Config,
    SM2Scheduler,
    describe_interval,
    parse_grade,
)


@dataclass(frozen=True)
class CardPrompt:
    """The question side of the card currently presented to the user."""

    card_id: str
    front: str
    hint: str | None
    deck_id: str
    deck_name: str
    cards_remaining: int
    session_id: str | None
    image_url: str | None = None
    answer_revealed: bool = False


@dataclass(frozen=True)
class RevealedAnswer:
    card_id: str
    answer: str
    hint: str | None


@dataclass(frozen=True)
class GradeOutcome:
    """Result of grading the current card."""

    card_id: str
    grade: Grade
    ease_factor: float
    interval_days: int
    repetitions: int
    next_due_at: datetime
    message: str

    @property
    def correct(self) -> bool:
        return self.grade.is_correct


@dataclass(frozen=True)
class SessionStats:
    session_id: str
    cards_reviewed: int
    cards_correct: int
    accuracy_percentage: float
    duration_minutes: float
    deck_name: str | None
    ended: bool


class StudySessionService:
    """
    Drives the fetch -> reveal -> grade cycle for each user.

    Args:
        repository: Primary card store
        scheduler: SM-2 scheduler (defaults to one built from settings)
        clock: Returns the current UTC time
    """

    def __init__(
        self,
        repository: SqlCardRepository,
        scheduler: SM2Scheduler | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.repository = repository
        self.scheduler = scheduler or SM2Scheduler(SM2Config.from_settings())
        self._clock = clock
        self._locks = KeyedLock()

    async def _load_state(self, user_id: str) -> SessionState:
        state = await self.repository.get_session_state(user_id)
        return state or SessionState(user_id=user_id)

    async def _current_card(self, state: SessionState) -> Card:
        card = await self.repository.get_card(state.current_card_id)
        if card is None:
            # The card was deleted while on screen; drop it from the session
            await self.repository.save_session_state(state.clear())
            raise NotFoundError(f"Card {state.current_card_id} not found")
        return card

    # ========================================
    # Fetch
    # ========================================

    async def get_next_card(self, user_id: str, deck_id: str | None = None) -> CardPrompt | None:
        """
        Present the highest-priority due card.

        If a card is already presented (revealed or not) the same card is
        returned again without selecting a new one.

        Returns:
            The card prompt, or None when nothing is due
        """
        async with self._locks.hold(user_id):
            now = self._clock()
            state = await self._load_state(user_id)

            if state.phase is not SessionPhase.IDLE:
                card = await self.repository.get_card(state.current_card_id)
                if card is not None:
                    remaining = await self.repository.count_due_cards(
                        user_id, state.deck_id, now
                    )
                    logger.debug("User {} re-fetched card {}", user_id, card.id)
                    return self._prompt(card, state, remaining)
                logger.warning(
                    "Card {} presented to user {} no longer exists",
                    state.current_card_id,
                    user_id,
                )
                state = await self.repository.save_session_state(state.clear())

            due = await self.repository.find_due_cards(user_id, deck_id, now)
            if not due:
                logger.debug("No cards due for user {}", user_id)
                return None

            card = due[0]
            session_id = state.session_id
            if session_id is None:
                session_id = await self.repository.create_study_session(user_id, deck_id, now)

            state = await self.repository.save_session_state(
                state.present(card.id, session_id, deck_id)
            )
            logger.debug("User {} presented card {} ({} due)", user_id, card.id, len(due))
            return self._prompt(card, state, len(due))

    @staticmethod
    def _prompt(card: Card, state: SessionState, remaining: int) -> CardPrompt:
        return CardPrompt(
            card_id=card.id,
            front=card.front,
            hint=card.hint,
            deck_id=card.deck_id,
            deck_name=card.deck.name,
            cards_remaining=remaining,
            session_id=state.session_id,
            image_url=card.image_url,
            answer_revealed=state.answer_revealed,
        )

    # ========================================
    # Reveal
    # ========================================

    async def reveal_answer(self, user_id: str) -> RevealedAnswer:
        """
        Show the back of the presented card.

        Raises:
            InvalidStateError: If no card is presented or it is already revealed
            NotFoundError: If the presented card was deleted
        """
        async with self._locks.hold(user_id):
            state = await self._load_state(user_id)
            if state.phase is SessionPhase.IDLE:
                raise InvalidStateError("No active card to reveal")
            if state.phase is SessionPhase.REVEALED:
                raise InvalidStateError("Answer already revealed")

            card = await self._current_card(state)
            await self.repository.save_session_state(state.reveal())
            logger.debug("User {} revealed card {}", user_id, card.id)
            return RevealedAnswer(card_id=card.id, answer=card.back, hint=card.hint)

    # ========================================
    # Grade
    # ========================================

    async def grade_card(self, user_id: str, grade: Grade | str) -> GradeOutcome:
        """
        Grade the revealed card and schedule its next review.

        Args:
            user_id: User identifier
            grade: A Grade, or free text such as "good" or "again"

        Raises:
            UnrecognizedGradeError: If free-text grade cannot be parsed
            InvalidStateError: If no card is presented or the answer is hidden
            StaleSessionStateError: If another writer changed the session first
        """
        if isinstance(grade, str):
            grade = parse_grade(grade)
        grade = Grade(grade)

        async with self._locks.hold(user_id):
            now = self._clock()
            state = await self._load_state(user_id)
            if state.phase is SessionPhase.IDLE:
                raise InvalidStateError("No active card to grade")
            if state.phase is SessionPhase.PRESENTED:
                raise InvalidStateError("Must reveal answer before grading")

            card = await self._current_card(state)
            latest = await self.repository.latest_review_record(card.id, user_id)
            prior = latest.scheduling_state if latest else self.scheduler.initial_state()
            result = self.scheduler.compute_next(prior, grade, now)

            # Claim the transition first: a lost race must not leave a review behind
            await self.repository.save_session_state(state.clear())

            await self.repository.insert_review_record(
                ReviewRecord(
                    card_id=card.id,
                    user_id=user_id,
                    ease_factor=result.ease_factor,
                    interval_days=result.interval_days,
                    repetitions=result.repetitions,
                    quality=grade,
                    reviewed_at=now,
                    next_due_at=result.next_due_at,
                    session_id=state.session_id,
                )
            )
            if state.session_id:
                await self.repository.record_session_result(state.session_id, grade.is_correct)

            logger.debug(
                "User {} graded card {} {} -> interval={}d ease={:.2f}",
                user_id,
                card.id,
                grade.name,
                result.interval_days,
                result.ease_factor,
            )
            return GradeOutcome(
                card_id=card.id,
                grade=grade,
                ease_factor=result.ease_factor,
                interval_days=result.interval_days,
                repetitions=result.repetitions,
                next_due_at=result.next_due_at,
                message=f"Card will be reviewed again in {describe_interval(result.interval_days)}",
            )

    # ========================================
    # Skip
    # ========================================

    async def skip_card(self, user_id: str) -> str:
        """
        Put the presented card aside without recording a review.

        Returns:
            The skipped card id

        Raises:
            InvalidStateError: If no card is presented
        """
        async with self._locks.hold(user_id):
            state = await self._load_state(user_id)
            if state.phase is SessionPhase.IDLE:
                raise InvalidStateError("No active card to skip")

            card_id = state.current_card_id
            await self.repository.save_session_state(state.clear())
            logger.debug("User {} skipped card {}", user_id, card_id)
            return card_id

    # ========================================
    # Session statistics
    # ========================================

    async def get_session_stats(self, session_id: str) -> SessionStats:
        """
        Raises:
            NotFoundError: If the session does not exist
        """
        session = await self.repository.get_study_session(session_id)
        if session is None:
            raise NotFoundError(f"Study session {session_id} not found")

        deck_name = None
        if session.deck_id:
            deck = await self.repository.get_deck(session.deck_id)
            deck_name = deck.name if deck else None

        reviewed = session.cards_reviewed
        accuracy = round(session.cards_correct / reviewed * 100, 1) if reviewed else 0.0
        finished = as_utc(session.ended_at) or self._clock()
        duration = (finished - as_utc(session.started_at)).total_seconds() / 60

        return SessionStats(
            session_id=session.id,
            cards_reviewed=reviewed,
            cards_correct=session.cards_correct,
            accuracy_percentage=accuracy,
            duration_minutes=round(max(duration, 0.0), 1),
            deck_name=deck_name,
            ended=session.ended_at is not None,
        )

    async def end_session(self, session_id: str) -> SessionStats:
        """Close a study session and return its final statistics."""
        session = await self.repository.get_study_session(session_id)
        if session is None:
            raise NotFoundError(f"Study session {session_id} not found")

        async with self._locks.hold(session.user_id):
            await self.repository.end_study_session(session_id, self._clock())
            await self.repository.clear_session_id(session.user_id, session_id)

        logger.info("Ended study session {} for user {}", session_id, session.user_id)
        return await self.get_session_stats(session_id)
