"""
Primary card store access.

``CardRepository`` is the contract the study session machine and the Anki
sync service depend on; ``SqlCardRepository`` implements it on SQLAlchemy's
async ORM. Every method runs in its own short transaction.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import Protocol

from loguru import logger
from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from voicecards.core.clock import as_utc, utcnow
from voicecards.core.records import ReviewRecord, SessionState
from voicecards.db.database import async_session_scope
from voicecards.db.models import (
    Card,
    CardReview,
    Deck,
    StudySession,
    UserCardState,
    UserSyncSettings,
)
from voicecards.errors import NotFoundError, StaleSessionStateError
from voicecards.study.scheduler import Grade


@dataclass(frozen=True)
class AutoSyncTarget:
    user_id: str
    deck_id: str


class CardRepository(Protocol):
    """Primary store operations used by the study and sync layers."""

    async def find_due_cards(
        self, user_id: str, deck_id: str | None = None, now: datetime | None = None
    ) -> list[Card]: ...

    async def count_due_cards(
        self, user_id: str, deck_id: str | None = None, now: datetime | None = None
    ) -> int: ...

    async def get_card(self, card_id: str) -> Card | None: ...

    async def get_session_state(self, user_id: str) -> SessionState | None: ...

    async def save_session_state(self, state: SessionState) -> SessionState: ...

    async def insert_review_record(self, record: ReviewRecord) -> ReviewRecord: ...

    async def latest_review_record(self, card_id: str, user_id: str) -> ReviewRecord | None: ...

    async def list_reviews(
        self, user_id: str, card_ids: Sequence[str] | None = None
    ) -> list[ReviewRecord]: ...

    async def create_study_session(
        self, user_id: str, deck_id: str | None, started_at: datetime | None = None
    ) -> str: ...

    async def record_session_result(self, session_id: str, correct: bool) -> None: ...

    async def get_deck(self, deck_id: str) -> Deck | None: ...

    async def find_deck_by_name(self, user_id: str, name: str) -> Deck | None: ...

    async def create_deck(
        self,
        user_id: str,
        name: str,
        description: str | None = None,
        tags: Sequence[str] | None = None,
    ) -> Deck: ...

    async def update_deck_description(self, deck_id: str, description: str | None) -> None: ...

    async def list_cards(self, deck_id: str) -> list[Card]: ...

    async def find_card_by_front(self, deck_id: str, front: str) -> Card | None: ...

    async def create_card(
        self,
        deck_id: str,
        front: str,
        back: str,
        hint: str | None = None,
        tags: Sequence[str] | None = None,
    ) -> Card: ...

    async def update_card_content(
        self,
        card_id: str,
        back: str,
        hint: str | None,
        tags: Sequence[str] | None,
    ) -> Card: ...


def _to_record(row: CardReview) -> ReviewRecord:
    return ReviewRecord(
        id=row.id,
        card_id=row.card_id,
        user_id=row.user_id,
        ease_factor=row.ease_factor,
        interval_days=row.interval_days,
        repetitions=row.repetitions,
        quality=Grade(row.quality),
        reviewed_at=as_utc(row.reviewed_at),
        next_due_at=as_utc(row.next_due_at),
        session_id=row.session_id,
    )


def _to_state(row: UserCardState) -> SessionState:
    return SessionState(
        user_id=row.user_id,
        current_card_id=row.current_card_id,
        session_id=row.session_id,
        deck_id=row.deck_id,
        answer_revealed=row.answer_revealed,
        version=row.version,
    )


def _latest_reviews_subquery(user_id: str):
    """Rank each user's reviews per card, newest first (rank 1 = current state)."""
    return (
        select(
            CardReview.card_id.label("card_id"),
            CardReview.interval_days.label("interval_days"),
            CardReview.next_due_at.label("next_due_at"),
            func.row_number()
            .over(
                partition_by=CardReview.card_id,
                order_by=(CardReview.reviewed_at.desc(), CardReview.id.desc()),
            )
            .label("rank"),
        )
        .where(CardReview.user_id == user_id)
        .subquery()
    )


class SqlCardRepository:
    """CardRepository backed by the primary SQL database."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None):
        self._factory = session_factory

    def _scope(self):
        return async_session_scope(self._factory)

    # ========================================
    # Due cards
    # ========================================

    def _due_filter(self, user_id: str, deck_id: str | None, now: datetime):
        latest = _latest_reviews_subquery(user_id)
        conditions = [
            Deck.user_id == user_id,
            or_(latest.c.next_due_at.is_(None), latest.c.next_due_at <= now),
        ]
        if deck_id:
            conditions.append(Card.deck_id == deck_id)
        return latest, conditions

    async def find_due_cards(
        self,
        user_id: str,
        deck_id: str | None = None,
        now: datetime | None = None,
    ) -> list[Card]:
        """
        Cards due for the user, in review priority order.

        Ordering: reviewed cards by earliest due time first, then cards that
        were never reviewed (by deck position and creation time). Card id is
        the final tie-breaker so the order is stable.
        """
        now = now or utcnow()
        latest, conditions = self._due_filter(user_id, deck_id, now)
        stmt = (
            select(Card)
            .join(Deck, Card.deck_id == Deck.id)
            .outerjoin(latest, and_(latest.c.card_id == Card.id, latest.c.rank == 1))
            .where(*conditions)
            .options(selectinload(Card.deck))
            .order_by(
                latest.c.next_due_at.is_(None),
                latest.c.next_due_at,
                Card.card_order,
                Card.created_at,
                Card.id,
            )
        )
        async with self._scope() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def count_due_cards(
        self,
        user_id: str,
        deck_id: str | None = None,
        now: datetime | None = None,
    ) -> int:
        now = now or utcnow()
        latest, conditions = self._due_filter(user_id, deck_id, now)
        due = (
            select(Card.id)
            .join(Deck, Card.deck_id == Deck.id)
            .outerjoin(latest, and_(latest.c.card_id == Card.id, latest.c.rank == 1))
            .where(*conditions)
            .subquery()
        )
        async with self._scope() as session:
            return (await session.execute(select(func.count()).select_from(due))).scalar_one()

    # ========================================
    # Session state (compare-and-swap)
    # ========================================

    async def get_session_state(self, user_id: str) -> SessionState | None:
        async with self._scope() as session:
            row = await session.get(UserCardState, user_id)
            return _to_state(row) if row else None

    async def save_session_state(self, state: SessionState) -> SessionState:
        """
        Write the state only if nobody else wrote it since it was read.

        ``state.version`` is the version that was read (0 = no row yet).

        Raises:
            StaleSessionStateError: If the stored version moved on
        """
        new_version = state.version + 1
        values = {
            "deck_id": state.deck_id,
            "current_card_id": state.current_card_id,
            "session_id": state.session_id,
            "answer_revealed": state.answer_revealed,
            "version": new_version,
            "updated_at": utcnow(),
        }

        async with self._scope() as session:
            if state.version == 0:
                session.add(UserCardState(user_id=state.user_id, **values))
                try:
                    await session.flush()
                except IntegrityError as exc:
                    raise StaleSessionStateError(
                        f"Session state for user {state.user_id} was created concurrently"
                    ) from exc
            else:
                result = await session.execute(
                    update(UserCardState)
                    .where(
                        UserCardState.user_id == state.user_id,
                        UserCardState.version == state.version,
                    )
                    .values(**values)
                )
                if result.rowcount != 1:
                    raise StaleSessionStateError(
                        f"Session state for user {state.user_id} changed concurrently"
                    )

        return SessionState(
            user_id=state.user_id,
            current_card_id=state.current_card_id,
            session_id=state.session_id,
            deck_id=state.deck_id,
            answer_revealed=state.answer_revealed,
            version=new_version,
        )

    # ========================================
    # Review records
    # ========================================

    async def insert_review_record(self, record: ReviewRecord) -> ReviewRecord:
        row = CardReview(
            card_id=record.card_id,
            user_id=record.user_id,
            ease_factor=record.ease_factor,
            interval_days=record.interval_days,
            repetitions=record.repetitions,
            quality=int(record.quality),
            session_id=record.session_id,
            reviewed_at=record.reviewed_at,
            next_due_at=record.next_due_at,
        )
        async with self._scope() as session:
            session.add(row)
            await session.flush()
            return _to_record(row)

    async def latest_review_record(self, card_id: str, user_id: str) -> ReviewRecord | None:
        stmt = (
            select(CardReview)
            .where(CardReview.card_id == card_id, CardReview.user_id == user_id)
            .order_by(CardReview.reviewed_at.desc(), CardReview.id.desc())
            .limit(1)
        )
        async with self._scope() as session:
            row = (await session.execute(stmt)).scalar_one_or_none()
            return _to_record(row) if row else None

    async def list_reviews(
        self,
        user_id: str,
        card_ids: Sequence[str] | None = None,
    ) -> list[ReviewRecord]:
        """All of a user's reviews, newest first, optionally limited to some cards."""
        stmt = select(CardReview).where(CardReview.user_id == user_id)
        if card_ids is not None:
            if not card_ids:
                return []
            stmt = stmt.where(CardReview.card_id.in_(list(card_ids)))
        stmt = stmt.order_by(CardReview.reviewed_at.desc(), CardReview.id.desc())
        async with self._scope() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [_to_record(r) for r in rows]

    async def latest_intervals(self, user_id: str, deck_id: str) -> dict[str, int]:
        """Current interval per reviewed card in a deck."""
        latest = _latest_reviews_subquery(user_id)
        stmt = (
            select(latest.c.card_id, latest.c.interval_days)
            .join(Card, Card.id == latest.c.card_id)
            .where(Card.deck_id == deck_id, latest.c.rank == 1)
        )
        async with self._scope() as session:
            rows = (await session.execute(stmt)).all()
            return {card_id: interval for card_id, interval in rows}

    # ========================================
    # Study sessions
    # ========================================

    async def create_study_session(
        self,
        user_id: str,
        deck_id: str | None,
        started_at: datetime | None = None,
        client_type: str = "voice",
    ) -> str:
        row = StudySession(
            user_id=user_id,
            deck_id=deck_id,
            started_at=started_at or utcnow(),
            client_type=client_type,
        )
        async with self._scope() as session:
            session.add(row)
            await session.flush()
            logger.debug("Opened study session {} for user {}", row.id, user_id)
            return row.id

    async def record_session_result(self, session_id: str, correct: bool) -> None:
        stmt = (
            update(StudySession)
            .where(StudySession.id == session_id)
            .values(
                cards_reviewed=StudySession.cards_reviewed + 1,
                cards_correct=StudySession.cards_correct + (1 if correct else 0),
            )
        )
        async with self._scope() as session:
            await session.execute(stmt)

    async def get_study_session(self, session_id: str) -> StudySession | None:
        async with self._scope() as session:
            return await session.get(StudySession, session_id)

    async def end_study_session(self, session_id: str, ended_at: datetime) -> StudySession:
        async with self._scope() as session:
            row = await session.get(StudySession, session_id)
            if row is None:
                raise NotFoundError(f"Study session {session_id} not found")
            if row.ended_at is None:
                row.ended_at = ended_at
            return row

    async def clear_session_id(self, user_id: str, session_id: str) -> None:
        """Detach an ended session from the user's state so the next fetch opens a new one."""
        stmt = (
            update(UserCardState)
            .where(UserCardState.user_id == user_id, UserCardState.session_id == session_id)
            .values(session_id=None, version=UserCardState.version + 1, updated_at=utcnow())
        )
        async with self._scope() as session:
            await session.execute(stmt)

    # ========================================
    # Decks
    # ========================================

    async def get_deck(self, deck_id: str) -> Deck | None:
        async with self._scope() as session:
            return await session.get(Deck, deck_id)

    async def find_deck_by_name(self, user_id: str, name: str) -> Deck | None:
        stmt = (
            select(Deck)
            .where(Deck.user_id == user_id, Deck.name == name)
            .order_by(Deck.created_at)
            .limit(1)
        )
        async with self._scope() as session:
            return (await session.execute(stmt)).scalar_one_or_none()

    async def create_deck(
        self,
        user_id: str,
        name: str,
        description: str | None = None,
        tags: Sequence[str] | None = None,
    ) -> Deck:
        row = Deck(user_id=user_id, name=name, description=description, tags=list(tags or []))
        async with self._scope() as session:
            session.add(row)
            await session.flush()
            return row

    async def update_deck_description(self, deck_id: str, description: str | None) -> None:
        stmt = (
            update(Deck)
            .where(Deck.id == deck_id)
            .values(description=description, updated_at=utcnow())
        )
        async with self._scope() as session:
            await session.execute(stmt)

    async def list_decks(self, user_id: str) -> list[Deck]:
        stmt = select(Deck).where(Deck.user_id == user_id).order_by(Deck.name)
        async with self._scope() as session:
            return list((await session.execute(stmt)).scalars().all())

    # ========================================
    # Cards
    # ========================================

    async def get_card(self, card_id: str) -> Card | None:
        stmt = select(Card).where(Card.id == card_id).options(selectinload(Card.deck))
        async with self._scope() as session:
            return (await session.execute(stmt)).scalar_one_or_none()

    async def list_cards(self, deck_id: str) -> list[Card]:
        stmt = (
            select(Card)
            .where(Card.deck_id == deck_id)
            .order_by(Card.card_order, Card.created_at, Card.id)
        )
        async with self._scope() as session:
            return list((await session.execute(stmt)).scalars().all())

    async def find_card_by_front(self, deck_id: str, front: str) -> Card | None:
        stmt = (
            select(Card)
            .where(Card.deck_id == deck_id, Card.front == front)
            .order_by(Card.created_at, Card.id)
            .limit(1)
        )
        async with self._scope() as session:
            return (await session.execute(stmt)).scalar_one_or_none()

    async def create_card(
        self,
        deck_id: str,
        front: str,
        back: str,
        hint: str | None = None,
        tags: Sequence[str] | None = None,
        card_order: int = 0,
    ) -> Card:
        row = Card(
            deck_id=deck_id,
            front=front,
            back=back,
            hint=hint,
            tags=list(tags or []),
            card_order=card_order,
        )
        async with self._scope() as session:
            session.add(row)
            await session.flush()
            return row

    async def update_card_content(
        self,
        card_id: str,
        back: str,
        hint: str | None,
        tags: Sequence[str] | None,
    ) -> Card:
        async with self._scope() as session:
            row = await session.get(Card, card_id)
            if row is None:
                raise NotFoundError(f"Card {card_id} not found")
            row.back = back
            row.hint = hint
            row.tags = list(tags or [])
            row.updated_at = utcnow()
            return row

    # ========================================
    # Auto-sync settings
    # ========================================

    async def set_auto_sync(self, user_id: str, deck_id: str | None, enabled: bool) -> None:
        async with self._scope() as session:
            row = await session.get(UserSyncSettings, user_id)
            if row is None:
                row = UserSyncSettings(user_id=user_id)
                session.add(row)
            row.anki_sync_enabled = enabled
            row.anki_sync_deck_id = deck_id

    async def list_auto_sync_targets(self) -> list[AutoSyncTarget]:
        stmt = select(UserSyncSettings).where(
            UserSyncSettings.anki_sync_enabled.is_(True),
            UserSyncSettings.anki_sync_deck_id.is_not(None),
        )
        async with self._scope() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [AutoSyncTarget(r.user_id, r.anki_sync_deck_id) for r in rows]
