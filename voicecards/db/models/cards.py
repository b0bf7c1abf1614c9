"""
Primary card store models.

Decks own cards; every grading event appends one CardReview row. The most
recent review per (card, user) is the authoritative scheduling state.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base


def _new_id() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(UTC)


class Deck(Base):
    """A named collection of cards owned by one user."""

    __tablename__ = "decks"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    tags: Mapped[list[str]] = mapped_column(JSON, default=list)
    is_public: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    cards: Mapped[list[Card]] = relationship(
        back_populates="deck", cascade="all, delete-orphan"
    )


class Card(Base):
    __tablename__ = "cards"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    deck_id: Mapped[str] = mapped_column(
        ForeignKey("decks.id", ondelete="CASCADE"), nullable=False, index=True
    )
    front: Mapped[str] = mapped_column(Text, nullable=False)
    back: Mapped[str] = mapped_column(Text, nullable=False)
    hint: Mapped[str | None] = mapped_column(Text)
    image_url: Mapped[str | None] = mapped_column(Text)
    tags: Mapped[list[str]] = mapped_column(JSON, default=list)
    card_order: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    deck: Mapped[Deck] = relationship(back_populates="cards")


class CardReview(Base):
    """
    Immutable SM-2 review log.

    Rows are only ever inserted; ordering by (reviewed_at, id) gives the
    latest scheduling state.
    """

    __tablename__ = "card_reviews"
    __table_args__ = (
        CheckConstraint("ease_factor >= 1.3", name="ck_card_reviews_min_ease"),
        CheckConstraint("interval_days >= 0", name="ck_card_reviews_interval"),
        CheckConstraint("repetitions >= 0", name="ck_card_reviews_repetitions"),
        Index("idx_card_reviews_card_user", "card_id", "user_id", "reviewed_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    card_id: Mapped[str] = mapped_column(
        ForeignKey("cards.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    # SM-2 fields
    ease_factor: Mapped[float] = mapped_column(Float, nullable=False)
    interval_days: Mapped[int] = mapped_column(Integer, nullable=False)
    repetitions: Mapped[int] = mapped_column(Integer, nullable=False)
    quality: Mapped[int] = mapped_column(Integer, nullable=False)

    session_id: Mapped[str | None] = mapped_column(String(36))
    reviewed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    next_due_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


class StudySession(Base):
    __tablename__ = "study_sessions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    deck_id: Mapped[str | None] = mapped_column(ForeignKey("decks.id", ondelete="SET NULL"))
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    ended_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    cards_reviewed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    cards_correct: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    client_type: Mapped[str | None] = mapped_column(String(32))


class UserCardState(Base):
    """Single live session pointer per user; ``version`` guards every write."""

    __tablename__ = "user_card_state"

    user_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    deck_id: Mapped[str | None] = mapped_column(String(36))
    current_card_id: Mapped[str | None] = mapped_column(String(36))
    session_id: Mapped[str | None] = mapped_column(String(36))
    answer_revealed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    version: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )


class UserSyncSettings(Base):
    """Per-user auto-sync opt-in used by the background sync loop."""

    __tablename__ = "user_sync_settings"

    user_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    anki_sync_enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    anki_sync_deck_id: Mapped[str | None] = mapped_column(
        ForeignKey("decks.id", ondelete="SET NULL")
    )
