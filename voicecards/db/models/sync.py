"""
Anki sync tables: the card identity mapping and the sync audit log.
"""

from __future__ import annotations

from datetime import UTC, datetime

from sqlalchemy import JSON, BigInteger, Boolean, DateTime, ForeignKey, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


def _utcnow() -> datetime:
    return datetime.now(UTC)


class AnkiCardMapping(Base):
    """
    1:1 link between a primary card and an Anki card.

    Anki ids stay NULL until the first export round-trip fills them in.
    """

    __tablename__ = "anki_card_mappings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    card_id: Mapped[str] = mapped_column(
        ForeignKey("cards.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    anki_note_id: Mapped[int | None] = mapped_column(BigInteger)
    anki_card_id: Mapped[int | None] = mapped_column(BigInteger, unique=True)
    deck_id: Mapped[str] = mapped_column(
        ForeignKey("decks.id", ondelete="CASCADE"), nullable=False, index=True
    )
    last_synced_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    sync_enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)


class AnkiSyncHistory(Base):
    """Append-only audit of reconciliation runs."""

    __tablename__ = "anki_sync_history"
    __table_args__ = (
        Index("idx_anki_sync_history_user", "user_id", "completed_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    sync_type: Mapped[str] = mapped_column(String(16), nullable=False)
    sync_result: Mapped[dict] = mapped_column(JSON, nullable=False)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    completed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False)
