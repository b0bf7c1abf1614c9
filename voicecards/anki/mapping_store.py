"""
Persistent identity mapping between primary cards and Anki cards.

Both the primary card id and the Anki card id are unique across all rows,
so each card is linked to at most one counterpart. Anki ids stay None until
an export has seen the card in Anki.
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime

from loguru import logger
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from voicecards.core.clock import as_utc, utcnow
from voicecards.core.records import CardMapping
from voicecards.db.database import async_session_scope
from voicecards.db.models import AnkiCardMapping
from voicecards.errors import NotFoundError


def _to_mapping(row: AnkiCardMapping) -> CardMapping:
    return CardMapping(
        id=row.id,
        card_id=row.card_id,
        deck_id=row.deck_id,
        external_note_id=row.anki_note_id,
        external_card_id=row.anki_card_id,
        last_synced_at=as_utc(row.last_synced_at),
        sync_enabled=row.sync_enabled,
    )


class MappingStore:
    """Reads and writes ``anki_card_mappings``."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None):
        self._factory = session_factory

    async def get_by_card(self, card_id: str) -> CardMapping | None:
        stmt = select(AnkiCardMapping).where(AnkiCardMapping.card_id == card_id)
        async with async_session_scope(self._factory) as session:
            row = (await session.execute(stmt)).scalar_one_or_none()
            return _to_mapping(row) if row else None

    async def get_by_external(self, external_card_id: int) -> CardMapping | None:
        stmt = select(AnkiCardMapping).where(AnkiCardMapping.anki_card_id == external_card_id)
        async with async_session_scope(self._factory) as session:
            row = (await session.execute(stmt)).scalar_one_or_none()
            return _to_mapping(row) if row else None

    async def list_for_deck(self, deck_id: str, enabled_only: bool = True) -> list[CardMapping]:
        stmt = select(AnkiCardMapping).where(AnkiCardMapping.deck_id == deck_id)
        if enabled_only:
            stmt = stmt.where(AnkiCardMapping.sync_enabled.is_(True))
        stmt = stmt.order_by(AnkiCardMapping.id)
        async with async_session_scope(self._factory) as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [_to_mapping(r) for r in rows]

    async def create(
        self,
        card_id: str,
        deck_id: str,
        external_note_id: int | None = None,
        external_card_id: int | None = None,
    ) -> CardMapping:
        """
        Insert a mapping row.

        Raises:
            IntegrityError: If either id is already mapped
        """
        row = AnkiCardMapping(
            card_id=card_id,
            deck_id=deck_id,
            anki_note_id=external_note_id,
            anki_card_id=external_card_id,
            last_synced_at=utcnow(),
        )
        async with async_session_scope(self._factory) as session:
            session.add(row)
            await session.flush()
            logger.debug("Mapped card {} -> Anki card {}", card_id, external_card_id)
            return _to_mapping(row)

    async def link(self, card_id: str, external_note_id: int, external_card_id: int) -> CardMapping:
        """
        Fill in the Anki ids of an existing mapping.

        Raises:
            NotFoundError: If the card has no mapping
        """
        stmt = select(AnkiCardMapping).where(AnkiCardMapping.card_id == card_id)
        async with async_session_scope(self._factory) as session:
            row = (await session.execute(stmt)).scalar_one_or_none()
            if row is None:
                raise NotFoundError(f"No Anki mapping for card {card_id}")
            row.anki_note_id = external_note_id
            row.anki_card_id = external_card_id
            row.last_synced_at = utcnow()
            await session.flush()
            logger.debug("Linked card {} -> Anki card {}", card_id, external_card_id)
            return _to_mapping(row)

    async def touch(self, mapping_ids: Sequence[int], synced_at: datetime | None = None) -> int:
        """Advance ``last_synced_at`` for the given mapping rows."""
        if not mapping_ids:
            return 0
        stmt = (
            update(AnkiCardMapping)
            .where(AnkiCardMapping.id.in_(list(mapping_ids)))
            .values(last_synced_at=synced_at or utcnow())
        )
        async with async_session_scope(self._factory) as session:
            result = await session.execute(stmt)
            return result.rowcount

    async def set_sync_enabled(self, card_id: str, enabled: bool) -> None:
        stmt = (
            update(AnkiCardMapping)
            .where(AnkiCardMapping.card_id == card_id)
            .values(sync_enabled=enabled)
        )
        async with async_session_scope(self._factory) as session:
            result = await session.execute(stmt)
            if result.rowcount == 0:
                raise NotFoundError(f"No Anki mapping for card {card_id}")
