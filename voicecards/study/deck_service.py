"""
Deck management and deck-level statistics.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import datetime

from loguru import logger

from voicecards.core.clock import utcnow
from voicecards.db.models import Deck
from voicecards.db.repository import SqlCardRepository
from voicecards.errors import NotFoundError

# Cards whose current interval reaches this many days count as mastered
MASTERED_INTERVAL_DAYS = 21


@dataclass(frozen=True)
class DeckStats:
    deck_id: str
    deck_name: str
    total: int
    due: int
    new: int
    learning: int
    mastered: int


@dataclass(frozen=True)
class TextImportResult:
    deck_id: str
    deck_name: str
    created: int
    skipped: int


def parse_card_lines(text: str) -> tuple[list[tuple[str, str, str | None]], int]:
    """
    Parse ``front|back|hint`` lines.

    The hint column is optional. Blank lines are ignored; lines without a
    non-empty front and back are counted as skipped.

    Returns:
        (cards, skipped)
    """
    cards: list[tuple[str, str, str | None]] = []
    skipped = 0
    for raw in text.splitlines():
        line = raw.strip()
        if not line:
            continue
        parts = [p.strip() for p in line.split("|")]
        if len(parts) < 2 or not parts[0] or not parts[1]:
            skipped += 1
            continue
        hint = parts[2] if len(parts) > 2 and parts[2] else None
        cards.append((parts[0], parts[1], hint))
    return cards, skipped


class DeckService:
    """Create, list and summarize decks for a user."""

    def __init__(
        self,
        repository: SqlCardRepository,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.repository = repository
        self._clock = clock

    async def create_deck(
        self,
        user_id: str,
        name: str,
        description: str | None = None,
        tags: Sequence[str] | None = None,
    ) -> Deck:
        name = name.strip()
        if not name:
            raise ValueError("Deck name must not be empty")
        deck = await self.repository.create_deck(user_id, name, description, tags)
        logger.info("Created deck {!r} ({}) for user {}", name, deck.id, user_id)
        return deck

    async def list_decks(self, user_id: str) -> list[Deck]:
        return await self.repository.list_decks(user_id)

    async def get_deck_stats(self, deck_id: str, user_id: str) -> DeckStats:
        """
        Card counts for one deck from the user's point of view.

        ``new`` cards were never reviewed, ``learning`` cards have a current
        interval below MASTERED_INTERVAL_DAYS, ``mastered`` cards have reached it.

        Raises:
            NotFoundError: If the deck does not exist or belongs to another user
        """
        deck = await self.repository.get_deck(deck_id)
        if deck is None or deck.user_id != user_id:
            raise NotFoundError(f"Deck {deck_id} not found")

        cards = await self.repository.list_cards(deck_id)
        intervals = await self.repository.latest_intervals(user_id, deck_id)
        due = await self.repository.count_due_cards(user_id, deck_id, self._clock())

        mastered = sum(1 for i in intervals.values() if i >= MASTERED_INTERVAL_DAYS)
        return DeckStats(
            deck_id=deck.id,
            deck_name=deck.name,
            total=len(cards),
            due=due,
            new=len(cards) - len(intervals),
            learning=len(intervals) - mastered,
            mastered=mastered,
        )

    async def import_cards_from_text(
        self,
        user_id: str,
        deck_name: str,
        text: str,
    ) -> TextImportResult:
        """
        Add cards from ``front|back|hint`` lines to a deck, creating it if needed.
        """
        deck = await self.repository.find_deck_by_name(user_id, deck_name)
        if deck is None:
            deck = await self.create_deck(user_id, deck_name)

        parsed, skipped = parse_card_lines(text)
        existing = len(await self.repository.list_cards(deck.id))
        for offset, (front, back, hint) in enumerate(parsed):
            await self.repository.create_card(
                deck.id, front, back, hint=hint, card_order=existing + offset
            )

        if skipped:
            logger.warning("Skipped {} malformed lines importing into {!r}", skipped, deck_name)
        logger.info("Imported {} cards into deck {!r}", len(parsed), deck_name)
        return TextImportResult(
            deck_id=deck.id,
            deck_name=deck.name,
            created=len(parsed),
            skipped=skipped,
        )
