"""
Unit tests for deck management and text import.
"""

from datetime import timedelta

import pytest
import pytest_asyncio

from voicecards.core.records import ReviewRecord
from voicecards.errors import NotFoundError
from voicecards.study.deck_service import DeckService, parse_card_lines
from voicecards.study.scheduler import Grade


@pytest_asyncio.fixture
async def decks(repository, clock):
    return DeckService(repository, clock)


class TestParseCardLines:
    def test_front_back_hint(self):
        cards, skipped = parse_card_lines("hola|hello|greeting\ngato | cat\n")
        assert cards == [("hola", "hello", "greeting"), ("gato", "cat", None)]
        assert skipped == 0

    def test_blank_lines_ignored_malformed_counted(self):
        cards, skipped = parse_card_lines("\n\nonly-front\n|missing front\nperro|dog|\n")
        assert cards == [("perro", "dog", None)]
        assert skipped == 2


class TestDeckService:
    @pytest.mark.asyncio
    async def test_create_and_list(self, decks):
        await decks.create_deck("alice", "  Verbs ")
        await decks.create_deck("alice", "Animals")
        await decks.create_deck("bob", "Other")

        names = [d.name for d in await decks.list_decks("alice")]
        assert names == ["Animals", "Verbs"]

    @pytest.mark.asyncio
    async def test_empty_name_rejected(self, decks):
        with pytest.raises(ValueError):
            await decks.create_deck("alice", "   ")

    @pytest.mark.asyncio
    async def test_stats(self, decks, repository, clock, spanish_deck):
        """One mastered, one learning and due, one never reviewed."""
        deck, cards = spanish_deck
        for card, interval, reviewed_at in [
            (cards[0], 30, clock.now),
            (cards[1], 1, clock.now - timedelta(days=2)),
        ]:
            await repository.insert_review_record(
                ReviewRecord(
                    card_id=card.id,
                    user_id="alice",
                    ease_factor=2.5,
                    interval_days=interval,
                    repetitions=3,
                    quality=Grade.GOOD,
                    reviewed_at=reviewed_at,
                    next_due_at=reviewed_at + timedelta(days=interval),
                )
            )

        stats = await decks.get_deck_stats(deck.id, "alice")

        assert stats.deck_name == "Spanish"
        assert (stats.total, stats.due, stats.new) == (3, 2, 1)
        assert (stats.learning, stats.mastered) == (1, 1)

    @pytest.mark.asyncio
    async def test_stats_for_unknown_deck(self, decks):
        with pytest.raises(NotFoundError):
            await decks.get_deck_stats("missing", "alice")

    @pytest.mark.asyncio
    async def test_stats_for_another_users_deck(self, decks, spanish_deck):
        deck, _ = spanish_deck
        with pytest.raises(NotFoundError):
            await decks.get_deck_stats(deck.id, "bob")

    @pytest.mark.asyncio
    async def test_import_text_appends_in_order(self, decks, repository, spanish_deck):
        deck, _ = spanish_deck

        result = await decks.import_cards_from_text("alice", "Spanish", "casa|house\nbad line\nagua|water|drink")

        assert (result.deck_id, result.created, result.skipped) == (deck.id, 2, 1)
        cards = await repository.list_cards(deck.id)
        assert [c.front for c in cards] == ["hola", "gato", "perro", "casa", "agua"]
        assert cards[-1].hint == "drink"

    @pytest.mark.asyncio
    async def test_import_text_creates_deck(self, decks, repository):
        result = await decks.import_cards_from_text("alice", "French", "chat|cat")

        deck = await repository.find_deck_by_name("alice", "French")
        assert deck.id == result.deck_id
        assert result.created == 1
