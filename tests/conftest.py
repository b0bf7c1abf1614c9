"""
Pytest Configuration and Fixtures.

This file configures pytest and provides shared fixtures for all tests.
"""
import os
import sys
import tempfile
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest
import pytest_asyncio

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from voicecards.anki.anki_client import (  # noqa: E402
    ExternalCard,
    ExternalCardRef,
    ExternalDeck,
    ExternalReview,
    ProgressLink,
    ProgressSyncResult,
)
from voicecards.anki.mapping_store import MappingStore  # noqa: E402
from voicecards.anki.sync_service import AnkiSyncService  # noqa: E402
from voicecards.config import get_settings  # noqa: E402
from voicecards.core.records import ReviewRecord  # noqa: E402
from voicecards.db.audit import SqlAuditSink  # noqa: E402
from voicecards.db.database import create_engine_and_factory, init_db  # noqa: E402
from voicecards.db.repository import SqlCardRepository  # noqa: E402
from voicecards.errors import ExternalStoreError, NotFoundError  # noqa: E402
from voicecards.study.scheduler import Grade  # noqa: E402


def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "integration: Integration tests (require database)")
    config.addinivalue_line("markers", "smoke: Smoke tests for CLI commands")


def pytest_collection_modifyitems(config, items):
    """Automatically mark tests based on their location."""
    for item in items:
        if "unit" in str(item.fspath):
            item.add_marker(pytest.mark.unit)
        elif "integration" in str(item.fspath):
            item.add_marker(pytest.mark.integration)
        elif "smoke" in str(item.fspath):
            item.add_marker(pytest.mark.smoke)


@pytest.fixture(autouse=True)
def _fresh_settings():
    """Drop cached settings so env changes made by a test are picked up."""
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    """Clock frozen at 2024-03-01 09:00 UTC."""
    return FakeClock(datetime(2024, 3, 1, 9, 0, tzinfo=UTC))


@pytest.fixture
def sqlite_path():
    """Temporary SQLite database file."""
    db_fd, db_path = tempfile.mkstemp(suffix=".db")
    os.close(db_fd)
    yield db_path
    if os.path.exists(db_path):
        os.unlink(db_path)


@pytest_asyncio.fixture
async def session_factory(sqlite_path):
    """Session factory bound to a fresh database with all tables created."""
    engine, factory = create_engine_and_factory(f"sqlite+aiosqlite:///{sqlite_path}")
    await init_db(engine)
    try:
        yield factory
    finally:
        await engine.dispose()


@pytest_asyncio.fixture
async def repository(session_factory):
    return SqlCardRepository(session_factory)


@pytest_asyncio.fixture
async def spanish_deck(repository):
    """Deck owned by "alice" with three cards in deck order."""
    deck = await repository.create_deck("alice", "Spanish", "Basic vocabulary")
    cards = [
        await repository.create_card(deck.id, "hola", "hello", hint="greeting", card_order=0),
        await repository.create_card(deck.id, "gato", "cat", card_order=1),
        await repository.create_card(deck.id, "perro", "dog", card_order=2),
    ]
    return deck, cards


class FakeAnkiClient:
    """
    In-memory stand-in for AnkiClient.

    Holds decks of ExternalCard and per-card review history; records every
    push and card creation for assertions.
    """

    def __init__(self):
        self.decks: dict[str, list[int]] = {}
        self.cards: dict[int, ExternalCard] = {}
        self.reviews: dict[int, list[ExternalReview]] = {}
        self.added: list[tuple[str, str]] = []
        self.pushed: list[tuple[ProgressLink, ReviewRecord]] = []
        self.content_updates: list[tuple[int, str]] = []
        self.progress_result: ProgressSyncResult | None = None
        self.sync_calls: list[tuple[str, list[ReviewRecord], list[ProgressLink]]] = []
        self.fail_push: set[int] = set()
        self.fail_add = False
        self.connected = True
        self._next_id = 9000

    def add_existing(self, deck_name, front, back, hint=None, tags=(), modified_at=None):
        """Put a card into the fake collection and return it."""
        self._next_id += 1
        card = ExternalCard(
            note_id=self._next_id,
            card_id=self._next_id + 100_000,
            front=front,
            back=back,
            hint=hint,
            tags=tuple(tags),
            modified_at=modified_at,
        )
        self.decks.setdefault(deck_name, []).append(card.card_id)
        self.cards[card.card_id] = card
        return card

    def add_review(self, external_card_id, reviewed_at, quality=Grade.GOOD, interval=1, ease=2.5, reps=1):
        review = ExternalReview(
            external_card_id=external_card_id,
            quality=quality,
            ease_factor=ease,
            interval_days=interval,
            repetitions=reps,
            reviewed_at=reviewed_at,
            next_due_at=reviewed_at + timedelta(days=interval),
        )
        self.reviews.setdefault(external_card_id, []).append(review)
        return review

    async def check_connection(self) -> bool:
        return self.connected

    async def import_deck(self, deck_name):
        if deck_name not in self.decks:
            raise NotFoundError(f"Anki deck {deck_name!r} not found")
        ids = self.decks[deck_name]
        return ExternalDeck(
            name=deck_name,
            description=f"Imported from Anki deck {deck_name}",
            cards=[self.cards[i] for i in ids],
            reviews=[r for i in ids for r in self.reviews.get(i, [])],
        )

    async def add_card(self, deck_name, front, back, tags=(), hint=None):
        if self.fail_add:
            raise ExternalStoreError("cannot create note because it is a duplicate")
        card = self.add_existing(deck_name, front, back, hint, tags)
        self.added.append((deck_name, front))
        return ExternalCardRef(note_id=card.note_id, card_id=card.card_id)

    async def find_card_by_front(self, deck_name, front):
        for card_id in self.decks.get(deck_name, []):
            card = self.cards[card_id]
            if card.front == front:
                return ExternalCardRef(note_id=card.note_id, card_id=card.card_id)
        return None

    async def push_progress(self, links, reviews):
        latest = {}
        for review in reviews:
            latest.setdefault(review.card_id, review)
        for link in links:
            if link.external_card_id in self.fail_push:
                raise ExternalStoreError(f"card {link.external_card_id} was not found")
        for link in links:
            if link.card_id in latest:
                self.pushed.append((link, latest[link.card_id]))
        return len([link for link in links if link.card_id in latest])

    async def sync_progress(self, deck_name, reviews, links):
        self.sync_calls.append((deck_name, list(reviews), list(links)))
        return self.progress_result or ProgressSyncResult()

    async def get_card(self, external_card_id):
        return self.cards.get(external_card_id)

    async def latest_review(self, external_card_id):
        history = self.reviews.get(external_card_id, [])
        return history[-1] if history else None

    async def update_card_content(self, note_id, back, hint, tags):
        self.content_updates.append((note_id, back))

    async def close(self):
        pass


@pytest.fixture
def fake_anki():
    return FakeAnkiClient()


@pytest_asyncio.fixture
async def mappings(session_factory):
    return MappingStore(session_factory)


@pytest_asyncio.fixture
async def audit(session_factory):
    return SqlAuditSink(session_factory)


@pytest_asyncio.fixture
async def sync_service(repository, fake_anki, mappings, audit, clock):
    """Reconciliation service wired to the fake Anki collection."""
    return AnkiSyncService(repository, fake_anki, mappings, audit, clock)
