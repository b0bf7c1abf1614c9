"""
Anki reconciliation service.

Three runs keep the primary store and Anki consistent:

- import: Anki deck -> primary deck (cards matched by exact front text,
  Anki text wins; review history appended)
- export: primary deck -> Anki (latest progress pushed for linked cards,
  unlinked cards created in Anki)
- bidirectional: progress merged per card, newest review wins

Runs are best-effort and forward-only. A failing card is recorded in the
outcome and the run moves on; nothing already written is rolled back. Every
run ends by appending one SyncOutcome to the audit log. Runs touching the
same deck are serialized.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import Protocol

from loguru import logger
from sqlalchemy.exc import SQLAlchemyError

from voicecards.anki.anki_client import (
    ExternalCard,
    ExternalCardRef,
    ExternalDeck,
    ExternalReview,
    ProgressLink,
    ProgressSyncResult,
)
from voicecards.anki.mapping_store import MappingStore
from voicecards.core.clock import as_utc, utcnow
from voicecards.core.locks import KeyedLock
from voicecards.core.records import (
    ConflictKind,
    ConflictResolution,
    ReviewRecord,
    SyncOutcome,
    SyncReport,
    SyncType,
)
from voicecards.db.audit import SyncHistoryEntry
from voicecards.db.models import Deck
from voicecards.db.repository import SqlCardRepository
from voicecards.errors import ExternalStoreError, NotFoundError, VoiceCardsError

# Failures isolated to a single card during a run
ITEM_ERRORS = (VoiceCardsError, SQLAlchemyError)

IMPORT_CONFLICT_REASON = "Card already exists"
IMPORT_CONFLICT_RESOLUTION = "Updated with external data"


class ExternalStoreClient(Protocol):
    """Operations the reconciliation runs need from Anki."""

    async def import_deck(self, deck_name: str) -> ExternalDeck: ...

    async def add_card(
        self,
        deck_name: str,
        front: str,
        back: str,
        tags: Sequence[str] = (),
        hint: str | None = None,
    ) -> ExternalCardRef: ...

    async def find_card_by_front(self, deck_name: str, front: str) -> ExternalCardRef | None: ...

    async def push_progress(
        self, links: Sequence[ProgressLink], reviews: Sequence[ReviewRecord]
    ) -> int: ...

    async def sync_progress(
        self,
        deck_name: str,
        reviews: Sequence[ReviewRecord],
        links: Sequence[ProgressLink],
    ) -> ProgressSyncResult: ...

    async def get_card(self, external_card_id: int) -> ExternalCard | None: ...

    async def latest_review(self, external_card_id: int) -> ExternalReview | None: ...

    async def update_card_content(
        self, note_id: int, back: str, hint: str | None, tags: Sequence[str]
    ) -> None: ...


class AuditSink(Protocol):
    async def record_outcome(
        self, user_id: str, sync_type: SyncType, outcome: SyncOutcome
    ) -> None: ...

    async def list_history(self, user_id: str, limit: int = 10) -> list[SyncHistoryEntry]: ...


@dataclass(frozen=True)
class ResolvedConflict:
    """Which store each part of a card was taken from."""

    card_id: str
    resolution: ConflictResolution
    content_source: str
    progress_source: str | None


def _record_from_external(user_id: str, card_id: str, review: ExternalReview) -> ReviewRecord:
    return ReviewRecord(
        card_id=card_id,
        user_id=user_id,
        ease_factor=review.ease_factor,
        interval_days=review.interval_days,
        repetitions=review.repetitions,
        quality=review.quality,
        reviewed_at=review.reviewed_at,
        next_due_at=review.next_due_at,
    )


def _latest_by_card(reviews: Sequence[ReviewRecord]) -> dict[str, ReviewRecord]:
    """First record seen per card; callers pass reviews newest first."""
    latest: dict[str, ReviewRecord] = {}
    for review in reviews:
        latest.setdefault(review.card_id, review)
    return latest


class AnkiSyncService:
    """
    Reconciles decks between the primary store and Anki.

    Args:
        repository: Primary card store
        client: Anki client
        mappings: Identity mapping table
        audit: Sink receiving one SyncOutcome per run
        clock: Returns the current UTC time
    """

    def __init__(
        self,
        repository: SqlCardRepository,
        client: ExternalStoreClient,
        mappings: MappingStore,
        audit: AuditSink,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.repository = repository
        self.client = client
        self.mappings = mappings
        self.audit = audit
        self._clock = clock
        self._deck_locks = KeyedLock()

    def is_syncing(self, deck_id: str) -> bool:
        return self._deck_locks.locked(deck_id)

    async def _finish(self, user_id: str, report: SyncReport) -> SyncOutcome:
        outcome = report.freeze(self._clock())
        await self.audit.record_outcome(user_id, report.sync_type, outcome)
        logger.info(
            "Anki {} for user {} finished: imported={} exported={} conflicts={} errors={}",
            report.sync_type.value,
            user_id,
            outcome.imported,
            outcome.exported,
            len(outcome.conflicts),
            len(outcome.errors),
        )
        return outcome

    async def _load_deck(self, deck_id: str, report: SyncReport) -> Deck | None:
        try:
            deck = await self.repository.get_deck(deck_id)
        except SQLAlchemyError as e:
            report.error(f"Failed to load deck {deck_id}: {e}")
            return None
        if deck is None:
            report.error(f"Deck {deck_id} not found")
        return deck

    # ========================================
    # Import (Anki -> primary)
    # ========================================

    async def import_deck_from_anki(self, user_id: str, anki_deck_name: str) -> SyncOutcome:
        """
        Copy an Anki deck, its cards and its review history into the primary store.

        Cards whose front text already exists in the deck are overwritten with
        Anki's back, hint and tags and reported as ``card`` conflicts. New
        cards get a mapping whose Anki ids are filled in by the first export.
        """
        report = SyncReport(SyncType.IMPORT, started_at=self._clock())

        try:
            external = await self.client.import_deck(anki_deck_name)
        except VoiceCardsError as e:
            report.error(f"Failed to read Anki deck {anki_deck_name!r}: {e}")
            return await self._finish(user_id, report)

        async with self._deck_locks.hold((user_id, anki_deck_name)):
            try:
                deck = await self.repository.find_deck_by_name(user_id, anki_deck_name)
                if deck is None:
                    deck = await self.repository.create_deck(
                        user_id, anki_deck_name, external.description
                    )
                    report.imported_decks = 1
                else:
                    await self.repository.update_deck_description(deck.id, external.description)
            except SQLAlchemyError as e:
                report.error(f"Failed to store deck {anki_deck_name!r}: {e}")
                return await self._finish(user_id, report)

        async with self._deck_locks.hold(deck.id):
            local_ids = await self._import_cards(deck, external.cards, report)
            await self._import_reviews(user_id, external.reviews, local_ids, report)

        return await self._finish(user_id, report)

    async def _import_cards(
        self,
        deck: Deck,
        cards: Sequence[ExternalCard],
        report: SyncReport,
    ) -> dict[int, str]:
        """Returns Anki card id -> primary card id for every card handled."""
        local_ids: dict[int, str] = {}
        for card in cards:
            try:
                existing = await self.repository.find_card_by_front(deck.id, card.front)
                if existing is not None:
                    await self.repository.update_card_content(
                        existing.id, card.back, card.hint, card.tags
                    )
                    report.conflict(
                        ConflictKind.CARD,
                        existing.id,
                        IMPORT_CONFLICT_REASON,
                        IMPORT_CONFLICT_RESOLUTION,
                    )
                    local_ids[card.card_id] = existing.id
                    if await self.mappings.get_by_card(existing.id) is None:
                        await self.mappings.create(existing.id, deck.id)
                    continue

                created = await self.repository.create_card(
                    deck.id, card.front, card.back, hint=card.hint, tags=card.tags
                )
                report.imported_cards += 1
                local_ids[card.card_id] = created.id
                await self.mappings.create(created.id, deck.id)
            except ITEM_ERRORS as e:
                logger.warning("Failed to import Anki card {}: {}", card.card_id, e)
                report.error(f"Failed to import card {card.front[:40]!r}: {e}")
        return local_ids

    async def _import_reviews(
        self,
        user_id: str,
        reviews: Sequence[ExternalReview],
        local_ids: dict[int, str],
        report: SyncReport,
    ) -> None:
        # Additive: Anki history is appended, never deduplicated
        for review in reviews:
            card_id = review.card_id or local_ids.get(review.external_card_id)
            if card_id is None:
                continue
            try:
                await self.repository.insert_review_record(
                    _record_from_external(user_id, card_id, review)
                )
                report.imported_reviews += 1
            except (ValueError, *ITEM_ERRORS) as e:
                logger.warning("Failed to import review for card {}: {}", card_id, e)
                report.error(f"Failed to import review for card {card_id}: {e}")

    # ========================================
    # Export (primary -> Anki)
    # ========================================

    async def export_progress_to_anki(self, user_id: str, deck_id: str) -> SyncOutcome:
        """
        Push the user's latest progress for a deck to Anki.

        Only cards the user has reviewed are exported. Linked cards get their
        newest review pushed; a failed push is a ``review`` conflict. Unlinked
        cards are looked up in Anki by front text and created when missing; a
        failure there is an error.
        """
        report = SyncReport(SyncType.EXPORT, started_at=self._clock())
        deck = await self._load_deck(deck_id, report)
        if deck is None:
            return await self._finish(user_id, report)

        async with self._deck_locks.hold(deck.id):
            try:
                cards = await self.repository.list_cards(deck.id)
                reviews = await self.repository.list_reviews(user_id, [c.id for c in cards])
            except SQLAlchemyError as e:
                report.error(f"Failed to load deck {deck.name!r}: {e}")
                return await self._finish(user_id, report)

            latest = _latest_by_card(reviews)
            for card in cards:
                review = latest.get(card.id)
                if review is None:
                    continue
                try:
                    mapping = await self.mappings.get_by_card(card.id)
                    if mapping is not None and not mapping.sync_enabled:
                        continue
                    if mapping is not None and mapping.is_linked:
                        await self._push_review(
                            ProgressLink(card.id, mapping.external_card_id), review, report
                        )
                        continue

                    found = await self.client.find_card_by_front(deck.name, card.front)
                    ref = found or await self.client.add_card(
                        deck.name, card.front, card.back, card.tags or (), card.hint
                    )
                    if mapping is None:
                        await self.mappings.create(card.id, deck.id, ref.note_id, ref.card_id)
                    else:
                        await self.mappings.link(card.id, ref.note_id, ref.card_id)

                    if found is None:
                        report.exported_cards += 1
                    else:
                        await self._push_review(ProgressLink(card.id, ref.card_id), review, report)
                except ITEM_ERRORS as e:
                    logger.warning("Failed to export card {}: {}", card.id, e)
                    report.error(f"Failed to create card in Anki: {e}")

        return await self._finish(user_id, report)

    async def _push_review(
        self,
        link: ProgressLink,
        review: ReviewRecord,
        report: SyncReport,
    ) -> None:
        try:
            await self.client.push_progress([link], [review])
            report.exported_reviews += 1
        except ExternalStoreError as e:
            logger.warning("Failed to push progress for card {}: {}", link.card_id, e)
            report.conflict(
                ConflictKind.REVIEW,
                str(review.id) if review.id is not None else link.card_id,
                f"Failed to export: {e}",
            )

    # ========================================
    # Bidirectional
    # ========================================

    async def sync_bidirectional(self, user_id: str, deck_id: str) -> SyncOutcome:
        """
        Merge progress for every linked card of a deck, newest review wins.

        After the merge every synced mapping's ``last_synced_at`` moves to
        now, whether or not that card changed.
        """
        report = SyncReport(SyncType.BIDIRECTIONAL, started_at=self._clock())
        deck = await self._load_deck(deck_id, report)
        if deck is None:
            return await self._finish(user_id, report)

        async with self._deck_locks.hold(deck.id):
            try:
                mappings = [m for m in await self.mappings.list_for_deck(deck.id) if m.is_linked]
                reviews = await self.repository.list_reviews(
                    user_id, [m.card_id for m in mappings]
                )
            except SQLAlchemyError as e:
                report.error(f"Failed to load mappings for deck {deck.name!r}: {e}")
                return await self._finish(user_id, report)

            links = [ProgressLink(m.card_id, m.external_card_id) for m in mappings]
            try:
                merged = await self.client.sync_progress(deck.name, reviews, links)
            except VoiceCardsError as e:
                report.error(f"Progress sync failed: {e}")
                return await self._finish(user_id, report)

            for review in merged.pulled:
                try:
                    await self.repository.insert_review_record(
                        _record_from_external(user_id, review.card_id, review)
                    )
                    report.imported_reviews += 1
                except (ValueError, *ITEM_ERRORS) as e:
                    logger.warning("Failed to store pulled review for card {}: {}", review.card_id, e)
                    report.error(f"Failed to store review for card {review.card_id}: {e}")

            report.exported_reviews += merged.exported
            for conflict in merged.conflicts:
                report.conflict(ConflictKind.REVIEW, conflict.card_id, conflict.reason)

            try:
                await self.mappings.touch([m.id for m in mappings], self._clock())
            except SQLAlchemyError as e:
                report.error(f"Failed to update sync watermark: {e}")

        return await self._finish(user_id, report)

    # ========================================
    # Conflict resolution
    # ========================================

    async def resolve_conflict(
        self,
        user_id: str,
        card_id: str,
        resolution: ConflictResolution | str,
    ) -> ResolvedConflict:
        """
        Settle a reported conflict for one linked card.

        use_external copies Anki's text and progress into the primary store,
        use_primary copies the primary store's into Anki. merge takes each
        part from the side that changed it last: text by modification time,
        progress by latest review time. Ties keep the primary store's value.

        Raises:
            ValueError: For an unknown resolution
            NotFoundError: If the card, its mapping or its Anki card is missing
        """
        resolution = ConflictResolution(resolution)

        card = await self.repository.get_card(card_id)
        if card is None:
            raise NotFoundError(f"Card {card_id} not found")
        mapping = await self.mappings.get_by_card(card_id)
        if mapping is None or not mapping.is_linked:
            raise NotFoundError(f"Card {card_id} is not linked to an Anki card")

        async with self._deck_locks.hold(card.deck_id):
            external = await self.client.get_card(mapping.external_card_id)
            if external is None:
                raise NotFoundError(f"Anki card {mapping.external_card_id} not found")

            local_review = await self.repository.latest_review_record(card_id, user_id)
            remote_review = await self.client.latest_review(mapping.external_card_id)

            if resolution is ConflictResolution.USE_EXTERNAL:
                content_source = progress_source = "external"
            elif resolution is ConflictResolution.USE_PRIMARY:
                content_source = progress_source = "primary"
            else:
                local_modified = as_utc(card.updated_at)
                content_source = (
                    "external"
                    if external.modified_at and external.modified_at > local_modified
                    else "primary"
                )
                progress_source = (
                    "external"
                    if remote_review is not None
                    and (local_review is None or remote_review.reviewed_at > local_review.reviewed_at)
                    else "primary"
                )

            if content_source == "external":
                await self.repository.update_card_content(
                    card_id, external.back, external.hint, external.tags
                )
            else:
                await self.client.update_card_content(
                    external.note_id, card.back, card.hint, card.tags or ()
                )

            applied_progress = None
            if progress_source == "external" and remote_review is not None:
                if local_review is None or not (
                    remote_review.reviewed_at == local_review.reviewed_at
                    and remote_review.same_schedule(local_review)
                ):
                    await self.repository.insert_review_record(
                        _record_from_external(user_id, card_id, remote_review)
                    )
                applied_progress = "external"
            elif progress_source == "primary" and local_review is not None:
                await self.client.push_progress(
                    [ProgressLink(card_id, mapping.external_card_id)], [local_review]
                )
                applied_progress = "primary"

            await self.mappings.touch([mapping.id], self._clock())

        logger.info(
            "Resolved conflict for card {} with {}: content={}, progress={}",
            card_id,
            resolution.value,
            content_source,
            applied_progress,
        )
        return ResolvedConflict(
            card_id=card_id,
            resolution=resolution,
            content_source=content_source,
            progress_source=applied_progress,
        )

    # ========================================
    # History
    # ========================================

    async def get_sync_history(self, user_id: str, limit: int = 10) -> list[SyncHistoryEntry]:
        return await self.audit.list_history(user_id, limit)
