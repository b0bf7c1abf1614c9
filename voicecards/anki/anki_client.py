"""
AnkiConnect client for voicecards.

Provides an async HTTP wrapper around the AnkiConnect API for:
- Importing Anki decks with their full review history
- Creating cards for primary-store cards that Anki does not have yet
- Pushing scheduling progress (ease factor + due date) to Anki
- Merging progress in both directions, newest review wins

Based on AnkiConnect API v6.

Hardening:
- Connection check with cached result
- Configurable timeout with retry and exponential backoff on timeouts,
  transport errors and 5xx responses
- Per-action error detection inside ``multi`` batches
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Sequence
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from typing import Any

import httpx
from loguru import logger

from voicecards.anki.config import (
    ANKI_CONNECT_VERSION,
    BUTTON_GRADES,
    CONNECTION_CACHE_SECONDS,
    EASE_SCALE,
    RETRY_STATUS_CODES,
    SOURCE_TAG,
    deck_query,
)
from voicecards.config import get_settings
from voicecards.core.records import MINIMUM_EASE_FACTOR, ReviewRecord
from voicecards.errors import ExternalStoreError, ExternalUnavailableError, NotFoundError
from voicecards.study.scheduler import Grade, SM2Scheduler


# =============================================================================
# Payloads
# =============================================================================


@dataclass(frozen=True)
class ExternalCardRef:
    note_id: int
    card_id: int


@dataclass(frozen=True)
class ExternalCard:
    """One Anki card flattened to the fields voicecards tracks."""

    note_id: int
    card_id: int
    front: str
    back: str
    hint: str | None = None
    tags: tuple[str, ...] = ()
    modified_at: datetime | None = None


@dataclass(frozen=True)
class ExternalReview:
    """
    One Anki review log entry expressed as SM-2 state.

    ``card_id`` is the primary-store card id when it is known.
    """

    external_card_id: int
    quality: Grade
    ease_factor: float
    interval_days: int
    repetitions: int
    reviewed_at: datetime
    next_due_at: datetime
    card_id: str | None = None

    def same_schedule(self, record: ReviewRecord) -> bool:
        return (
            self.interval_days == record.interval_days
            and self.repetitions == record.repetitions
            and abs(self.ease_factor - record.ease_factor) < 0.001
        )


@dataclass(frozen=True)
class ExternalDeck:
    name: str
    description: str | None
    cards: list[ExternalCard]
    reviews: list[ExternalReview]


@dataclass(frozen=True)
class ProgressLink:
    """Primary card id paired with the Anki card id it is mapped to."""

    card_id: str
    external_card_id: int


@dataclass(frozen=True)
class ProgressConflict:
    card_id: str
    reason: str


@dataclass
class ProgressSyncResult:
    """
    Outcome of a two-way progress merge.

    ``pulled`` holds the Anki reviews that are newer than the primary store's
    and still have to be written there.
    """

    imported: int = 0
    exported: int = 0
    conflicts: list[ProgressConflict] = field(default_factory=list)
    pulled: list[ExternalReview] = field(default_factory=list)


def _from_millis(stamp: int) -> datetime:
    return datetime.fromtimestamp(stamp / 1000, tz=UTC)


def _from_seconds(stamp: int | None) -> datetime | None:
    if not stamp:
        return None
    try:
        return datetime.fromtimestamp(int(stamp), tz=UTC)
    except (OSError, OverflowError, ValueError):
        return None


def _field_value(fields: dict[str, Any], name: str) -> str:
    """Extract string value from an Anki note field dictionary."""
    value = fields.get(name)
    if isinstance(value, dict):
        return str(value.get("value", "")).strip()
    return str(value or "").strip()


def _ordered_field_names(fields: dict[str, Any]) -> list[str]:
    return sorted(fields, key=lambda name: (fields[name] or {}).get("order", 0))


class AnkiClient:
    """
    Async wrapper around the AnkiConnect API.

    AnkiConnect must be installed in Anki and listening (default port 8765).
    See: https://foosoft.net/projects/anki-connect/
    """

    def __init__(
        self,
        base_url: str | None = None,
        note_type: str | None = None,
        hint_field: str | None = None,
        timeout: float | None = None,
        retry_attempts: int | None = None,
        backoff_seconds: float = 1.0,
    ):
        """
        Initialize AnkiConnect client with retry logic.

        Args:
            base_url: AnkiConnect URL (default from config)
            note_type: Note type for created cards (default from config)
            hint_field: Optional note field holding the hint (default from config)
            timeout: Request timeout in seconds (default from config)
            retry_attempts: Attempts per request (default from config)
            backoff_seconds: Base delay, doubled after every failed attempt
        """
        settings = get_settings()
        self.base_url = base_url or settings.anki_connect_url
        self.note_type = note_type or settings.anki_note_type
        self.hint_field = hint_field if hint_field is not None else settings.anki_hint_field
        self.timeout = timeout or settings.anki_timeout_seconds
        self.retry_attempts = max(1, retry_attempts or settings.anki_retry_attempts)
        self.backoff_seconds = backoff_seconds
        self.client = httpx.AsyncClient(timeout=httpx.Timeout(self.timeout))
        self._scheduler = SM2Scheduler()
        self._model_fields: dict[str, list[str]] = {}
        self._last_connection_check = 0.0
        self._connection_available = False

        logger.debug(
            "Initialized AnkiConnect client: url={}, note_type={}, timeout={}s, retries={}",
            self.base_url,
            self.note_type,
            self.timeout,
            self.retry_attempts,
        )

    async def close(self) -> None:
        """Close the HTTP client."""
        await self.client.aclose()

    # ========================================
    # Core API Methods
    # ========================================

    async def _post(self, payload: dict[str, Any]) -> dict[str, Any]:
        """
        POST a payload with retry.

        Raises:
            ExternalUnavailableError: If every attempt timed out, failed to
                connect or hit a server error
            ExternalStoreError: On a 4xx response
        """
        last_error: Exception | None = None

        for attempt in range(self.retry_attempts):
            try:
                response = await self.client.post(self.base_url, json=payload)
                response.raise_for_status()
                return response.json()

            except httpx.TimeoutException as e:
                last_error = e
                reason = "timeout"

            except httpx.HTTPStatusError as e:
                if e.response.status_code not in RETRY_STATUS_CODES:
                    logger.error("AnkiConnect client error: {}", e.response.status_code)
                    raise ExternalStoreError(
                        f"AnkiConnect rejected request: HTTP {e.response.status_code}"
                    ) from e
                last_error = e
                reason = f"server error {e.response.status_code}"

            except httpx.RequestError as e:
                last_error = e
                reason = f"request error: {e}"

            if attempt < self.retry_attempts - 1:
                wait_time = self.backoff_seconds * 2 ** attempt
                logger.warning(
                    "AnkiConnect {} on attempt {}/{}. Retrying in {}s...",
                    reason,
                    attempt + 1,
                    self.retry_attempts,
                    wait_time,
                )
                await asyncio.sleep(wait_time)

        logger.error("AnkiConnect unavailable after {} attempts: {}", self.retry_attempts, last_error)
        raise ExternalUnavailableError(
            f"AnkiConnect unavailable after {self.retry_attempts} attempts: {last_error}"
        ) from last_error

    async def _invoke(self, action: str, params: dict[str, Any] | None = None) -> Any:
        """
        Invoke an AnkiConnect API action.

        Args:
            action: AnkiConnect action name (e.g., "version", "findCards")
            params: Action parameters

        Returns:
            Result from AnkiConnect API

        Raises:
            ExternalStoreError: If AnkiConnect returns an error
        """
        log_params = params
        if params:
            log_params = {
                k: f"[{len(v)} items]" if isinstance(v, list) and len(v) > 10 else v
                for k, v in params.items()
            }
        logger.debug("AnkiConnect request: action={}, params={}", action, log_params)

        data = await self._post(
            {"action": action, "version": ANKI_CONNECT_VERSION, "params": params or {}}
        )
        if data.get("error"):
            raise ExternalStoreError(f"AnkiConnect error ({action}): {data['error']}")
        return data.get("result")

    async def _invoke_multi(self, actions: list[dict[str, Any]]) -> list[Any]:
        """
        Invoke several actions in one request.

        Returns:
            The result of each action, in order

        Raises:
            ExternalStoreError: If the batch or any single action failed
        """
        logger.debug("AnkiConnect multi request: {} actions", len(actions))
        results = await self._invoke("multi", {"actions": actions}) or []

        unwrapped = []
        for action, item in zip(actions, results, strict=False):
            if isinstance(item, dict) and set(item) == {"result", "error"}:
                if item["error"]:
                    raise ExternalStoreError(
                        f"AnkiConnect error ({action['action']}): {item['error']}"
                    )
                item = item["result"]
            unwrapped.append(item)
        return unwrapped

    # ========================================
    # Connection
    # ========================================

    async def check_connection(self, cache_seconds: float = CONNECTION_CACHE_SECONDS) -> bool:
        """
        Check if AnkiConnect is running and accessible.

        Uses cached result to avoid hammering Anki on repeated checks.
        """
        now = time.monotonic()
        if self._last_connection_check and (now - self._last_connection_check) < cache_seconds:
            return self._connection_available

        try:
            version = await self._invoke("version")
            self._connection_available = True
            logger.debug("AnkiConnect version detected: {}", version)
        except ExternalUnavailableError:
            self._connection_available = False
            logger.warning(
                "Anki not running or AnkiConnect not installed. "
                "Start Anki and ensure AnkiConnect addon is enabled."
            )
        except ExternalStoreError as e:
            self._connection_available = False
            logger.warning("AnkiConnect error: {}", e)

        self._last_connection_check = now
        return self._connection_available

    def is_available(self) -> bool:
        """Result of the last connection check, without a network call."""
        return self._connection_available

    async def require_connection(self) -> None:
        """
        Raise if Anki is not available.

        Raises:
            ExternalUnavailableError: If AnkiConnect cannot be reached
        """
        if not await self.check_connection():
            raise ExternalUnavailableError(
                "Anki is not available. Ensure Anki is running with "
                "AnkiConnect addon enabled and no modal dialogs are open."
            )

    async def request_permission(self) -> bool:
        """Ask AnkiConnect to trust this origin. Returns True if granted."""
        result = await self._invoke("requestPermission") or {}
        granted = result.get("permission") == "granted"
        if not granted:
            logger.warning("AnkiConnect permission denied")
        return granted

    # ========================================
    # Lookup helpers
    # ========================================

    async def _field_names(self, model_name: str) -> list[str]:
        if model_name not in self._model_fields:
            names = await self._invoke("modelFieldNames", {"modelName": model_name})
            self._model_fields[model_name] = list(names or [])
        return self._model_fields[model_name]

    def _card_from_note(self, card_id: int, note: dict[str, Any]) -> ExternalCard:
        fields = note.get("fields") or {}
        names = _ordered_field_names(fields)
        front = _field_value(fields, names[0]) if names else ""
        back = _field_value(fields, names[1]) if len(names) > 1 else ""
        hint = None
        if self.hint_field and self.hint_field in fields:
            hint = _field_value(fields, self.hint_field) or None
        return ExternalCard(
            note_id=note["noteId"],
            card_id=card_id,
            front=front,
            back=back,
            hint=hint,
            tags=tuple(note.get("tags") or ()),
            modified_at=_from_seconds(note.get("mod")),
        )

    async def _cards_info(self, card_ids: Sequence[int]) -> dict[int, dict[str, Any]]:
        if not card_ids:
            return {}
        infos = await self._invoke("cardsInfo", {"cards": list(card_ids)}) or []
        # Unknown ids come back as empty objects
        return {info["cardId"]: info for info in infos if info and "cardId" in info}

    async def _review_logs(self, card_ids: Sequence[int]) -> dict[int, list[dict[str, Any]]]:
        if not card_ids:
            return {}
        raw = await self._invoke("getReviewsOfCards", {"cards": [str(c) for c in card_ids]}) or {}
        logs = {}
        for key, entries in raw.items():
            logs[int(key)] = sorted(entries or [], key=lambda e: e.get("id", 0))
        return logs

    def _reviews_from_log(
        self,
        external_card_id: int,
        entries: list[dict[str, Any]],
    ) -> list[ExternalReview]:
        """
        Convert a card's review log to SM-2 states, oldest first.

        Learning steps report a factor of 0; they keep the previous ease.
        Negative intervals are learning steps in seconds and count as 0 days.
        """
        reviews: list[ExternalReview] = []
        ease = self._scheduler.config.initial_ease_factor
        repetitions = 0
        for entry in entries:
            grade = BUTTON_GRADES.get(entry.get("ease"))
            if grade is None:
                continue
            factor = entry.get("factor") or 0
            if factor > 0:
                ease = max(MINIMUM_EASE_FACTOR, factor / EASE_SCALE)
            repetitions = 0 if grade == Grade.AGAIN else repetitions + 1
            interval = max(0, int(entry.get("ivl") or 0))
            reviewed_at = _from_millis(entry["id"])
            reviews.append(
                ExternalReview(
                    external_card_id=external_card_id,
                    quality=grade,
                    ease_factor=ease,
                    interval_days=interval,
                    repetitions=repetitions,
                    reviewed_at=reviewed_at,
                    next_due_at=self._scheduler.due_at(interval, reviewed_at),
                )
            )
        return reviews

    # ========================================
    # Deck import
    # ========================================

    async def import_deck(self, deck_name: str) -> ExternalDeck:
        """
        Fetch every card of a deck together with its review history.

        Raises:
            NotFoundError: If Anki has no deck with this name
        """
        deck_names = await self._invoke("deckNames") or []
        if deck_name not in deck_names:
            raise NotFoundError(f"Anki deck {deck_name!r} not found")

        card_ids = await self._invoke("findCards", {"query": deck_query(deck_name)}) or []
        if not card_ids:
            logger.warning("Anki deck {!r} has no cards", deck_name)
            return ExternalDeck(name=deck_name, description=None, cards=[], reviews=[])

        infos = await self._cards_info(card_ids)
        note_ids = sorted({info["note"] for info in infos.values()})
        notes = await self._invoke("notesInfo", {"notes": note_ids}) or []
        notes_by_id = {n["noteId"]: n for n in notes if n}

        cards = [
            self._card_from_note(card_id, notes_by_id[info["note"]])
            for card_id, info in infos.items()
            if info["note"] in notes_by_id
        ]

        logs = await self._review_logs(list(infos))
        reviews = [
            review
            for card_id, entries in logs.items()
            for review in self._reviews_from_log(card_id, entries)
        ]

        logger.info(
            "Fetched {} cards and {} reviews from Anki deck {!r}",
            len(cards),
            len(reviews),
            deck_name,
        )
        return ExternalDeck(
            name=deck_name,
            description=f"Imported from Anki deck {deck_name}",
            cards=cards,
            reviews=reviews,
        )

    # ========================================
    # Cards
    # ========================================

    async def get_card(self, external_card_id: int) -> ExternalCard | None:
        infos = await self._cards_info([external_card_id])
        info = infos.get(external_card_id)
        if info is None:
            return None
        notes = await self._invoke("notesInfo", {"notes": [info["note"]]}) or []
        if not notes or not notes[0]:
            return None
        return self._card_from_note(external_card_id, notes[0])

    async def latest_review(self, external_card_id: int) -> ExternalReview | None:
        logs = await self._review_logs([external_card_id])
        reviews = self._reviews_from_log(external_card_id, logs.get(external_card_id, []))
        return reviews[-1] if reviews else None

    async def find_card_by_front(self, deck_name: str, front: str) -> ExternalCardRef | None:
        """Find a card whose first field equals ``front`` exactly."""
        search_text = front[:60].replace('"', "").replace(":", " ").replace("\\", "")
        query = f'{deck_query(deck_name)} "{search_text}"'
        note_ids = await self._invoke("findNotes", {"query": query}) or []
        if not note_ids:
            return None

        notes = await self._invoke("notesInfo", {"notes": note_ids[:10]}) or []
        for note in notes:
            fields = (note or {}).get("fields") or {}
            names = _ordered_field_names(fields)
            if names and _field_value(fields, names[0]) == front.strip() and note.get("cards"):
                logger.debug("Found Anki note {} by front text", note["noteId"])
                return ExternalCardRef(note_id=note["noteId"], card_id=note["cards"][0])
        return None

    async def add_card(
        self,
        deck_name: str,
        front: str,
        back: str,
        tags: Sequence[str] = (),
        hint: str | None = None,
    ) -> ExternalCardRef:
        """
        Create a note in Anki and return the ids of its card.

        Raises:
            ExternalStoreError: If Anki refused the note
        """
        names = await self._field_names(self.note_type)
        if len(names) < 2:
            raise ExternalStoreError(f"Note type {self.note_type!r} needs front and back fields")

        fields = {names[0]: front, names[1]: back}
        if hint and self.hint_field in names:
            fields[self.hint_field] = hint

        await self._invoke("createDeck", {"deck": deck_name})
        note_id = await self._invoke(
            "addNote",
            {
                "note": {
                    "deckName": deck_name,
                    "modelName": self.note_type,
                    "fields": fields,
                    "tags": [*tags, SOURCE_TAG],
                    "options": {"allowDuplicate": False, "duplicateScope": "deck"},
                }
            },
        )
        if not note_id:
            raise ExternalStoreError(f"Anki did not create a note for {front[:40]!r}")

        card_ids = await self._invoke("findCards", {"query": f"nid:{note_id}"}) or []
        if not card_ids:
            raise ExternalStoreError(f"Anki note {note_id} has no cards")

        logger.info("Created Anki note {} (card {})", note_id, card_ids[0])
        return ExternalCardRef(note_id=note_id, card_id=card_ids[0])

    async def update_card_content(
        self,
        note_id: int,
        back: str,
        hint: str | None,
        tags: Sequence[str],
    ) -> None:
        """Overwrite the back, hint and tags of an Anki note."""
        notes = await self._invoke("notesInfo", {"notes": [note_id]}) or []
        if not notes or not notes[0]:
            raise NotFoundError(f"Anki note {note_id} not found")

        fields = notes[0].get("fields") or {}
        names = _ordered_field_names(fields)
        if len(names) < 2:
            raise ExternalStoreError(f"Anki note {note_id} has no back field")

        updates = {names[1]: back}
        if self.hint_field in fields:
            updates[self.hint_field] = hint or ""

        await self._invoke_multi(
            [
                {"action": "updateNoteFields", "params": {"note": {"id": note_id, "fields": updates}}},
                {"action": "updateNoteTags", "params": {"note": note_id, "tags": list(tags)}},
            ]
        )

    # ========================================
    # Progress
    # ========================================

    async def push_progress(
        self,
        links: Sequence[ProgressLink],
        reviews: Sequence[ReviewRecord],
    ) -> int:
        """
        Write ease factor and due date of each linked card's review to Anki.

        ``reviews`` may contain several records per card; the first one seen
        (newest, when ordered newest first) is pushed.

        Returns:
            Number of cards updated

        Raises:
            ExternalStoreError: If any action of the batch failed
        """
        latest: dict[str, ReviewRecord] = {}
        for review in reviews:
            latest.setdefault(review.card_id, review)

        targets = [(link, latest[link.card_id]) for link in links if link.card_id in latest]
        if not targets:
            return 0

        actions: list[dict[str, Any]] = [
            {
                "action": "setEaseFactors",
                "params": {
                    "cards": [link.external_card_id for link, _ in targets],
                    "easeFactors": [round(r.ease_factor * EASE_SCALE) for _, r in targets],
                },
            }
        ]
        for link, review in targets:
            days = f"{review.interval_days}!" if review.interval_days > 0 else "0"
            actions.append(
                {
                    "action": "setDueDate",
                    "params": {"cards": [link.external_card_id], "days": days},
                }
            )

        results = await self._invoke_multi(actions)
        ease_results = results[0] if results else None
        if isinstance(ease_results, list) and not all(ease_results):
            failed = [
                link.card_id
                for (link, _), ok in zip(targets, ease_results, strict=False)
                if not ok
            ]
            raise ExternalStoreError(f"Anki rejected ease factor for cards {failed}")

        logger.debug("Pushed progress for {} cards to Anki", len(targets))
        return len(targets)

    async def sync_progress(
        self,
        deck_name: str,
        reviews: Sequence[ReviewRecord],
        links: Sequence[ProgressLink],
    ) -> ProgressSyncResult:
        """
        Merge progress between the primary store and Anki, card by card.

        For each linked card the side with the newer review wins: newer Anki
        reviews are returned in ``pulled``, newer primary reviews are pushed.
        Cards that vanished from Anki, or that both sides reviewed at the same
        moment with different outcomes, are reported as conflicts.
        """
        result = ProgressSyncResult()
        if not links:
            return result

        latest_local: dict[str, ReviewRecord] = {}
        for review in reviews:
            latest_local.setdefault(review.card_id, review)

        infos = await self._cards_info([link.external_card_id for link in links])
        present = [link for link in links if link.external_card_id in infos]
        for link in links:
            if link.external_card_id not in infos:
                result.conflicts.append(
                    ProgressConflict(link.card_id, f"Card {link.external_card_id} not found in Anki")
                )

        logs = await self._review_logs([link.external_card_id for link in present])

        to_push: list[ProgressLink] = []
        for link in present:
            local = latest_local.get(link.card_id)
            history = self._reviews_from_log(link.external_card_id, logs.get(link.external_card_id, []))
            remote = replace(history[-1], card_id=link.card_id) if history else None

            if remote is None and local is None:
                continue
            if local is None or (remote is not None and remote.reviewed_at > local.reviewed_at):
                result.pulled.append(remote)
                continue
            if remote is None or local.reviewed_at > remote.reviewed_at:
                info = infos[link.external_card_id]
                if (
                    info.get("interval") == local.interval_days
                    and info.get("factor") == round(local.ease_factor * EASE_SCALE)
                ):
                    continue
                to_push.append(link)
                continue
            if not remote.same_schedule(local):
                result.conflicts.append(
                    ProgressConflict(
                        link.card_id,
                        "Reviewed in both stores at the same time with different outcomes",
                    )
                )

        result.imported = len(result.pulled)
        if to_push:
            try:
                result.exported = await self.push_progress(
                    to_push, [latest_local[link.card_id] for link in to_push]
                )
            except ExternalStoreError as e:
                for link in to_push:
                    result.conflicts.append(ProgressConflict(link.card_id, f"Failed to export: {e}"))

        logger.debug(
            "Progress merge for {!r}: pulled={}, pushed={}, conflicts={}",
            deck_name,
            result.imported,
            result.exported,
            len(result.conflicts),
        )
        return result
