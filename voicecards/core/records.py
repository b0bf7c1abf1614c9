"""
Immutable domain records passed between the study, sync and storage layers.

ORM rows never leave the repository for these concerns; callers get frozen
dataclasses so a record cannot be mutated after it was written.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, replace
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from voicecards.study.scheduler import Grade, SchedulingState

MINIMUM_EASE_FACTOR = 1.3


# =============================================================================
# Reviews
# =============================================================================


@dataclass(frozen=True)
class ReviewRecord:
    """One completed grading event for a (card, user) pair."""

    card_id: str
    user_id: str
    ease_factor: float
    interval_days: int
    repetitions: int
    quality: Grade
    reviewed_at: datetime
    next_due_at: datetime
    session_id: str | None = None
    id: int | None = None

    def __post_init__(self) -> None:
        if self.ease_factor < MINIMUM_EASE_FACTOR:
            raise ValueError(
                f"ease_factor {self.ease_factor} below minimum {MINIMUM_EASE_FACTOR}"
            )
        if self.interval_days < 0:
            raise ValueError(f"interval_days must be >= 0, got {self.interval_days}")
        if self.repetitions < 0:
            raise ValueError(f"repetitions must be >= 0, got {self.repetitions}")

    @property
    def scheduling_state(self) -> SchedulingState:
        return SchedulingState(
            ease_factor=self.ease_factor,
            interval_days=self.interval_days,
            repetitions=self.repetitions,
        )


# =============================================================================
# Session state
# =============================================================================


class SessionPhase(str, Enum):
    """Where a user is in the fetch -> reveal -> grade cycle."""

    IDLE = "idle"
    PRESENTED = "presented"
    REVEALED = "revealed"


@dataclass(frozen=True)
class SessionState:
    """
    Per-user pointer to the card currently on screen.

    ``version`` increases on every write and is used for compare-and-swap.
    """

    user_id: str
    current_card_id: str | None = None
    session_id: str | None = None
    deck_id: str | None = None
    answer_revealed: bool = False
    version: int = 0

    def __post_init__(self) -> None:
        if self.answer_revealed and self.current_card_id is None:
            raise ValueError("answer_revealed requires a current card")

    @property
    def phase(self) -> SessionPhase:
        if self.current_card_id is None:
            return SessionPhase.IDLE
        if self.answer_revealed:
            return SessionPhase.REVEALED
        return SessionPhase.PRESENTED

    def present(self, card_id: str, session_id: str, deck_id: str | None) -> SessionState:
        return replace(
            self,
            current_card_id=card_id,
            session_id=session_id,
            deck_id=deck_id,
            answer_revealed=False,
        )

    def reveal(self) -> SessionState:
        return replace(self, answer_revealed=True)

    def clear(self) -> SessionState:
        return replace(self, current_card_id=None, answer_revealed=False)


# =============================================================================
# Identity mapping
# =============================================================================


@dataclass(frozen=True)
class CardMapping:
    """
    Link between a primary-store card and its Anki counterpart.

    External ids are None until the card has been seen in Anki by an export.
    """

    card_id: str
    deck_id: str
    external_note_id: int | None = None
    external_card_id: int | None = None
    last_synced_at: datetime | None = None
    sync_enabled: bool = True
    id: int | None = None

    @property
    def is_linked(self) -> bool:
        return self.external_card_id is not None


# =============================================================================
# Reconciliation outcomes
# =============================================================================


class SyncType(str, Enum):
    IMPORT = "import"
    EXPORT = "export"
    BIDIRECTIONAL = "bidirectional"


class ConflictKind(str, Enum):
    CARD = "card"
    REVIEW = "review"


class ConflictResolution(str, Enum):
    """Manual resolutions a caller can apply to a reported conflict."""

    USE_EXTERNAL = "use_external"
    USE_PRIMARY = "use_primary"
    MERGE = "merge"


@dataclass(frozen=True)
class SyncConflict:
    kind: ConflictKind
    entity_id: str
    reason: str
    resolution: str | None = None


@dataclass(frozen=True)
class ImportCounts:
    decks: int = 0
    cards: int = 0
    reviews: int = 0


@dataclass(frozen=True)
class ExportCounts:
    cards: int = 0
    reviews: int = 0


@dataclass(frozen=True)
class SyncOutcome:
    """Audit entry produced by every reconciliation run."""

    sync_type: SyncType
    imported: ImportCounts
    exported: ExportCounts
    conflicts: tuple[SyncConflict, ...]
    errors: tuple[str, ...]
    started_at: datetime
    timestamp: datetime

    @property
    def success(self) -> bool:
        return not self.errors

    def to_dict(self) -> dict[str, Any]:
        """JSON-ready representation stored in the sync history table."""
        data = asdict(self)
        data["sync_type"] = self.sync_type.value
        data["conflicts"] = [
            {**asdict(c), "kind": c.kind.value} for c in self.conflicts
        ]
        data["errors"] = list(self.errors)
        data["started_at"] = self.started_at.isoformat()
        data["timestamp"] = self.timestamp.isoformat()
        data["success"] = self.success
        return data


@dataclass
class SyncReport:
    """Mutable accumulator for a run in progress; frozen into a SyncOutcome."""

    sync_type: SyncType
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    imported_decks: int = 0
    imported_cards: int = 0
    imported_reviews: int = 0
    exported_cards: int = 0
    exported_reviews: int = 0
    conflicts: list[SyncConflict] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    def conflict(
        self,
        kind: ConflictKind,
        entity_id: str,
        reason: str,
        resolution: str | None = None,
    ) -> None:
        self.conflicts.append(SyncConflict(kind, entity_id, reason, resolution))

    def error(self, message: str) -> None:
        self.errors.append(message)

    def freeze(self, finished_at: datetime | None = None) -> SyncOutcome:
        return SyncOutcome(
            sync_type=self.sync_type,
            imported=ImportCounts(
                decks=self.imported_decks,
                cards=self.imported_cards,
                reviews=self.imported_reviews,
            ),
            exported=ExportCounts(
                cards=self.exported_cards,
                reviews=self.exported_reviews,
            ),
            conflicts=tuple(self.conflicts),
            errors=tuple(self.errors),
            started_at=self.started_at,
            timestamp=finished_at or datetime.now(UTC),
        )
