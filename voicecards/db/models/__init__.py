# SQLAlchemy models
from .base import Base
from .cards import (
    Card,
    CardReview,
    Deck,
    StudySession,
    UserCardState,
    UserSyncSettings,
)
from .sync import AnkiCardMapping, AnkiSyncHistory

__all__ = [
    # Base
    "Base",
    # Primary store
    "Card",
    "CardReview",
    "Deck",
    "StudySession",
    "UserCardState",
    "UserSyncSettings",
    # Anki sync
    "AnkiCardMapping",
    "AnkiSyncHistory",
]
