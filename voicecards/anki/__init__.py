"""Anki bidirectional sync."""

from voicecards.anki.anki_client import AnkiClient
from voicecards.anki.background_sync import BackgroundAnkiSync, SyncStatus
from voicecards.anki.mapping_store import MappingStore
from voicecards.anki.sync_service import AnkiSyncService, ResolvedConflict

__all__ = [
    "AnkiClient",
    "AnkiSyncService",
    "BackgroundAnkiSync",
    "MappingStore",
    "ResolvedConflict",
    "SyncStatus",
]
