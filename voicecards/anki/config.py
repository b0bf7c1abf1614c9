"""
AnkiConnect protocol constants.

Centralizes the Anki-side conventions shared by the client and the sync
service.
"""

from __future__ import annotations

from voicecards.study.scheduler import Grade

# =============================================================================
# AnkiConnect protocol
# =============================================================================
ANKI_CONNECT_VERSION = 6

# Server errors worth retrying; 4xx means the request itself is wrong
RETRY_STATUS_CODES = (500, 502, 503, 504)

# Seconds to trust a connection check before asking Anki again
CONNECTION_CACHE_SECONDS = 30.0

# =============================================================================
# Review log
# =============================================================================
# Revlog "ease" is the answer button pressed (1-4). 0 marks manual
# rescheduling entries, which are not reviews.
BUTTON_GRADES: dict[int, Grade] = {
    1: Grade.AGAIN,
    2: Grade.HARD,
    3: Grade.GOOD,
    4: Grade.EASY,
}

# Anki stores ease factors as permille (2500 == 2.5)
EASE_SCALE = 1000

# =============================================================================
# Cards created by export
# =============================================================================
# Tag added to every note created from the primary store
SOURCE_TAG = "voicecards"


def deck_query(deck_name: str) -> str:
    """Anki search query matching every card in a deck (and its subdecks)."""
    escaped = deck_name.replace('"', '\\"')
    return f'deck:"{escaped}"'
