"""
Failure taxonomy shared by the study session and Anki sync layers.

Session operations raise these directly. Reconciliation runs catch them
per item and record them in the SyncOutcome instead.
"""

from __future__ import annotations


class VoiceCardsError(Exception):
    """Base class for all voicecards failures."""


class InvalidStateError(VoiceCardsError):
    """A session operation was called out of sequence."""


class StaleSessionStateError(InvalidStateError):
    """The user's session row changed between read and write."""


class NotFoundError(VoiceCardsError):
    """A referenced card, deck, session or mapping does not exist."""


class ExternalStoreError(VoiceCardsError):
    """AnkiConnect rejected an action."""


class ExternalUnavailableError(ExternalStoreError):
    """AnkiConnect could not be reached."""


class UnrecognizedGradeError(VoiceCardsError, ValueError):
    """Free-text grade input did not match any known grade."""

    def __init__(self, text: str) -> None:
        super().__init__(
            f"Unrecognized grade {text!r}; expected one of again, hard, good, easy"
        )
        self.text = text
