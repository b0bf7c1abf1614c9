"""Spaced-repetition flashcards with bidirectional Anki sync."""

__version__ = "0.3.0"
