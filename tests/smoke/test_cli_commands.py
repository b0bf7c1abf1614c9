"""
Smoke Tests for CLI Commands.

These tests verify that CLI commands run without errors and produce output.
They don't validate correctness deeply - just that commands work against a
throwaway SQLite database.

Usage:
    pytest tests/smoke/test_cli_commands.py -v
    pytest tests/smoke/test_cli_commands.py -v -m smoke
"""

import re
import subprocess
import sys
from pathlib import Path

import pytest
from loguru import logger
from typer.testing import CliRunner

from voicecards.cli.main import app

# Mark all tests in this module as smoke tests
pytestmark = pytest.mark.smoke

# Project root
PROJECT_ROOT = Path(__file__).parent.parent.parent

runner = CliRunner()


def run_cli_command(command: str, timeout: int = 30) -> tuple[int, str, str]:
    """
    Run the CLI in a subprocess and return exit code, stdout, stderr.

    Args:
        command: The command to run (after 'python -m voicecards.cli.main')
        timeout: Maximum time to wait
    """
    result = subprocess.run(
        f"{sys.executable} -m voicecards.cli.main {command}",
        shell=True,
        cwd=PROJECT_ROOT,
        capture_output=True,
        text=True,
        timeout=timeout,
    )
    return result.returncode, result.stdout, result.stderr


def invoke(*args: str):
    return runner.invoke(app, list(args))


@pytest.fixture
def cli_db(monkeypatch, sqlite_path):
    """Point the CLI at a fresh SQLite file and create the tables."""
    monkeypatch.setenv("DATABASE_URL", f"sqlite+aiosqlite:///{sqlite_path}")
    monkeypatch.setenv("LOG_LEVEL", "WARNING")
    monkeypatch.setenv("VOICECARDS_USER", "alice")
    result = invoke("init-db")
    assert result.exit_code == 0, result.output
    yield sqlite_path
    logger.remove()
    logger.add(sys.stderr)


def create_deck_with_cards(tmp_path) -> str:
    result = invoke("deck-create", "Spanish", "--description", "Basic vocabulary")
    assert result.exit_code == 0, result.output
    deck_id = re.search(r"\(([0-9a-f-]{36})\)", result.output).group(1)

    cards = tmp_path / "cards.txt"
    cards.write_text("hola|hello|greeting\ngato|cat\nnot a card\n", encoding="utf-8")
    result = invoke("import-text", "Spanish", str(cards))
    assert result.exit_code == 0, result.output
    assert "Imported 2 cards" in result.output
    assert "Skipped 1" in result.output
    return deck_id


class TestCLIHelp:
    """Test that help commands work."""

    def test_main_help(self):
        """Main help should display without errors."""
        code, stdout, stderr = run_cli_command("--help")

        assert code == 0, f"Help failed: {stderr}"
        assert "voicecards" in stdout.lower()
        assert "Commands" in stdout

    def test_sync_help(self):
        result = invoke("sync", "--help")
        assert result.exit_code == 0
        assert "import" in result.output
        assert "resolve" in result.output


class TestStudyCommands:
    """next -> reveal -> grade -> skip against a real database."""

    def test_study_cycle(self, cli_db, tmp_path):
        create_deck_with_cards(tmp_path)

        result = invoke("next")
        assert result.exit_code == 0, result.output
        assert "hola" in result.output
        assert "greeting" in result.output
        assert "(2 due)" in result.output

        result = invoke("grade", "good")
        assert result.exit_code == 1
        assert "reveal" in result.output

        result = invoke("reveal")
        assert result.exit_code == 0, result.output
        assert "hello" in result.output

        result = invoke("grade", "good")
        assert result.exit_code == 0, result.output
        assert "1 day" in result.output

        result = invoke("next")
        assert "gato" in result.output
        session_id = re.search(r"session\s+([0-9a-f-]{36})", result.output).group(1)

        result = invoke("skip")
        assert result.exit_code == 0, result.output
        assert "Skipped card" in result.output

        result = invoke("session-stats", session_id)
        assert result.exit_code == 0, result.output
        assert "Reviewed" in result.output

        result = invoke("end-session", session_id)
        assert result.exit_code == 0, result.output

    def test_unrecognized_grade(self, cli_db, tmp_path):
        create_deck_with_cards(tmp_path)
        invoke("next")
        invoke("reveal")

        result = invoke("grade", "banana")
        assert result.exit_code == 1
        assert "Unrecognized grade" in result.output

    def test_nothing_due(self, cli_db):
        result = invoke("next", "--user", "bob")
        assert result.exit_code == 0
        assert "No cards due" in result.output

    def test_reveal_without_card(self, cli_db):
        result = invoke("reveal")
        assert result.exit_code == 1
        assert "No active card" in result.output


class TestDeckCommands:
    def test_decks_and_stats(self, cli_db, tmp_path):
        deck_id = create_deck_with_cards(tmp_path)

        result = invoke("decks")
        assert result.exit_code == 0, result.output
        assert "Spanish" in result.output

        result = invoke("deck-stats", deck_id)
        assert result.exit_code == 0, result.output
        assert "Mastered" in result.output

    def test_empty_deck_name(self, cli_db):
        result = invoke("deck-create", "  ")
        assert result.exit_code == 1

    def test_unknown_deck_stats(self, cli_db):
        result = invoke("deck-stats", "missing")
        assert result.exit_code == 1
        assert "not found" in result.output


class TestSyncCommands:
    """Sync commands that do not need Anki running."""

    def test_history_empty(self, cli_db):
        result = invoke("sync", "history")
        assert result.exit_code == 0, result.output
        assert "No sync history" in result.output

    def test_auto_toggle(self, cli_db, tmp_path):
        deck_id = create_deck_with_cards(tmp_path)

        result = invoke("sync", "auto", deck_id)
        assert result.exit_code == 0, result.output
        assert "enabled" in result.output

        result = invoke("sync", "auto", deck_id, "--disable")
        assert result.exit_code == 0, result.output
        assert "disabled" in result.output

    def test_export_unknown_deck_is_recorded(self, cli_db):
        result = invoke("sync", "export", "missing")
        assert result.exit_code == 1
        assert "not found" in result.output

        result = invoke("sync", "history")
        assert "export" in result.output
        assert "failed" in result.output

    def test_watch_requires_interval(self, cli_db):
        result = invoke("sync", "watch")
        assert result.exit_code == 1
        assert "disabled" in result.output
