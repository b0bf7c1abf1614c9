"""
Typer CLI for voicecards.

Commands:
    voicecards init-db              - Create database tables
    voicecards next                 - Present the next due card
    voicecards reveal               - Reveal the answer of the presented card
    voicecards grade GRADE          - Grade the revealed card (again/hard/good/easy)
    voicecards skip                 - Put the presented card aside
    voicecards session-stats ID     - Show statistics of a study session
    voicecards end-session ID       - Close a study session
    voicecards decks                - List decks
    voicecards deck-create NAME     - Create a deck
    voicecards deck-stats DECK_ID   - Card counts for a deck
    voicecards import-text NAME FILE - Add front|back|hint lines to a deck
    voicecards sync import NAME     - Import an Anki deck
    voicecards sync export DECK_ID  - Export progress to Anki
    voicecards sync both DECK_ID    - Bidirectional progress merge
    voicecards sync resolve CARD_ID RESOLUTION - Settle a conflict
    voicecards sync history         - Recent sync runs
    voicecards sync auto DECK_ID    - Enable/disable auto-sync for a deck
    voicecards sync watch           - Run the auto-sync loop

Usage:
    voicecards --help
    voicecards next --user alice
    voicecards grade good --user alice
    voicecards sync import "Spanish::Verbs" --user alice
"""

from __future__ import annotations

import asyncio
import sys
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import TypeVar

import typer
from loguru import logger
from rich import print as rprint
from rich.console import Console
from rich.table import Table

from voicecards.config import get_settings
from voicecards.core.records import ConflictResolution, SyncOutcome
from voicecards.db.database import dispose_engine, get_session_factory, init_db
from voicecards.db.repository import SqlCardRepository
from voicecards.errors import VoiceCardsError

T = TypeVar("T")

app = typer.Typer(
    help="voicecards CLI: spaced-repetition study with Anki sync",
    no_args_is_help=True,
)
sync_app = typer.Typer(help="Anki reconciliation (import, export, bidirectional)")
app.add_typer(sync_app, name="sync")

console = Console()

UserOption = typer.Option("default", "--user", "-u", envvar="VOICECARDS_USER", help="User id")


def _configure_logging() -> None:
    settings = get_settings()
    logger.remove()
    logger.add(
        sys.stderr,
        level=settings.log_level,
        format="<dim>{time:HH:mm:ss}</dim> | <level>{level: <8}</level> | {message}",
    )
    if settings.log_file:
        logger.add(settings.log_file, level="DEBUG", rotation="10 MB", retention=5)


@app.callback()
def main_callback() -> None:
    """Spaced-repetition flashcards with bidirectional Anki sync."""
    _configure_logging()


# ========================================
# Context Builder (Dependency Injection)
# ========================================


class CLIContext:
    """
    Dependency injection container for CLI commands.

    Services are built lazily so commands only connect to what they use.
    """

    def __init__(self):
        self.settings = get_settings()
        self.repository = SqlCardRepository(get_session_factory())
        self._session_service = None
        self._deck_service = None
        self._anki_client = None
        self._sync_service = None

    @property
    def session_service(self):
        if self._session_service is None:
            from voicecards.study.session_service import StudySessionService

            self._session_service = StudySessionService(self.repository)
        return self._session_service

    @property
    def deck_service(self):
        if self._deck_service is None:
            from voicecards.study.deck_service import DeckService

            self._deck_service = DeckService(self.repository)
        return self._deck_service

    @property
    def anki_client(self):
        if self._anki_client is None:
            from voicecards.anki.anki_client import AnkiClient

            self._anki_client = AnkiClient()
        return self._anki_client

    @property
    def sync_service(self):
        if self._sync_service is None:
            from voicecards.anki.mapping_store import MappingStore
            from voicecards.anki.sync_service import AnkiSyncService
            from voicecards.db.audit import SqlAuditSink

            factory = get_session_factory()
            self._sync_service = AnkiSyncService(
                repository=self.repository,
                client=self.anki_client,
                mappings=MappingStore(factory),
                audit=SqlAuditSink(factory),
            )
        return self._sync_service

    async def close(self) -> None:
        if self._anki_client is not None:
            await self._anki_client.close()
        await dispose_engine()


def _run(action: Callable[[CLIContext], Awaitable[T]]) -> T:
    """Run an async command body; domain and input failures become exit code 1."""

    async def runner() -> T:
        ctx = CLIContext()
        try:
            return await action(ctx)
        finally:
            await ctx.close()

    try:
        return asyncio.run(runner())
    except (VoiceCardsError, ValueError) as e:
        rprint(f"[red]✗ {e}[/red]")
        raise typer.Exit(code=1) from e


# ========================================
# DATABASE
# ========================================


@app.command("init-db")
def init_db_command() -> None:
    """Create all database tables."""

    async def go(ctx: CLIContext) -> None:
        await init_db()

    _run(go)
    rprint("[green]✓[/green] Database initialized")


# ========================================
# STUDY SESSION
# ========================================


@app.command("next")
def next_card(
    user: str = UserOption,
    deck: str | None = typer.Option(None, "--deck", help="Restrict to one deck id"),
) -> None:
    """Present the next due card (or the one already on screen)."""
    prompt = _run(lambda ctx: ctx.session_service.get_next_card(user, deck))
    if prompt is None:
        rprint("[green]No cards due. Nice work![/green]")
        return

    rprint(f"\n[bold cyan]{prompt.deck_name}[/bold cyan]  [dim]({prompt.cards_remaining} due)[/dim]")
    rprint(f"[bold]Q:[/bold] {prompt.front}")
    if prompt.hint:
        rprint(f"[dim]Hint: {prompt.hint}[/dim]")
    if prompt.answer_revealed:
        rprint("[yellow]Answer already revealed - grade it next[/yellow]")
    rprint(f"[dim]card {prompt.card_id} · session {prompt.session_id}[/dim]")


@app.command("reveal")
def reveal(user: str = UserOption) -> None:
    """Reveal the answer of the presented card."""
    answer = _run(lambda ctx: ctx.session_service.reveal_answer(user))
    rprint(f"[bold]A:[/bold] {answer.answer}")


@app.command("grade")
def grade(
    value: str = typer.Argument(..., help="again, hard, good or easy"),
    user: str = UserOption,
) -> None:
    """Grade the revealed card."""
    outcome = _run(lambda ctx: ctx.session_service.grade_card(user, value))
    mark = "[green]✓[/green]" if outcome.correct else "[yellow]↺[/yellow]"
    rprint(f"{mark} {outcome.grade.name.title()}. {outcome.message}")


@app.command("skip")
def skip(user: str = UserOption) -> None:
    """Put the presented card aside without grading it."""
    card_id = _run(lambda ctx: ctx.session_service.skip_card(user))
    rprint(f"[dim]Skipped card {card_id}[/dim]")


def _print_session_stats(stats) -> None:
    table = Table(title=f"Session {stats.session_id}", show_header=False)
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")
    table.add_row("Deck", stats.deck_name or "-")
    table.add_row("Reviewed", str(stats.cards_reviewed))
    table.add_row("Correct", str(stats.cards_correct))
    table.add_row("Accuracy", f"{stats.accuracy_percentage}%")
    table.add_row("Duration", f"{stats.duration_minutes} min")
    console.print(table)


@app.command("session-stats")
def session_stats(session_id: str = typer.Argument(..., help="Study session id")) -> None:
    """Show statistics of a study session."""
    _print_session_stats(_run(lambda ctx: ctx.session_service.get_session_stats(session_id)))


@app.command("end-session")
def end_session(session_id: str = typer.Argument(..., help="Study session id")) -> None:
    """Close a study session and show its final statistics."""
    _print_session_stats(_run(lambda ctx: ctx.session_service.end_session(session_id)))


# ========================================
# DECKS
# ========================================


@app.command("decks")
def list_decks(user: str = UserOption) -> None:
    """List the user's decks."""
    decks = _run(lambda ctx: ctx.deck_service.list_decks(user))
    if not decks:
        rprint("[dim]No decks yet[/dim]")
        return

    table = Table(title="Decks", show_header=True)
    table.add_column("Id", style="dim")
    table.add_column("Name", style="cyan")
    table.add_column("Description")
    for deck in decks:
        table.add_row(deck.id, deck.name, deck.description or "")
    console.print(table)


@app.command("deck-create")
def deck_create(
    name: str = typer.Argument(..., help="Deck name"),
    description: str | None = typer.Option(None, "--description", "-d"),
    user: str = UserOption,
) -> None:
    """Create a deck."""
    deck = _run(lambda ctx: ctx.deck_service.create_deck(user, name, description))
    rprint(f"[green]✓[/green] Created deck {deck.name} ({deck.id})")


@app.command("deck-stats")
def deck_stats(
    deck_id: str = typer.Argument(..., help="Deck id"),
    user: str = UserOption,
) -> None:
    """Card counts for a deck."""
    stats = _run(lambda ctx: ctx.deck_service.get_deck_stats(deck_id, user))
    table = Table(title=stats.deck_name, show_header=True)
    for column in ("Total", "Due", "New", "Learning", "Mastered"):
        table.add_column(column, justify="right")
    table.add_row(
        str(stats.total), str(stats.due), str(stats.new), str(stats.learning), str(stats.mastered)
    )
    console.print(table)


@app.command("import-text")
def import_text(
    deck_name: str = typer.Argument(..., help="Deck name (created if missing)"),
    path: Path = typer.Argument(..., exists=True, dir_okay=False, help="File of front|back|hint lines"),
    user: str = UserOption,
) -> None:
    """Add cards from a text file, one front|back|hint per line."""
    text = path.read_text(encoding="utf-8")
    result = _run(lambda ctx: ctx.deck_service.import_cards_from_text(user, deck_name, text))
    rprint(f"[green]✓[/green] Imported {result.created} cards into {result.deck_name}")
    if result.skipped:
        rprint(f"[yellow]⚠[/yellow] Skipped {result.skipped} malformed lines")


# ========================================
# SYNC COMMANDS
# ========================================


def _print_outcome(outcome: SyncOutcome) -> None:
    table = Table(title=f"Anki {outcome.sync_type.value}", show_header=True)
    table.add_column("Item", style="cyan")
    table.add_column("Imported", justify="right", style="green")
    table.add_column("Exported", justify="right", style="yellow")
    table.add_row("Decks", str(outcome.imported.decks), "-")
    table.add_row("Cards", str(outcome.imported.cards), str(outcome.exported.cards))
    table.add_row("Reviews", str(outcome.imported.reviews), str(outcome.exported.reviews))
    console.print(table)

    for conflict in outcome.conflicts:
        resolution = f" -> {conflict.resolution}" if conflict.resolution else ""
        rprint(f"  [yellow]conflict[/yellow] {conflict.kind.value} {conflict.entity_id}: {conflict.reason}{resolution}")
    for error in outcome.errors:
        rprint(f"  [red]error[/red] {error}")

    if outcome.success:
        rprint("\n[bold green]✓ Sync complete![/bold green]")
    else:
        rprint(f"\n[yellow]⚠[/yellow] {len(outcome.errors)} errors occurred during sync")


@sync_app.command("import")
def sync_import(
    deck_name: str = typer.Argument(..., help="Anki deck name"),
    user: str = UserOption,
) -> None:
    """Import an Anki deck with its cards and review history."""
    outcome = _run(lambda ctx: ctx.sync_service.import_deck_from_anki(user, deck_name))
    _print_outcome(outcome)
    if not outcome.success:
        raise typer.Exit(code=1)


@sync_app.command("export")
def sync_export(
    deck_id: str = typer.Argument(..., help="Deck id"),
    user: str = UserOption,
) -> None:
    """Export progress for a deck to Anki, creating missing cards."""
    outcome = _run(lambda ctx: ctx.sync_service.export_progress_to_anki(user, deck_id))
    _print_outcome(outcome)
    if not outcome.success:
        raise typer.Exit(code=1)


@sync_app.command("both")
def sync_both(
    deck_id: str = typer.Argument(..., help="Deck id"),
    user: str = UserOption,
) -> None:
    """Merge progress both ways, newest review wins."""
    outcome = _run(lambda ctx: ctx.sync_service.sync_bidirectional(user, deck_id))
    _print_outcome(outcome)
    if not outcome.success:
        raise typer.Exit(code=1)


@sync_app.command("resolve")
def sync_resolve(
    card_id: str = typer.Argument(..., help="Card id from a reported conflict"),
    resolution: ConflictResolution = typer.Argument(..., help="use_external, use_primary or merge"),
    user: str = UserOption,
) -> None:
    """Settle a conflict for one linked card."""
    resolved = _run(lambda ctx: ctx.sync_service.resolve_conflict(user, card_id, resolution))
    rprint(
        f"[green]✓[/green] Card {resolved.card_id}: text from {resolved.content_source}, "
        f"progress from {resolved.progress_source or 'neither'}"
    )


@sync_app.command("history")
def sync_history(
    user: str = UserOption,
    limit: int = typer.Option(10, "--limit", "-n", min=1),
) -> None:
    """Show recent sync runs, newest first."""
    entries = _run(lambda ctx: ctx.sync_service.get_sync_history(user, limit))
    if not entries:
        rprint("[dim]No sync history[/dim]")
        return

    table = Table(title="Sync History", show_header=True)
    table.add_column("Completed", style="dim")
    table.add_column("Type", style="cyan")
    table.add_column("Imported", justify="right")
    table.add_column("Exported", justify="right")
    table.add_column("Conflicts", justify="right")
    table.add_column("Status")
    for entry in entries:
        imported = entry.result.get("imported", {})
        exported = entry.result.get("exported", {})
        table.add_row(
            entry.completed_at.strftime("%Y-%m-%d %H:%M"),
            entry.sync_type.value,
            str(sum(imported.values())),
            str(sum(exported.values())),
            str(len(entry.result.get("conflicts", []))),
            "[green]ok[/green]" if entry.success else "[red]failed[/red]",
        )
    console.print(table)


@sync_app.command("auto")
def sync_auto(
    deck_id: str = typer.Argument(..., help="Deck id to keep in sync"),
    enable: bool = typer.Option(True, "--enable/--disable"),
    user: str = UserOption,
) -> None:
    """Enable or disable auto-sync of a deck for the user."""
    _run(lambda ctx: ctx.repository.set_auto_sync(user, deck_id, enable))
    rprint(f"[green]✓[/green] Auto-sync {'enabled' if enable else 'disabled'} for deck {deck_id}")


@sync_app.command("watch")
def sync_watch(
    interval: int | None = typer.Option(
        None, "--interval", help="Minutes between cycles (default: SYNC_INTERVAL_MINUTES)"
    ),
    once: bool = typer.Option(False, "--once", help="Run a single cycle and exit"),
) -> None:
    """Run the auto-sync loop for every user with auto-sync enabled."""
    minutes = interval or get_settings().sync_interval_minutes
    if not once and minutes <= 0:
        rprint("[yellow]Auto-sync disabled (set SYNC_INTERVAL_MINUTES or --interval)[/yellow]")
        raise typer.Exit(code=1)

    async def go(ctx: CLIContext) -> None:
        from voicecards.anki.background_sync import BackgroundAnkiSync

        background = BackgroundAnkiSync(
            service=ctx.sync_service,
            client=ctx.anki_client,
            repository=ctx.repository,
            interval_seconds=max(minutes, 1) * 60,
        )
        if once:
            counts = await background.sync_now()
            rprint(
                f"Synced {counts['synced']}, failed {counts['failed']}, skipped {counts['skipped']}"
            )
            return

        background.start()
        try:
            while True:
                await asyncio.sleep(60)
                logger.info(background.get_status_line())
        finally:
            await background.stop()

    try:
        _run(go)
    except KeyboardInterrupt:
        rprint("\n[dim]Stopped[/dim]")


# =============================================================================
# Entry Point
# =============================================================================


def run() -> None:
    """CLI entry point."""
    app()


if __name__ == "__main__":
    run()
