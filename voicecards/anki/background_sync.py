"""
Background Anki sync manager.

Runs ``sync_bidirectional`` on a fixed interval for every user who enabled
auto-sync. A tick that comes due while the previous cycle is still running
is skipped; missed ticks are never caught up.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime

from loguru import logger
from sqlalchemy.exc import SQLAlchemyError

from voicecards.anki.anki_client import AnkiClient
from voicecards.anki.sync_service import AnkiSyncService
from voicecards.core.clock import utcnow
from voicecards.db.repository import SqlCardRepository
from voicecards.errors import VoiceCardsError


@dataclass
class SyncStatus:
    """Current sync status."""

    is_running: bool = False
    is_syncing: bool = False
    anki_connected: bool = False
    last_sync_at: datetime | None = None
    last_sync_success: bool = True
    last_push_count: int = 0
    last_pull_count: int = 0
    error_message: str | None = None
    total_syncs: int = 0
    skipped_ticks: int = 0


@dataclass
class BackgroundAnkiSync:
    """
    Periodic auto-sync loop.

    Usage:
        background = BackgroundAnkiSync(service, client, repository, interval_seconds=900)
        background.start()
        # ... application runs ...
        await background.stop()
    """

    service: AnkiSyncService
    client: AnkiClient
    repository: SqlCardRepository
    interval_seconds: float = 900
    on_sync_complete: Callable[[SyncStatus], None] | None = None
    clock: Callable[[], datetime] = utcnow

    _status: SyncStatus = field(default_factory=SyncStatus)
    _task: asyncio.Task | None = field(default=None, repr=False)
    _cycle: asyncio.Task | None = field(default=None, repr=False)

    @property
    def status(self) -> SyncStatus:
        return self._status

    def start(self) -> None:
        """Start the loop on the running event loop."""
        if self._status.is_running:
            logger.warning("Background sync already running")
            return

        self._status.is_running = True
        self._task = asyncio.create_task(self._loop(), name="anki-background-sync")
        logger.info("Background Anki sync started (interval: {}s)", self.interval_seconds)

    async def stop(self) -> None:
        """Cancel the loop and wait for an in-flight cycle to finish."""
        if not self._status.is_running:
            return

        logger.info("Stopping background Anki sync...")
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        if self._cycle is not None and not self._cycle.done():
            await asyncio.gather(self._cycle, return_exceptions=True)

        self._status.is_running = False
        logger.info("Background Anki sync stopped")

    async def _loop(self) -> None:
        # First cycle runs after one full interval, not on startup
        while True:
            await asyncio.sleep(self.interval_seconds)
            self.tick()

    def tick(self) -> bool:
        """
        Start a cycle unless one is already in progress.

        Returns:
            True if a cycle was started
        """
        if self._cycle is not None and not self._cycle.done():
            self._status.skipped_ticks += 1
            logger.debug("Sync already in progress - skipping tick")
            return False
        self._cycle = asyncio.create_task(self.sync_now())
        self._cycle.add_done_callback(self._log_cycle_failure)
        return True

    def _log_cycle_failure(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.opt(exception=error).error("Background sync cycle failed: {}", error)

    async def sync_now(self) -> dict[str, int]:
        """
        Run one cycle for every auto-sync user.

        Returns:
            Counts of synced, failed and skipped targets
        """
        counts = {"synced": 0, "failed": 0, "skipped": 0}
        if self._status.is_syncing:
            counts["skipped"] = 1
            return counts

        self._status.is_syncing = True
        pushed = pulled = 0
        errors: list[str] = []
        try:
            if not await self.client.check_connection():
                self._status.anki_connected = False
                logger.debug("Anki disconnected - skipping sync cycle")
                counts["skipped"] = 1
                return counts
            self._status.anki_connected = True

            targets = await self.repository.list_auto_sync_targets()
            for target in targets:
                if self.service.is_syncing(target.deck_id):
                    counts["skipped"] += 1
                    continue
                try:
                    outcome = await self.service.sync_bidirectional(target.user_id, target.deck_id)
                except (VoiceCardsError, SQLAlchemyError) as exc:
                    logger.warning("Auto-sync failed for user {}: {}", target.user_id, exc)
                    errors.append(str(exc))
                    counts["failed"] += 1
                    continue

                pushed += outcome.exported.reviews
                pulled += outcome.imported.reviews
                if outcome.success:
                    counts["synced"] += 1
                else:
                    errors.extend(outcome.errors)
                    counts["failed"] += 1

            self._status.last_sync_at = self.clock()
            self._status.last_sync_success = not errors
            self._status.error_message = errors[0] if errors else None
            self._status.last_push_count = pushed
            self._status.last_pull_count = pulled
            self._status.total_syncs += 1

            logger.info("Background sync complete: pushed={}, pulled={}", pushed, pulled)

            if self.on_sync_complete:
                self.on_sync_complete(self._status)

        except SQLAlchemyError as exc:
            logger.error("Background sync error: {}", exc)
            self._status.last_sync_success = False
            self._status.error_message = str(exc)
            counts["failed"] += 1

        finally:
            self._status.is_syncing = False

        return counts

    def get_status_line(self) -> str:
        """
        Short status line for display.

        Returns:
            Status string like "Anki: synced 2m ago (↑3 ↓12)"
        """
        if not self._status.is_running:
            return "Anki: offline"

        if not self._status.anki_connected:
            return "Anki: disconnected"

        if self._status.is_syncing:
            return "Anki: syncing..."

        if self._status.last_sync_at:
            age = (self.clock() - self._status.last_sync_at).total_seconds()
            if age < 60:
                age_str = "just now"
            elif age < 3600:
                age_str = f"{int(age / 60)}m ago"
            else:
                age_str = f"{int(age / 3600)}h ago"

            if self._status.last_sync_success:
                return (
                    f"Anki: synced {age_str} "
                    f"(↑{self._status.last_push_count} ↓{self._status.last_pull_count})"
                )
            return f"Anki: sync failed {age_str}"

        return "Anki: connected"
