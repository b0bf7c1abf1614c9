"""
Unit tests for the background auto-sync loop.
"""

import asyncio

import pytest
from loguru import logger

from voicecards.anki.background_sync import BackgroundAnkiSync
from voicecards.errors import ExternalUnavailableError


@pytest.fixture
def background(sync_service, fake_anki, repository, clock):
    return BackgroundAnkiSync(sync_service, fake_anki, repository, interval_seconds=3600, clock=clock)


async def enable_auto_sync(sync_service, repository, deck):
    await sync_service.export_progress_to_anki("alice", deck.id)
    await repository.set_auto_sync("alice", deck.id, True)


class TestSyncNow:
    @pytest.mark.asyncio
    async def test_skips_when_anki_is_down(self, background, fake_anki):
        fake_anki.connected = False

        counts = await background.sync_now()

        assert counts == {"synced": 0, "failed": 0, "skipped": 1}
        assert background.status.anki_connected is False
        assert fake_anki.sync_calls == []

    @pytest.mark.asyncio
    async def test_syncs_every_enabled_user(self, background, sync_service, repository, fake_anki, clock, spanish_deck):
        deck, _ = spanish_deck
        await enable_auto_sync(sync_service, repository, deck)
        seen = []
        background.on_sync_complete = seen.append

        counts = await background.sync_now()

        assert counts == {"synced": 1, "failed": 0, "skipped": 0}
        assert len(fake_anki.sync_calls) == 1
        status = background.status
        assert status.total_syncs == 1
        assert status.last_sync_success is True
        assert status.last_sync_at == clock.now
        assert seen == [status]

    @pytest.mark.asyncio
    async def test_disabled_users_are_ignored(self, background, sync_service, repository, fake_anki, spanish_deck):
        deck, _ = spanish_deck
        await enable_auto_sync(sync_service, repository, deck)
        await repository.set_auto_sync("alice", deck.id, False)

        counts = await background.sync_now()

        assert counts["synced"] == 0
        assert fake_anki.sync_calls == []

    @pytest.mark.asyncio
    async def test_failed_run_is_reported(self, background, sync_service, repository, fake_anki, spanish_deck):
        deck, _ = spanish_deck
        await enable_auto_sync(sync_service, repository, deck)

        async def unavailable(deck_name, reviews, links):
            raise ExternalUnavailableError("AnkiConnect unavailable after 3 attempts")

        fake_anki.sync_progress = unavailable

        counts = await background.sync_now()

        assert counts == {"synced": 0, "failed": 1, "skipped": 0}
        assert background.status.last_sync_success is False
        assert "unavailable" in background.status.error_message

    @pytest.mark.asyncio
    async def test_deck_already_syncing_is_skipped(self, background, sync_service, repository, fake_anki, spanish_deck):
        deck, _ = spanish_deck
        await enable_auto_sync(sync_service, repository, deck)

        async with sync_service._deck_locks.hold(deck.id):
            counts = await background.sync_now()

        assert counts["skipped"] == 1
        assert fake_anki.sync_calls == []


class TestTicks:
    @pytest.mark.asyncio
    async def test_tick_skipped_while_cycle_runs(self, background, fake_anki):
        gate = asyncio.Event()

        async def slow_connection():
            await gate.wait()
            return False

        fake_anki.check_connection = slow_connection

        assert background.tick() is True
        await asyncio.sleep(0)
        assert background.tick() is False
        assert background.status.skipped_ticks == 1

        gate.set()
        await background._cycle
        assert background.tick() is True
        await background._cycle

    @pytest.mark.asyncio
    async def test_failed_cycle_is_logged(self, background):
        async def broken():
            raise ValueError("malformed review record")

        background.sync_now = broken
        messages = []
        sink = logger.add(messages.append, level="ERROR", format="{message}")
        try:
            assert background.tick() is True
            await asyncio.gather(background._cycle, return_exceptions=True)
            await asyncio.sleep(0)
        finally:
            logger.remove(sink)

        assert len(messages) == 1
        assert "Background sync cycle failed: malformed review record" in messages[0]

    @pytest.mark.asyncio
    async def test_stop_survives_failed_cycle(self, background):
        gate = asyncio.Event()

        async def broken():
            await gate.wait()
            raise ValueError("malformed review record")

        background.sync_now = broken
        background.start()
        background.tick()
        gate.set()

        await background.stop()
        assert not background.status.is_running

    @pytest.mark.asyncio
    async def test_start_and_stop(self, background):
        background.start()
        assert background.status.is_running
        background.start()

        await background.stop()
        assert not background.status.is_running


class TestStatusLine:
    @pytest.mark.asyncio
    async def test_offline_until_started(self, background):
        assert background.get_status_line() == "Anki: offline"

    @pytest.mark.asyncio
    async def test_synced_line(self, background, clock):
        background.start()
        try:
            await background.sync_now()
            assert background.get_status_line() == "Anki: synced just now (↑0 ↓0)"
            clock.advance(minutes=5)
            assert background.get_status_line() == "Anki: synced 5m ago (↑0 ↓0)"
        finally:
            await background.stop()

    @pytest.mark.asyncio
    async def test_disconnected_line(self, background, fake_anki):
        fake_anki.connected = False
        background.start()
        try:
            await background.sync_now()
            assert background.get_status_line() == "Anki: disconnected"
        finally:
            await background.stop()
