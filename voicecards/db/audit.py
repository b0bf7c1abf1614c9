"""Sync audit log stored in ``anki_sync_history``."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from voicecards.core.clock import as_utc
from voicecards.core.records import SyncOutcome, SyncType
from voicecards.db.database import async_session_scope
from voicecards.db.models import AnkiSyncHistory


@dataclass(frozen=True)
class SyncHistoryEntry:
    id: int
    user_id: str
    sync_type: SyncType
    result: dict[str, Any]
    started_at: datetime
    completed_at: datetime
    success: bool


class SqlAuditSink:
    """Appends one row per reconciliation run; rows are never updated."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None):
        self._factory = session_factory

    async def record_outcome(self, user_id: str, sync_type: SyncType, outcome: SyncOutcome) -> None:
        row = AnkiSyncHistory(
            user_id=user_id,
            sync_type=sync_type.value,
            sync_result=outcome.to_dict(),
            started_at=outcome.started_at,
            completed_at=outcome.timestamp,
            success=outcome.success,
        )
        async with async_session_scope(self._factory) as session:
            session.add(row)

    async def list_history(self, user_id: str, limit: int = 10) -> list[SyncHistoryEntry]:
        """Most recent runs first."""
        stmt = (
            select(AnkiSyncHistory)
            .where(AnkiSyncHistory.user_id == user_id)
            .order_by(AnkiSyncHistory.completed_at.desc(), AnkiSyncHistory.id.desc())
            .limit(limit)
        )
        async with async_session_scope(self._factory) as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [
                SyncHistoryEntry(
                    id=r.id,
                    user_id=r.user_id,
                    sync_type=SyncType(r.sync_type),
                    result=r.sync_result,
                    started_at=as_utc(r.started_at),
                    completed_at=as_utc(r.completed_at),
                    success=r.success,
                )
                for r in rows
            ]
