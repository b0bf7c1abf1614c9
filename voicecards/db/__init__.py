"""Database package: models, async engine and the SQL card repository."""

from voicecards.db.database import (
    async_session_scope,
    create_engine_and_factory,
    dispose_engine,
    get_engine,
    get_session_factory,
    init_db,
)

__all__ = [
    "async_session_scope",
    "create_engine_and_factory",
    "dispose_engine",
    "get_engine",
    "get_session_factory",
    "init_db",
]
