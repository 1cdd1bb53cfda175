"""Async SQLAlchemy database layer."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

logger = logging.getLogger(__name__)

_ALEMBIC_DIR = str(Path(__file__).resolve().parent.parent / "alembic")


def _run_alembic_upgrade(connection: Any) -> None:
    """Synchronous helper executed inside ``run_sync``."""
    from alembic import command
    from alembic.config import Config

    cfg = Config()
    cfg.set_main_option("script_location", _ALEMBIC_DIR)
    cfg.attributes["connection"] = connection
    command.upgrade(cfg, "head")


class Database:
    """Engine and session factory for one SQLite file.

    Created once during the application lifespan and handed to the
    components that persist data.
    """

    def __init__(self, db_path: Path | str) -> None:
        self.path = Path(db_path)
        self._engine: AsyncEngine | None = create_async_engine(
            f"sqlite+aiosqlite:///{self.path}", echo=False
        )
        self._session_factory: async_sessionmaker[AsyncSession] = async_sessionmaker(
            self._engine, expire_on_commit=False
        )

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            raise RuntimeError("Database has been disposed")
        return self._engine

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """Yield a session; commit when the block exits cleanly."""
        if self._engine is None:
            raise RuntimeError("Database has been disposed")
        async with self._session_factory() as sess:
            yield sess
            await sess.commit()

    async def init(self) -> None:
        """Apply pending Alembic migrations to bring the database up to date."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        async with self.engine.begin() as conn:
            await conn.execute(text("PRAGMA journal_mode=WAL"))
            await conn.run_sync(_run_alembic_upgrade)
        logger.info("Database ready at %s", self.path)

    async def dispose(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()
        self._engine = None
