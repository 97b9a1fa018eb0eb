"""Database utilities for the MovieMatch service."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy import MetaData, event, inspect, text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """Declarative base shared by every ORM model."""

    metadata = MetaData()


def _enable_sqlite_foreign_keys(dbapi_connection, _connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


class Database:
    """Thin wrapper managing the SQLAlchemy async engine and sessions."""

    def __init__(self, database_url: str):
        self._engine: AsyncEngine = create_async_engine(database_url, future=True)
        if self._engine.dialect.name == "sqlite":
            # SQLite only honours ON DELETE CASCADE with this pragma set.
            event.listen(
                self._engine.sync_engine, "connect", _enable_sqlite_foreign_keys
            )
        self.session_factory: async_sessionmaker[AsyncSession] = async_sessionmaker(
            self._engine, expire_on_commit=False
        )

    @property
    def engine(self) -> AsyncEngine:
        return self._engine

    async def create_all(self) -> None:
        """Create database tables if they do not yet exist."""

        # Register the ORM tables on the metadata before creating them.
        from . import db_models  # noqa: F401

        async with self._engine.begin() as connection:
            await connection.run_sync(Base.metadata.create_all)
            await connection.run_sync(self._apply_schema_migrations)

    @staticmethod
    def _apply_schema_migrations(sync_connection) -> None:
        """Backfill session columns missing from databases created before them.

        Early session rows only stored ``platform_ids``/``genre_ids``; the rich
        selection lists, the match list and the write version came later.
        """

        inspector = inspect(sync_connection)
        if "sessions" not in inspector.get_table_names():
            return

        existing_columns = {
            column["name"] for column in inspector.get_columns("sessions")
        }

        def _ensure_column(name: str, ddl: str, init_sql: str | None = None) -> None:
            if name in existing_columns:
                return
            sync_connection.execute(text(ddl))
            if init_sql:
                sync_connection.execute(text(init_sql))
            existing_columns.add(name)

        for name in ("platform_selections", "genre_selections", "matches"):
            _ensure_column(
                name,
                f"ALTER TABLE sessions ADD COLUMN {name} JSON",
                f"UPDATE sessions SET {name} = '[]' WHERE {name} IS NULL",
            )
        _ensure_column(
            "movies_fetched",
            "ALTER TABLE sessions ADD COLUMN movies_fetched BOOLEAN NOT NULL DEFAULT 0",
        )
        _ensure_column(
            "version",
            "ALTER TABLE sessions ADD COLUMN version INTEGER NOT NULL DEFAULT 0",
        )

    async def dispose(self) -> None:
        """Dispose of the underlying database engine."""

        await self._engine.dispose()

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """Provide a transactional scope around a series of operations."""

        async with self.session_factory() as session:
            yield session
