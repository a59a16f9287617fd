"""Async engine and session plumbing."""

from __future__ import annotations

from typing import AsyncIterator

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from pointledger_api.core.settings import settings


def configure_sqlite_engine(engine: AsyncEngine) -> AsyncEngine:
    """Make SQLite open write-ready transactions so concurrent units serialize.

    pysqlite/aiosqlite defer BEGIN until the first DML statement, which lets two
    connections both read and then deadlock upgrading their locks. Emitting
    ``BEGIN IMMEDIATE`` ourselves takes the reserved lock up front; the second
    connection then waits on the busy timeout instead of failing.
    """

    if engine.dialect.name != "sqlite":
        return engine

    @event.listens_for(engine.sync_engine, "connect")
    def _disable_driver_begin(dbapi_connection, connection_record) -> None:  # noqa: ARG001
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin_immediate(conn) -> None:
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    return engine


def build_engine(database_url: str | None = None, *, echo: bool | None = None) -> AsyncEngine:
    engine = create_async_engine(
        database_url or settings.database_url,
        echo=settings.database_echo if echo is None else echo,
        future=True,
    )
    return configure_sqlite_engine(engine)


engine = build_engine()
async_session = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


async def get_session() -> AsyncIterator[AsyncSession]:
    """FastAPI dependency yielding a request-scoped session."""

    async with async_session() as session:
        yield session


__all__ = ["async_session", "build_engine", "configure_sqlite_engine", "engine", "get_session"]
