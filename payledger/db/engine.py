"""Async SQLAlchemy engine + session factory.

SQLite for dev/tests, PostgreSQL in production. SQLite connections get
``foreign_keys`` turned on so user deletes cascade to the ledger tables the
same way they do on Postgres.
"""
from __future__ import annotations

import ssl

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from config.settings import settings

_ASYNC_DRIVERS = {
    "postgres://": "postgresql+asyncpg://",
    "postgresql://": "postgresql+asyncpg://",
    "sqlite://": "sqlite+aiosqlite://",
}
_SYNC_DRIVERS = {
    "postgresql+asyncpg://": "postgresql://",
    "sqlite+aiosqlite://": "sqlite://",
}


def async_url(url: str) -> str:
    """``postgres://`` / ``postgresql://`` / ``sqlite://`` → the async driver URL."""
    for prefix, replacement in _ASYNC_DRIVERS.items():
        if url.startswith(prefix):
            return replacement + url[len(prefix):]
    return url


def sync_url(url: str) -> str:
    """Async driver URL → the sync driver URL Alembic connects with."""
    for prefix, replacement in _SYNC_DRIVERS.items():
        if url.startswith(prefix):
            return replacement + url[len(prefix):]
    return url


def _engine_kwargs(url: str) -> dict:
    kwargs: dict = {"echo": False, "future": True}
    if url.startswith("sqlite"):
        return kwargs
    # Webhook bursts from two providers share this pool
    kwargs.update({
        "pool_size": settings.DB_POOL_SIZE,
        "max_overflow": settings.DB_MAX_OVERFLOW,
        "pool_timeout": 30,
        "pool_recycle": 1800,
        "pool_pre_ping": True,
    })
    if settings.DATABASE_SSL == "require":
        ctx = ssl.create_default_context()
        ctx.check_hostname = False
        ctx.verify_mode = ssl.CERT_NONE
        kwargs["connect_args"] = {"ssl": ctx}
    elif settings.DATABASE_SSL == "verify":
        kwargs["connect_args"] = {"ssl": ssl.create_default_context()}
    return kwargs


def enable_sqlite_foreign_keys(sync_engine) -> None:
    """Turn on FK enforcement for every new SQLite connection of ``sync_engine``."""

    @event.listens_for(sync_engine, "connect")
    def _fk_pragma(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


_db_url = async_url(settings.DATABASE_URL)

engine = create_async_engine(_db_url, **_engine_kwargs(_db_url))
if _db_url.startswith("sqlite"):
    enable_sqlite_foreign_keys(engine.sync_engine)

async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def get_session() -> AsyncSession:
    """Dependency for FastAPI — yields an async session."""
    async with async_session() as session:
        yield session
