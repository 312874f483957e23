"""
Database Session Management - Async SQLAlchemy engines and sessions.

The gateway writes through the primary. Read-only endpoints (health, admin
listings, security log stats, diagnostics) use READ_DATABASE_URL, which
falls back to the primary when no replica is configured.
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from app.config import settings

_engines: dict[str, AsyncEngine] = {}
_session_factories: dict[str, async_sessionmaker[AsyncSession]] = {}

WRITE = "write"
READ = "read"


def _database_url(role: str) -> str:
    return settings.database_url if role == WRITE else settings.read_database_url


def _engine(role: str) -> AsyncEngine:
    engine = _engines.get(role)
    if engine is None:
        engine = create_async_engine(
            _database_url(role),
            pool_size=settings.database_pool_size,
            max_overflow=settings.database_max_overflow,
            pool_timeout=settings.database_pool_timeout,
            pool_recycle=settings.database_pool_recycle,
            pool_pre_ping=True,
            echo=settings.log_level == "DEBUG",
        )
        _engines[role] = engine
    return engine


def _session_factory(role: str) -> async_sessionmaker[AsyncSession]:
    factory = _session_factories.get(role)
    if factory is None:
        factory = async_sessionmaker(_engine(role), class_=AsyncSession, expire_on_commit=False)
        _session_factories[role] = factory
    return factory


def get_write_engine() -> AsyncEngine:
    """Primary engine; every counter, event and audit row goes through it."""
    return _engine(WRITE)


def get_read_engine() -> AsyncEngine:
    """Replica engine for read-only endpoints."""
    return _engine(READ)


@asynccontextmanager
async def get_write_session() -> AsyncIterator[AsyncSession]:
    """
    Session factory handed to the service container.

    Webhook deliveries, alert notifications and sweep jobs run outside a
    request and open their own sessions through it:

        async with get_write_session() as session:
            ...
            await session.commit()
    """
    async with _session_factory(WRITE)() as session:
        yield session


async def get_write_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency for the signed gateway endpoints and admin mutations."""
    async with _session_factory(WRITE)() as session:
        yield session


async def get_read_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency for read-only endpoints."""
    async with _session_factory(READ)() as session:
        yield session


async def close_engines() -> None:
    """Dispose every engine (graceful shutdown)."""
    for engine in _engines.values():
        await engine.dispose()
    _engines.clear()
    _session_factories.clear()
