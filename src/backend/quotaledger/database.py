"""Async SQLAlchemy database setup for the quota ledger.

Exports:
  build_engine          -- AsyncEngine configured from AppSettings
  build_session_factory -- async_sessionmaker bound to an engine
  session_scope         -- async generator yielding one AsyncSession
"""

from collections.abc import AsyncGenerator

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from quotaledger.config import AppSettings


def build_engine(settings: AppSettings) -> AsyncEngine:
    return create_async_engine(
        settings.DB_URL,
        echo=False,
        pool_pre_ping=True,
        pool_size=settings.DB_POOL_SIZE,
        max_overflow=settings.DB_MAX_OVERFLOW,
    )


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    # Rows stay readable after commit; the engine builds responses from them.
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def session_scope(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """Yield a session for one logical operation.

    Rolls back any transaction still open on an unhandled exception,
    then re-raises so the caller sees the original error.
    """
    async with session_factory() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise
