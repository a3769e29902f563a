"""Database configuration and session management."""

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from reconciler.config import settings


class Base(DeclarativeBase):
    """SQLAlchemy declarative base."""

    pass


def create_engine(database_url: str | None = None) -> AsyncEngine:
    """Create the async engine for the configured store."""
    url = database_url or settings.database_url
    if url.startswith("sqlite"):
        # SQLite has no server-side pool to size.
        return create_async_engine(url, echo=settings.debug)
    return create_async_engine(
        url,
        echo=settings.debug,
        pool_pre_ping=True,
        pool_size=10,  # Max persistent connections
        max_overflow=20,  # Additional transient connections under load
        pool_recycle=3600,  # Recycle connections after 1 hour
    )


def create_session_maker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


_session_maker: async_sessionmaker[AsyncSession] | None = None


def get_session_maker() -> async_sessionmaker[AsyncSession]:
    """Return the process-wide session maker, creating the engine lazily."""
    global _session_maker
    if _session_maker is None:
        _session_maker = create_session_maker(create_engine())
    return _session_maker


def set_session_maker(
    maker: async_sessionmaker[AsyncSession] | None,
) -> async_sessionmaker[AsyncSession] | None:
    """Replace the process-wide session maker and return the previous value.

    Tests use this to point the engine at a throwaway database.
    """
    global _session_maker
    previous = _session_maker
    _session_maker = maker
    return previous


async def init_db(engine: AsyncEngine) -> None:
    """Create all tables for the registered models.

    Production schemas are expected to be managed by migrations; this is for
    local databases and tests.
    """
    from reconciler import models  # noqa: F401
    from reconciler.logger import get_logger

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    get_logger(__name__).info("Database initialized", url=str(engine.url))
