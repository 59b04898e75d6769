"""Database session management with async engine and session factory."""

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlmodel import SQLModel

from acap.config import settings


def build_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    """
    Create an async engine for ``database_url``.

    Pool sizing only applies to server databases; SQLite (used in tests)
    gets the driver's default pool.
    """
    if database_url.startswith("sqlite"):
        return create_async_engine(database_url, echo=echo)
    return create_async_engine(
        database_url,
        echo=echo,
        pool_size=10,
        max_overflow=20,
        pool_pre_ping=True,
    )


def build_session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


engine = build_engine(settings.database_url, settings.database_echo)

AsyncSessionLocal = build_session_factory(engine)


async def init_db(bind: AsyncEngine | None = None) -> None:
    """
    Create all tables defined in SQLModel metadata.

    Intended for development and tests.
    """
    # Register table models on the metadata
    from acap.db import models  # noqa: F401

    async with (bind or engine).begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)


async def close_db() -> None:
    """Close database engine and connections."""
    await engine.dispose()
