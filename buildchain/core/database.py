"""
Build Chain - Database Connection
=================================

Async SQLAlchemy engine and session factory.

Pipeline components take an `async_sessionmaker` and open one short-lived
session per operation, so concurrent build tasks never share an ORM session.
"""

from collections.abc import AsyncGenerator

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from buildchain.core.config import settings


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""
    pass


# ==========================================================================
# Engine Setup
# ==========================================================================

def create_engine(url: str | None = None) -> AsyncEngine:
    """
    Create the async engine.

    SQLite (the default) gets a thread-check-free connection; other
    backends get a pre-pinged pool sized from settings.
    """
    url = url or settings.DATABASE_URL
    if "sqlite" in url:
        return create_async_engine(
            url,
            echo=settings.DATABASE_ECHO,
            connect_args={"check_same_thread": False},
        )
    return create_async_engine(
        url,
        pool_size=settings.DATABASE_POOL_SIZE,
        max_overflow=settings.DATABASE_MAX_OVERFLOW,
        echo=settings.DATABASE_ECHO,
        pool_pre_ping=True,
    )


def create_session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory handed to the build pipeline."""
    return async_sessionmaker(
        bind=bind,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


engine = create_engine()
AsyncSessionLocal = create_session_factory(engine)


# ==========================================================================
# Request Dependency
# ==========================================================================

async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    Per-request session for API routes; committed on success.

    Usage:
        @router.get("/{session_id}")
        async def get_build_session(session_id: UUID, db: DbSession):
            ...
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


# ==========================================================================
# Lifecycle
# ==========================================================================

async def init_db(bind: AsyncEngine | None = None) -> None:
    """Create the build tables if they do not exist."""
    async with (bind or engine).begin() as conn:
        # Import all models to register them
        from buildchain.core import models  # noqa: F401
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    """Close database connections."""
    await engine.dispose()
