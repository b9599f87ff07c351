"""
config/database.py
Async SQLAlchemy engine, session factory, and base model.

The engine is owned by an explicitly constructed `Database` handle. The
process entry point (main.py lifespan, a Celery worker, a test fixture)
creates it and is responsible for disposing it; request handlers receive
sessions through the `get_db` dependency.
"""

from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator

from fastapi import Request
from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from config.settings import Settings


# ── Base Model ────────────────────────────────────────────────
class Base(DeclarativeBase):
    """All ORM models inherit from this."""
    pass


# ── Database Handle ───────────────────────────────────────────
class Database:
    """Engine + session factory with an explicit lifecycle."""

    def __init__(self, url: str, **engine_kwargs: Any):
        self.url = url
        self.engine: AsyncEngine = create_async_engine(url, **engine_kwargs)
        self.session_factory = async_sessionmaker(
            bind=self.engine,
            class_=AsyncSession,
            expire_on_commit=False,      # Don't expire after commit (async-safe)
            autocommit=False,
            autoflush=False,
        )

    @property
    def is_postgres(self) -> bool:
        return self.engine.dialect.name == "postgresql"

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        """Yield a session. Commits on success, rolls back on error."""
        async with self.session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise
            finally:
                await session.close()

    async def create_all(self) -> None:
        """Create all tables. Run during app startup."""
        # Import models so they register on Base.metadata
        import shared.models.models  # noqa: F401

        async with self.engine.begin() as conn:
            if self.is_postgres:
                # btree_gist backs the booking overlap exclusion constraint
                await conn.execute(text("CREATE EXTENSION IF NOT EXISTS btree_gist"))
            await conn.run_sync(Base.metadata.create_all)

    async def ping(self) -> None:
        async with self.session_factory() as session:
            await session.execute(text("SELECT 1"))

    async def dispose(self) -> None:
        """Dispose engine. Run during app shutdown."""
        await self.engine.dispose()


def create_database(settings: Settings) -> Database:
    """Build the production handle from settings."""
    engine_kwargs: dict = {"echo": settings.DEBUG}  # Log SQL in debug mode
    if not settings.DATABASE_URL.startswith("sqlite"):
        engine_kwargs.update(
            pool_size=settings.DATABASE_POOL_SIZE,
            max_overflow=settings.DATABASE_MAX_OVERFLOW,
            pool_timeout=settings.DATABASE_POOL_TIMEOUT,
            pool_pre_ping=True,          # Detect stale connections
            pool_recycle=3600,           # Recycle connections every hour
        )
    return Database(settings.DATABASE_URL, **engine_kwargs)


# ── Dependency ────────────────────────────────────────────────
async def get_db(request: Request) -> AsyncGenerator[AsyncSession, None]:
    """
    FastAPI dependency: yields an async database session from the
    handle stored on app.state by the lifespan.

    Usage:
        @router.get("/bookings")
        async def list_bookings(db: AsyncSession = Depends(get_db)):
            ...
    """
    database: Database = request.app.state.database
    async with database.session() as session:
        yield session
