"""
config/database.py
Async engine, session factory and declarative base.
PostgreSQL (asyncpg) in deployment, SQLite (aiosqlite) for tests and
local development.
"""

from typing import AsyncGenerator

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import StaticPool

from config.settings import settings


def _engine_options() -> dict:
    options = {"echo": settings.DB_ECHO}
    if not settings.is_sqlite:
        options.update(
            pool_size=settings.DATABASE_POOL_SIZE,
            max_overflow=settings.DATABASE_MAX_OVERFLOW,
            pool_timeout=settings.DATABASE_POOL_TIMEOUT,
            pool_pre_ping=True,
            pool_recycle=3600,
        )
    elif settings.DATABASE_URL.rstrip("/").endswith(("://", ":memory:")):
        # In-memory databases live on a single shared connection
        options["poolclass"] = StaticPool
    return options


engine = create_async_engine(settings.DATABASE_URL, **_engine_options())

if settings.is_sqlite:
    @event.listens_for(engine.sync_engine, "connect")
    def _sqlite_foreign_keys(dbapi_connection, _record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


# expire_on_commit=False: attributes stay readable after commit without a lazy load
AsyncSessionLocal = async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


class Base(DeclarativeBase):
    pass


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Request-scoped session; whatever the route left pending is committed, errors roll back."""
    async with AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_db() -> None:
    """create_all on startup; the schema is small enough to manage without migrations."""
    import shared.models.models  # noqa: F401  registers the mappers

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    await engine.dispose()
