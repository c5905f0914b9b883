"""
Database connection and session management using SQLAlchemy.
"""
from pathlib import Path
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    create_async_engine,
    async_sessionmaker
)
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import NullPool

from llm_failover.core.config import settings

# Create declarative base for models
Base = declarative_base()


def build_engine(url: str) -> AsyncEngine:
    """
    Create an async engine for ``url``.

    Args:
        url: SQLAlchemy database URL

    Returns:
        Async engine
    """
    if url.startswith("sqlite"):
        # SQLite specific configuration
        return create_async_engine(
            url,
            echo=settings.app_debug,
            poolclass=NullPool,  # SQLite doesn't support connection pooling well
            connect_args={"check_same_thread": False}
        )
    # MySQL/PostgreSQL configuration with connection pooling
    return create_async_engine(
        url,
        echo=settings.app_debug,
        pool_size=10,
        max_overflow=20,
        pool_pre_ping=True,  # Verify connections before using
        pool_recycle=3600,  # Recycle connections after 1 hour
    )


def session_factory(bind: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(
        bind,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False
    )


engine = build_engine(settings.database_url)

# Create async session factory
AsyncSessionLocal = session_factory(engine)


def _ensure_sqlite_directory(bind: AsyncEngine) -> None:
    url = make_url(str(bind.url))
    if url.get_backend_name() == "sqlite" and url.database and url.database != ":memory:":
        Path(url.database).parent.mkdir(parents=True, exist_ok=True)


async def init_db(bind: AsyncEngine = engine) -> None:
    """
    Initialize database tables.
    Creates all tables defined in models.
    """
    # Register models on the metadata
    import llm_failover.models  # noqa: F401

    _ensure_sqlite_directory(bind)
    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db(bind: AsyncEngine = engine) -> None:
    """Close database engine and connections."""
    await bind.dispose()
