"""Database configuration and session management.

This module constructs an asynchronous SQLAlchemy engine and session
factory for the application from ``DATABASE_URL``.  PostgreSQL URLs are
normalised to the async ``psycopg`` driver and SQLite URLs to
``aiosqlite``.  When no URL is configured a local SQLite database is
used in development if ``DB_DEV_FALLBACK_SQLITE`` allows it.
"""

from __future__ import annotations

import logging
import os
from typing import Any, AsyncGenerator, Dict, Optional

from sqlalchemy.engine.url import make_url
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from invoicebox.core.config import settings

logger = logging.getLogger(__name__)

SQLITE_FALLBACK_URL = "sqlite+aiosqlite:///./invoicebox.db"


def normalise_database_url(url: Optional[str]) -> str:
    """Return an async-driver URL for ``url``.

    Raises ``RuntimeError`` when no URL is given and the SQLite fallback
    is disabled.
    """
    if not url:
        if not settings.DB_DEV_FALLBACK_SQLITE:
            raise RuntimeError(
                "No database URL provided via DATABASE_URL; with "
                "DB_DEV_FALLBACK_SQLITE=false a Postgres URL is required."
            )
        return SQLITE_FALLBACK_URL

    url_obj = make_url(url)
    driver = url_obj.drivername or ""
    if driver == "sqlite":
        url_obj = url_obj.set(drivername="sqlite+aiosqlite")
    elif driver in {"postgresql", "postgres", "postgresql+psycopg2", "postgresql+asyncpg"}:
        q = dict(url_obj.query or {})
        # Always require SSL unless explicitly disabled
        if not q.get("sslmode"):
            q["sslmode"] = "require"
        url_obj = url_obj.set(drivername="postgresql+psycopg", query=q)
    return url_obj.render_as_string(hide_password=False)


db_url = normalise_database_url(settings.DATABASE_URL or os.getenv("DATABASE_URL"))

engine_kwargs: dict[str, Any] = dict(echo=False, pool_pre_ping=True)

logger.info("Creating async engine with URL: %s", make_url(db_url).render_as_string(hide_password=True))
engine = create_async_engine(db_url, **engine_kwargs)

# Create session factory
AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)

# Declarative base
Base = declarative_base()


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Dependency that yields a database session.

    This function is intended for FastAPI dependency injection.  Each
    session is scoped to the request and closed after use.
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()


async def init_db() -> None:
    """Create all tables declared on ``Base``.

    Typically called during application startup.
    """
    async with engine.begin() as conn:
        # Import all models to ensure metadata is populated
        from invoicebox.models import tables  # noqa: F401
        await conn.run_sync(Base.metadata.create_all)


def get_db_debug_info() -> Dict[str, Any]:
    """Return non-sensitive information about the current DB engine for debugging."""
    url_obj = make_url(str(engine.url))
    return {
        "environment": (settings.ENVIRONMENT or "development"),
        "drivername": url_obj.drivername,
        "host": url_obj.host,
        "database": url_obj.database,
        "url": url_obj.render_as_string(hide_password=True),
    }
