"""
Database Management and Configuration.

This module sets up the asynchronous database engine for the Livestream
Engagement API. It uses SQLAlchemy with `asyncio` support and SQLModel for the
table definitions in `core.models`.

Key Components:
- `build_engine`: Creates an async engine for a database URL. SQLite (via
  `aiosqlite`) is used for development and tests, PostgreSQL (via `asyncpg`) in
  production.
- `engine`: The process-wide engine, configured from the `DATABASE_URL`
  environment variable. Sessions are opened by `core.storage.Storage`.
- `create_db_and_tables`: Creates all tables from the SQLModel metadata at
  startup.
- `get_database_info` / `health_check`: Diagnostics for the monitoring routes.
"""

import os
import logging
from typing import Any, Dict, Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.pool import AsyncAdaptedQueuePool, StaticPool
from sqlmodel import SQLModel

# Registers the table classes on SQLModel.metadata
import core.models  # noqa: F401

# Get database URL from environment variable
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./livestream_api.db")

logger = logging.getLogger(__name__)


def _is_memory_sqlite(database_url: str) -> bool:
    return database_url.startswith("sqlite") and (
        ":memory:" in database_url or database_url.rstrip("/").endswith("sqlite+aiosqlite:")
    )


def build_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    """Create an async engine suited to the database behind ``database_url``."""
    if _is_memory_sqlite(database_url):
        # One shared connection, otherwise every checkout sees an empty database
        return create_async_engine(
            database_url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
            echo=echo,
        )

    if database_url.startswith("sqlite"):
        return create_async_engine(
            database_url,
            connect_args={"check_same_thread": False},
            poolclass=AsyncAdaptedQueuePool,
            echo=echo,
        )

    # PostgreSQL configuration with asyncpg
    return create_async_engine(
        database_url,
        poolclass=AsyncAdaptedQueuePool,
        pool_size=int(os.getenv("DATABASE_POOL_SIZE", "10")),
        max_overflow=int(os.getenv("DATABASE_MAX_OVERFLOW", "20")),
        pool_pre_ping=True,  # Validate connections before use
        echo=echo,
    )


engine = build_engine(DATABASE_URL)


async def create_db_and_tables(db_engine: Optional[AsyncEngine] = None):
    """
    Create all tables.
    Called during application startup and by the test fixtures.
    """
    db_engine = db_engine or engine
    try:
        async with db_engine.begin() as conn:
            await conn.run_sync(SQLModel.metadata.create_all)
        logger.info("Livestream API database tables created successfully")
    except Exception as e:
        logger.error(f"Failed to create Livestream API database tables: {e}")
        raise


async def get_database_info(db_engine: Optional[AsyncEngine] = None) -> Dict[str, Any]:
    """
    Get basic database information for health checks.
    """
    db_engine = db_engine or engine
    try:
        async with db_engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        connection_healthy = True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        connection_healthy = False

    url = db_engine.url
    return {
        "database_url": url.render_as_string(hide_password=True),
        "connection_healthy": connection_healthy,
        "database_type": db_engine.dialect.name,
        "engine_info": {
            "pool_class": type(db_engine.pool).__name__,
        },
    }


async def health_check(db_engine: Optional[AsyncEngine] = None) -> Dict[str, Any]:
    """
    Verify connectivity and that the engagement tables are reachable.
    """
    db_engine = db_engine or engine
    try:
        async with db_engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
            await conn.execute(text("SELECT COUNT(*) FROM livecomments"))

        return {
            "status": "healthy",
            "database_type": db_engine.dialect.name,
            "tables_accessible": True,
        }
    except Exception as e:
        logger.error(f"Database table check failed: {e}")
        return {
            "status": "unhealthy",
            "error": str(e),
            "database_type": db_engine.dialect.name,
        }
