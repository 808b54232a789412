"""Database connection and session management."""

import logging
from collections.abc import AsyncGenerator, AsyncIterator
from contextlib import asynccontextmanager
from typing import Any
from urllib.parse import parse_qs, urlparse, urlunparse

from sqlalchemy import text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm.exc import StaleDataError
from sqlalchemy.pool import NullPool

from core.config import settings
from core.exceptions import ConflictError

logger = logging.getLogger(__name__)

# Keep SQLAlchemy quiet unless something goes wrong
logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
logging.getLogger("sqlalchemy.pool").setLevel(logging.WARNING)
logging.getLogger("sqlalchemy.dialects").setLevel(logging.WARNING)


def normalize_database_url(url: str) -> str:
    """Point Postgres URLs at asyncpg and drop parameters asyncpg rejects."""
    if "sslmode=" in url or "channel_binding=" in url:
        parsed = urlparse(url)
        query_params = parse_qs(parsed.query)
        query_params.pop("sslmode", None)
        query_params.pop("channel_binding", None)
        new_query = "&".join(f"{k}={v[0]}" for k, v in query_params.items())
        url = urlunparse(parsed._replace(query=new_query))
        logger.info("Removed asyncpg-incompatible SSL parameters from database URL")

    if url.startswith("postgresql://"):
        url = url.replace("postgresql://", "postgresql+asyncpg://", 1)
    elif url.startswith("postgres://"):
        url = url.replace("postgres://", "postgresql+asyncpg://", 1)
    return url


def build_engine_kwargs(url: str) -> dict[str, Any]:
    """Engine options for the configured backend."""
    engine_kwargs: dict[str, Any] = {"echo": False, "echo_pool": False}

    if url.startswith("postgresql+asyncpg://"):
        engine_kwargs["connect_args"] = {
            "command_timeout": 60,
            "server_settings": {
                "timezone": "UTC",
                "application_name": "hris-billing",
            },
        }

    if settings.use_null_pool:
        engine_kwargs["poolclass"] = NullPool
    else:
        engine_kwargs.update(
            {
                "pool_size": settings.database_pool_size,
                "max_overflow": settings.database_max_overflow,
                "pool_timeout": 30,
                "pool_recycle": 3600,
                "pool_pre_ping": True,
            }
        )
    return engine_kwargs


database_url = normalize_database_url(settings.database_url)
engine = create_async_engine(database_url, **build_engine_kwargs(database_url))

async_session = async_sessionmaker(
    bind=engine,
    expire_on_commit=False,  # Keep objects accessible after commit
)


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """
    Dependency for getting database sessions.

    One session per request; rolled back on error and always closed.
    """
    async with async_session() as session:
        try:
            yield session
        except Exception as e:
            logger.error(f"Database session error: {e}")
            await session.rollback()
            raise
        finally:
            await session.close()


@asynccontextmanager
async def unit_of_work(session: AsyncSession) -> AsyncIterator[AsyncSession]:
    """
    Commit everything done inside the block, or nothing.

    Optimistic-lock failures surface as ConflictError so callers can retry.

    Raises:
        ConflictError: If another writer updated a versioned row first
    """
    try:
        yield session
        await session.commit()
    except StaleDataError as e:
        await session.rollback()
        logger.warning(f"Concurrent update detected: {e}")
        raise ConflictError("the record was modified concurrently, retry the request") from e
    except Exception:
        await session.rollback()
        raise


def is_unique_violation(error: IntegrityError) -> bool:
    """True when an IntegrityError came from a unique constraint."""
    message = str(error.orig).lower()
    return "unique" in message or "duplicate key" in message


async def init_database() -> None:
    """
    Initialize the database.

    Tables are created only in debug mode; production schemas come from Alembic.
    """
    try:
        from database.models import Base

        async with engine.begin() as conn:
            if settings.debug:
                await conn.run_sync(Base.metadata.create_all)
                logger.info("Database tables created/verified (debug mode)")
            else:
                await conn.execute(text("SELECT 1"))
                logger.info("Database connection verified")

    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise


async def close_database() -> None:
    """Close database connections on shutdown."""
    await engine.dispose()
    logger.info("Database connections closed")


async def check_database_health() -> dict[str, str]:
    """
    Check database health for monitoring endpoints.

    Returns:
        dict: Database health status
    """
    try:
        async with async_session() as session:
            result = await session.execute(text("SELECT 1"))
            if result.scalar() == 1:
                return {"status": "healthy", "message": "Database connection OK"}
            return {"status": "unhealthy", "message": "Database query failed"}
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return {"status": "unhealthy", "message": f"Database error: {str(e)}"}
