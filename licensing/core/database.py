"""Async database engine, session factory and fail-closed store calls."""

import asyncio
import logging
from collections.abc import AsyncGenerator, Awaitable
from typing import TypeVar

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlmodel import SQLModel

from licensing.core.config import get_settings
from licensing.core.exceptions import StoreUnavailable

logger = logging.getLogger(__name__)

settings = get_settings()

_pool_options = (
    {} if settings.database_url.startswith("sqlite") else {"pool_size": 20, "max_overflow": 10}
)

engine = create_async_engine(
    settings.database_url,
    echo=False,
    **_pool_options,
)

async_session_factory = sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)

T = TypeVar("T")


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency that yields an async DB session."""
    async with async_session_factory() as session:
        yield session


async def init_db() -> None:
    """Create all tables. Use Alembic migrations in production."""
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)


async def store_call(awaitable: Awaitable[T], *, timeout: float, operation: str) -> T:
    """Await a store operation with a deadline.

    Timeouts and driver errors surface as :class:`StoreUnavailable` so that
    callers deny rather than allow.
    """
    try:
        return await asyncio.wait_for(awaitable, timeout)
    except TimeoutError as exc:
        logger.error("Store operation %s timed out after %.1fs", operation, timeout)
        raise StoreUnavailable(f"{operation} timed out") from exc
    except SQLAlchemyError as exc:
        logger.exception("Store operation %s failed", operation)
        raise StoreUnavailable(f"{operation} failed") from exc
