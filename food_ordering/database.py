"""
Database Connection Module
Handles PostgreSQL connection using SQLAlchemy async engine.

Every engine operation runs inside one short, explicitly scoped transaction
opened with ``transaction(session)``. Lock waits are bounded by the store's
own timeout; lock timeouts and deadlocks surface as ``TransientStoreError``.
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase

from food_ordering.core.config import get_settings
from food_ordering.core.exceptions import TransientStoreError

logger = logging.getLogger(__name__)
settings = get_settings()

# PostgreSQL SQLSTATEs that mean "retry the whole transaction"
TRANSIENT_SQLSTATES = frozenset({
    "40001",  # serialization_failure
    "40P01",  # deadlock_detected
    "55P03",  # lock_not_available (lock_timeout)
    "57014",  # query_canceled (statement_timeout)
})
TRANSIENT_MESSAGES = ("database is locked", "deadlock", "lock wait timeout")


def _engine_options(url: str) -> dict:
    if url.startswith("sqlite"):
        return {}
    return {
        "pool_size": 5,  # Connection pool size
        "max_overflow": 10,  # Extra connections when pool is full
        "pool_pre_ping": True,
    }


engine = create_async_engine(
    settings.database_url,
    echo=settings.database_echo,
    **_engine_options(settings.database_url),
)

# Session factory - creates new database sessions
async_session_maker = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False  # Objects remain accessible after commit
)


# Base class for all our models
class Base(DeclarativeBase):
    pass


def is_transient_store_error(exc: BaseException) -> bool:
    """True for lock timeouts, deadlocks and serialization failures."""
    if not isinstance(exc, DBAPIError):
        return False
    orig = exc.orig
    sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if sqlstate in TRANSIENT_SQLSTATES:
        return True
    message = str(orig).lower()
    return any(marker in message for marker in TRANSIENT_MESSAGES)


@asynccontextmanager
async def transaction(session: AsyncSession) -> AsyncIterator[AsyncSession]:
    """
    Run a block inside one transaction.

    Commits on success, rolls back in full on any exception. Driver errors
    caused by lock contention are re-raised as ``TransientStoreError``.
    """
    try:
        async with session.begin():
            yield session
    except DBAPIError as e:
        if is_transient_store_error(e):
            logger.warning(f"Transient store error, transaction rolled back: {e.orig}")
            raise TransientStoreError("Store temporarily unavailable") from e
        raise


async def get_db() -> AsyncIterator[AsyncSession]:
    """
    Dependency injection for FastAPI routes.
    Yields a database session and ensures cleanup.
    """
    async with async_session_maker() as session:
        try:
            yield session
        finally:
            await session.close()


async def init_db() -> None:
    """
    Create all tables in database.
    Called once at application startup.
    """
    # models must be imported so their tables are registered on Base.metadata
    from food_ordering import models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables created")
