"""
Database session configuration.

This module handles database engine creation and session management
using SQLAlchemy with async support for PostgreSQL.
"""

import logging
from contextlib import asynccontextmanager

from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import declarative_base
from courier_backend.app.core.config import settings
from courier_backend.app.core.exceptions import StateConflictError, TransientStoreError

logger = logging.getLogger("courier.db")

# Create async engine
engine = create_async_engine(
    settings.database_url,
    echo=settings.db_echo,
    pool_size=settings.db_pool_size,
    max_overflow=settings.db_max_overflow,
    future=True,
)

# Create async session factory
AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autocommit=False,
    autoflush=False,
)

# Create declarative base for models
Base = declarative_base()


async def get_db():
    """
    FastAPI dependency for database sessions.

    Yields an async database session and ensures it's properly closed.
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()


@asynccontextmanager
async def atomic(db: AsyncSession):
    """
    Run one logical operation as a single database transaction.

    Commits when the block exits cleanly. Any exception rolls back every
    write made in the block (status changes and ledger rows together).
    Driver-level failures are translated into the application taxonomy:
    integrity violations become StateConflictError, connection and lock
    timeouts become TransientStoreError.
    """
    try:
        yield db
        await db.commit()
    except IntegrityError as e:
        await db.rollback()
        logger.warning("Integrity violation, transaction rolled back: %s", e.orig)
        raise StateConflictError(
            "Conflicting concurrent write, please retry",
            details={"reason": "integrity"},
        ) from e
    except OperationalError as e:
        await db.rollback()
        logger.warning("Operational error, transaction rolled back: %s", e.orig)
        raise TransientStoreError("Database temporarily unavailable") from e
    except DBAPIError as e:
        await db.rollback()
        if e.connection_invalidated:
            raise TransientStoreError("Database connection lost") from e
        raise
    except BaseException:
        await db.rollback()
        raise
