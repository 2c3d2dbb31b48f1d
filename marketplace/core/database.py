"""
Database configuration and session management
"""

from typing import AsyncGenerator
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    AsyncEngine,
    async_sessionmaker,
    create_async_engine
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import NullPool, AsyncAdaptedQueuePool
import logging
from contextlib import asynccontextmanager

from marketplace.config import settings
from marketplace.core.exceptions import ConstraintError

logger = logging.getLogger(__name__)

# Create async engine
if settings.is_testing or settings.DATABASE_URL.startswith("sqlite"):
    # NullPool doesn't accept pool parameters
    engine: AsyncEngine = create_async_engine(
        settings.DATABASE_URL,
        echo=settings.DB_ECHO,
        poolclass=NullPool,
    )
else:
    engine: AsyncEngine = create_async_engine(
        settings.DATABASE_URL,
        echo=settings.DB_ECHO,
        pool_size=settings.DB_POOL_SIZE,
        max_overflow=settings.DB_MAX_OVERFLOW,
        pool_timeout=settings.DB_POOL_TIMEOUT,
        pool_recycle=settings.DB_POOL_RECYCLE,
        poolclass=AsyncAdaptedQueuePool,
    )

# Create async session factory
async_session = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)

# Create declarative base
Base = declarative_base()

_DEPTH_KEY = "unit_of_work_depth"


async def init_db():
    """
    Initialize database connections
    """
    try:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise


async def close_db():
    """
    Close database connections
    """
    await engine.dispose()
    logger.info("Database connections closed")


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """
    Dependency to get database session with explicit transaction management
    Each service must use explicit transaction boundaries (see unit_of_work)
    """
    async with async_session() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise


@asynccontextmanager
async def unit_of_work(session: AsyncSession):
    """
    BEGIN/COMMIT/ROLLBACK around a block of writes.

    The outermost unit owns the database transaction: it commits on success and
    rolls back every write on failure. Nested units join the enclosing one and
    only flush, so a store call made inside an orchestrator flow commits
    together with the rest of that flow.
    """
    depth = session.info.get(_DEPTH_KEY, 0)
    session.info[_DEPTH_KEY] = depth + 1
    try:
        if depth:
            yield session
            await session.flush()
            return

        try:
            yield session
            await session.commit()
        except IntegrityError as e:
            await session.rollback()
            logger.error(f"Transaction rolled back on constraint violation: {e.orig}")
            raise ConstraintError(str(e.orig)) from e
        except Exception as e:
            await session.rollback()
            logger.error(f"Transaction rolled back: {type(e).__name__}: {e}")
            raise
    except IntegrityError as e:
        # flush of a nested unit
        raise ConstraintError(str(e.orig)) from e
    finally:
        session.info[_DEPTH_KEY] = depth
