# Async SQLAlchemy connection management
import asyncio
import time
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import declarative_base
from sqlalchemy import text, event
from contextlib import asynccontextmanager
from typing import AsyncIterator

from core.logging import get_database_logger_safe, get_error_logger_safe

db_logger = get_database_logger_safe("database_manager")
error_logger = get_error_logger_safe("database_manager")

# The base class for all SQLAlchemy models
Base = declarative_base()

SLOW_QUERY_MS = 500


class DatabaseManager:
    """Manages the async engine and session factory"""

    def __init__(self, db_url: str, echo: bool = False, pool_size: int = 20, max_overflow: int = 30):
        engine_kwargs = {"echo": echo, "pool_pre_ping": True}
        if not db_url.startswith("sqlite"):
            engine_kwargs.update(pool_size=pool_size, max_overflow=max_overflow, pool_recycle=3600)

        self._engine = create_async_engine(db_url, **engine_kwargs)
        self._session_factory = async_sessionmaker(
            self._engine,
            expire_on_commit=False,
            class_=AsyncSession
        )
        self._setup_database_logging()

    async def init(self):
        """Create any missing tables"""
        # Table definitions must be registered on Base.metadata
        from core.database import models  # noqa: F401

        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        db_logger.info("Database initialized with create_all")

    async def verify_connection(self) -> bool:
        """Verify database connection is ready"""
        try:
            async with self.get_session() as session:
                await session.execute(text("SELECT 1"))
                return True
        except Exception as e:
            db_logger.warning("Database connection verification failed", error=str(e))
            return False

    async def wait_for_ready(self, timeout: int = 30, check_interval: float = 1.0):
        """Wait for database to be ready with timeout"""
        loop = asyncio.get_running_loop()
        start_time = loop.time()
        while (loop.time() - start_time) < timeout:
            if await self.verify_connection():
                db_logger.info("Database connection verified")
                return True

            db_logger.info("Database not ready, waiting...")
            await asyncio.sleep(check_interval)

        raise RuntimeError(f"Database not ready after {timeout} seconds")

    async def shutdown(self):
        """Closes the database connection pool"""
        await self._engine.dispose()
        db_logger.info("Database connection pool closed.")

    def _setup_database_logging(self):
        """Log slow queries on the database channel"""

        @event.listens_for(self._engine.sync_engine, "before_cursor_execute")
        def before_cursor_execute(conn, cursor, statement, parameters, context, executemany):
            context._query_start_time = time.perf_counter()

        @event.listens_for(self._engine.sync_engine, "after_cursor_execute")
        def after_cursor_execute(conn, cursor, statement, parameters, context, executemany):
            if hasattr(context, '_query_start_time'):
                execution_time = (time.perf_counter() - context._query_start_time) * 1000
                if execution_time > SLOW_QUERY_MS:
                    db_logger.warning("Slow database query detected",
                                      execution_time_ms=execution_time,
                                      query_type=statement.split()[0].upper() if statement else "UNKNOWN")

    @asynccontextmanager
    async def get_session(self) -> AsyncIterator[AsyncSession]:
        """New session WITHOUT auto-commit; callers own the transaction boundary."""
        session_start_time = time.perf_counter()
        async with self._session_factory() as session:
            try:
                yield session
            except Exception as session_error:
                await session.rollback()
                error_logger.error("Database session error with rollback",
                                   error=str(session_error),
                                   session_duration_ms=(time.perf_counter() - session_start_time) * 1000)
                raise
