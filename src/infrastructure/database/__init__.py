"""
Database Infrastructure
=======================

Manages the connection-pool lifecycle: engine construction, timeout-guarded
connect, schema migrations, liveness probe and teardown.

Uses SQLAlchemy 2.0 with asyncpg for async PostgreSQL operations. The engine
is created once at startup and handed explicitly to everything that needs
it; there is no module-level engine.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Dict

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from src.config import Settings
from src.core import (
    ConnectTimeoutException,
    DatabaseConnectionException,
    ProbeException,
)
from src.infrastructure.database.migrator import apply_migrations
from src.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)

PROBE_QUERY = "SELECT 1"


class Base(DeclarativeBase):
    """
    Base class for all SQLAlchemy models.

    Tables are created by migrations, never by ``metadata.create_all``.
    """
    pass


def pool_options(settings: Settings) -> Dict[str, Any]:
    """
    Translate settings into SQLAlchemy queue-pool arguments.

    The pool keeps ``pool_size`` connections (the configured minimum, at
    least one) and may open ``max_overflow`` more, so checked-out connections
    never exceed ``db_max_connections``.

    ``pool_recycle`` replaces a connection older than ``db_idle_timeout_secs``
    when it is next checked out. The queue pool has no idle reaper, so a
    connection sitting unused in the pool is not closed until then.
    """
    max_connections = settings.db_max_connections
    pool_size = max(1, min(settings.db_min_connections, max_connections))
    return {
        "pool_size": pool_size,
        "max_overflow": max_connections - pool_size,
        "pool_timeout": settings.db_acquire_timeout_secs,
        "pool_recycle": settings.db_idle_timeout_secs,
        "pool_pre_ping": True,
        "connect_args": {"timeout": settings.db_connect_timeout_secs},
    }


def build_engine(settings: Settings) -> AsyncEngine:
    """Create the engine. No connection is opened until first use."""
    return create_async_engine(settings.async_database_url, **pool_options(settings))


async def _warm_up(engine: AsyncEngine, connections: int) -> None:
    async def open_connection() -> None:
        async with engine.connect() as conn:
            await conn.execute(text(PROBE_QUERY))

    results = await asyncio.gather(
        *(open_connection() for _ in range(connections)),
        return_exceptions=True,
    )
    for result in results:
        if isinstance(result, BaseException):
            raise result


async def connect_with_deadline(
    engine: AsyncEngine,
    connections: int,
    timeout_secs: float,
) -> None:
    """
    Open the pool's initial connections before a deadline.

    The connect attempt races a timer; if the timer wins the attempt is
    cancelled.

    Raises:
        ConnectTimeoutException: If the deadline passes first
        DatabaseConnectionException: If the database refuses the connection
    """
    try:
        await asyncio.wait_for(_warm_up(engine, connections), timeout=timeout_secs)
    except asyncio.TimeoutError:
        raise ConnectTimeoutException(timeout_secs) from None
    except Exception as e:
        raise DatabaseConnectionException(
            f"Could not connect to database ({type(e).__name__})",
            details={"error_type": type(e).__name__}
        ) from e


async def init_pool_and_migrate(settings: Settings) -> AsyncEngine:
    """
    Build the connection pool and bring the schema up to date.

    Should be called once during startup, before the HTTP app is built.

    Returns:
        AsyncEngine: Connected engine with all migrations applied

    Raises:
        ConnectTimeoutException: Database unreachable within the deadline
        DatabaseConnectionException: Database refused the connection
        MigrationException: A migration failed; nothing is served
    """
    options = pool_options(settings)
    logger.info(
        "Connecting to database",
        extra={
            "database": settings.safe_database_url,
            "max_connections": settings.db_max_connections,
            "min_connections": options["pool_size"],
            "connect_timeout_secs": settings.db_connect_timeout_secs,
        }
    )

    engine = build_engine(settings)
    try:
        await connect_with_deadline(engine, options["pool_size"], settings.db_connect_timeout_secs)
        applied = await apply_migrations(
            engine, lock_timeout_secs=settings.db_migration_lock_timeout_secs
        )
    except Exception:
        await engine.dispose()
        raise

    logger.info(
        "Database pool ready",
        extra={"migrations_applied": applied, **pool_status(engine)}
    )
    return engine


async def ping(engine: AsyncEngine) -> None:
    """
    Liveness probe: run a trivial query on a pooled connection.

    Acquiring the connection is bounded by the pool's acquire timeout. The
    query result is discarded.

    Raises:
        ProbeException: If the query cannot be executed
    """
    try:
        async with engine.connect() as conn:
            await conn.execute(text(PROBE_QUERY))
    except Exception as e:
        raise ProbeException(
            "Database liveness probe failed",
            details={"error_type": type(e).__name__}
        ) from e


def pool_status(engine: AsyncEngine) -> Dict[str, int]:
    """Current pool counters, safe to expose in health output."""
    pool = engine.pool
    return {
        "size": pool.size(),
        "checked_in": pool.checkedin(),
        "checked_out": pool.checkedout(),
    }


@asynccontextmanager
async def session_scope(engine: AsyncEngine) -> AsyncGenerator[AsyncSession, None]:
    """
    Async context manager for ORM sessions on the given engine.

    Commits on success and rolls back on error. No request handler uses it
    yet; the integration tests drive the ``users`` table through it.

    Usage:
        async with session_scope(engine) as session:
            session.add(UserModel(name="Alice", email="alice@example.com"))
    """
    session_maker = async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )
    async with session_maker() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def close_pool(engine: AsyncEngine) -> None:
    """Dispose of all pooled connections. Safe to call more than once."""
    await engine.dispose()
    logger.info("Database pool closed")
