"""
Schema Migrations
=================

Runs the Alembic revisions under ``migrations/`` against the service pool.

Pending revisions are applied one at a time, each in its own transaction
together with its ``alembic_version`` update, so a failing revision leaves
the schema at the previous one. A session-level advisory lock serialises
instances starting together; waiting for it is bounded.
"""

import asyncio
import time
from pathlib import Path
from typing import List, Optional, Union

from alembic import command
from alembic.config import Config
from alembic.runtime.migration import MigrationContext
from alembic.script import Script, ScriptDirectory
from sqlalchemy import text
from sqlalchemy.engine import Connection
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from src.config import MIGRATION_LOCK_ID
from src.core import MigrationException
from src.shared.infrastructure.logging import get_logger, log_latency

logger = get_logger(__name__)

MIGRATIONS_DIR = Path(__file__).parent / "migrations"
LOCK_POLL_INTERVAL_SECS = 0.5

TRY_LOCK_SQL = text("SELECT pg_try_advisory_lock(:lock_id)")
UNLOCK_SQL = text("SELECT pg_advisory_unlock(:lock_id)")


def alembic_config(script_location: Union[str, Path] = MIGRATIONS_DIR) -> Config:
    """Alembic configuration pointing at the bundled revisions; no ini file needed."""
    config = Config()
    config.set_main_option("script_location", str(script_location))
    config.set_main_option("path_separator", "os")
    return config


def migration_chain(config: Optional[Config] = None) -> List[Script]:
    """
    Every revision from base to head, in the order they apply.

    Raises:
        MigrationException: If the revision history has more than one head
    """
    script = ScriptDirectory.from_config(config or alembic_config())
    heads = script.get_heads()
    if len(heads) > 1:
        raise MigrationException(
            f"Revision history has multiple heads: {', '.join(sorted(heads))}"
        )
    return list(reversed(list(script.walk_revisions())))


def pending_revisions(chain: List[Script], current: Optional[str]) -> List[Script]:
    """
    Revisions after ``current`` in ``chain``.

    Raises:
        MigrationException: If the database is at a revision with no local script
    """
    if current is None:
        return list(chain)

    revisions = [script.revision for script in chain]
    if current not in revisions:
        raise MigrationException("database is at a revision with no local script", version=current)
    return list(chain[revisions.index(current) + 1:])


async def acquire_migration_lock(
    conn: AsyncConnection,
    timeout_secs: float,
    poll_interval: float = LOCK_POLL_INTERVAL_SECS,
) -> None:
    """
    Take the migration advisory lock, polling until ``timeout_secs`` passes.

    The lock is session level: it survives the commits that follow and must
    be released with ``pg_advisory_unlock`` on the same connection.

    Raises:
        MigrationException: If another session still holds the lock at the deadline
    """
    deadline = time.monotonic() + timeout_secs
    while True:
        result = await conn.execute(TRY_LOCK_SQL, {"lock_id": MIGRATION_LOCK_ID})
        locked = result.scalar()
        await conn.commit()
        if locked:
            return

        if time.monotonic() >= deadline:
            raise MigrationException(
                f"Timed out after {timeout_secs}s waiting for the migration lock",
                details={"lock_id": MIGRATION_LOCK_ID, "timeout_secs": timeout_secs}
            )

        logger.debug("Migration lock held by another session, waiting")
        await asyncio.sleep(poll_interval)


async def apply_migrations(
    engine: AsyncEngine,
    config: Optional[Config] = None,
    lock_timeout_secs: float = 60,
) -> List[str]:
    """
    Upgrade the schema to the head revision.

    Runs on a single pooled connection while holding the migration lock, so
    concurrent instances apply each revision once.

    Args:
        engine: Pool to draw the migration connection from
        config: Alembic configuration (defaults to the bundled revisions)
        lock_timeout_secs: How long to wait for a peer holding the lock

    Returns:
        List[str]: Revisions applied by this call (empty when up to date)

    Raises:
        MigrationException: If the lock cannot be taken, the database is at
            an unknown revision or a revision fails
    """
    config = config or alembic_config()
    chain = migration_chain(config)

    try:
        async with engine.connect() as conn:
            await acquire_migration_lock(conn, lock_timeout_secs)
            try:
                return await _apply_pending(conn, config, chain)
            finally:
                await conn.execute(UNLOCK_SQL, {"lock_id": MIGRATION_LOCK_ID})
                await conn.commit()
    except MigrationException:
        raise
    except Exception as e:
        raise MigrationException(
            f"could not run migrations ({type(e).__name__})",
            details={"error_type": type(e).__name__}
        ) from e


async def _apply_pending(conn: AsyncConnection, config: Config, chain: List[Script]) -> List[str]:
    async with conn.begin():
        current = await conn.run_sync(current_revision)

    pending = pending_revisions(chain, current)
    if not pending:
        logger.info("Schema up to date", extra={"revision": current})
        return []

    applied = []
    for script in pending:
        with log_latency(logger, "apply_migration", revision=script.revision):
            try:
                async with conn.begin():
                    await conn.run_sync(_upgrade, config, script.revision)
            except Exception as e:
                details = {"error_type": type(e).__name__}
                sqlstate = getattr(getattr(e, "orig", None), "sqlstate", None)
                if sqlstate:
                    details["sqlstate"] = sqlstate
                raise MigrationException(
                    f"failed to apply ({type(e).__name__})",
                    version=script.revision,
                    details=details
                ) from e
        applied.append(script.revision)

    return applied


def current_revision(connection: Connection) -> Optional[str]:
    """Revision recorded in ``alembic_version``, or None on an empty database."""
    return MigrationContext.configure(connection).get_current_revision()


def _upgrade(connection: Connection, config: Config, revision: str) -> None:
    config.attributes["connection"] = connection
    command.upgrade(config, revision)
