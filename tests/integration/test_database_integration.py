"""
Integration tests against a real PostgreSQL database.

Set TEST_DATABASE_URL to a disposable database; the tests drop and recreate
the schema they own.
"""

import asyncio
import os
import shutil
import textwrap
import time

import pytest
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError

from src.config import MIGRATION_LOCK_ID
from src.core import MigrationException, ProbeException
from src.infrastructure.database import (
    build_engine,
    close_pool,
    init_pool_and_migrate,
    ping,
    pool_status,
    session_scope,
)
from src.infrastructure.database.migrator import (
    MIGRATIONS_DIR,
    alembic_config,
    apply_migrations,
    migration_chain,
)
from src.infrastructure.database.models import UserModel

pytestmark = pytest.mark.integration


@pytest.fixture
def database_url():
    url = os.getenv("TEST_DATABASE_URL")
    if not url:
        pytest.skip("TEST_DATABASE_URL is not set")
    return url


@pytest.fixture
def integration_settings(settings_factory, database_url):
    return settings_factory(database_url=database_url, db_max_connections=5, db_min_connections=2)


@pytest.fixture
async def fresh_settings(integration_settings):
    """Drop everything the migrations create so each test starts from scratch."""
    engine = build_engine(integration_settings)
    async with engine.begin() as conn:
        await conn.execute(text("DROP TABLE IF EXISTS half_applied"))
        await conn.execute(text("DROP TABLE IF EXISTS users"))
        await conn.execute(text("DROP FUNCTION IF EXISTS set_updated_at()"))
        await conn.execute(text("DROP TABLE IF EXISTS alembic_version"))
    await engine.dispose()
    return integration_settings


@pytest.fixture
async def engine(fresh_settings):
    engine = await init_pool_and_migrate(fresh_settings)
    yield engine
    await close_pool(engine)


async def _current_revision(engine):
    async with engine.connect() as conn:
        result = await conn.execute(text("SELECT version_num FROM alembic_version"))
        return result.scalars().all()


async def test_fresh_database_is_at_head(engine):
    head = migration_chain()[-1].revision

    assert await _current_revision(engine) == [head]


async def test_second_startup_is_idempotent(engine, fresh_settings):
    before = await _current_revision(engine)

    second = await init_pool_and_migrate(fresh_settings)
    try:
        assert await apply_migrations(second) == []
    finally:
        await close_pool(second)

    assert await _current_revision(engine) == before


async def test_schema_objects_exist(engine):
    async with engine.connect() as conn:
        tables = await conn.execute(text(
            "SELECT table_name FROM information_schema.tables "
            "WHERE table_schema = 'public' AND table_name = 'users'"
        ))
        indexes = await conn.execute(text(
            "SELECT indexname FROM pg_indexes "
            "WHERE schemaname = 'public' AND tablename = 'users'"
        ))
        triggers = await conn.execute(text(
            "SELECT tgname FROM pg_trigger WHERE tgname = 'trg_set_updated_at'"
        ))

        assert tables.scalar_one() == "users"
        assert {"idx_users_email", "idx_users_created_at"} <= set(indexes.scalars())
        assert triggers.scalar_one() == "trg_set_updated_at"


async def test_ping_and_pool_status(engine):
    await ping(engine)

    status = pool_status(engine)
    assert status["size"] == 2
    assert status["checked_out"] == 0


async def test_duplicate_email_is_rejected(engine):
    async with session_scope(engine) as session:
        session.add(UserModel(name="Alice", email="alice@example.com"))

    with pytest.raises(IntegrityError):
        async with session_scope(engine) as session:
            session.add(UserModel(name="Alice Again", email="alice@example.com"))

    async with engine.connect() as conn:
        count = await conn.execute(text("SELECT COUNT(*) FROM users WHERE email = 'alice@example.com'"))
        assert count.scalar_one() == 1


async def test_update_refreshes_updated_at(engine):
    async with engine.connect() as conn:
        async with conn.begin() as transaction:
            inserted = (await conn.execute(text(
                "INSERT INTO users (name, email) VALUES (:name, :email) "
                "RETURNING id, created_at, updated_at"
            ), {"name": "Bob", "email": "bob@example.com"})).one()

            first_update = (await conn.execute(text(
                "UPDATE users SET name = :name WHERE id = :id RETURNING updated_at"
            ), {"name": "Bob Smith", "id": inserted.id})).scalar_one()

            second_update = (await conn.execute(text(
                "UPDATE users SET name = :name WHERE id = :id RETURNING updated_at"
            ), {"name": "Robert Smith", "id": inserted.id})).scalar_one()

            await transaction.rollback()

    assert first_update > inserted.created_at
    assert first_update > inserted.updated_at
    assert second_update > first_update




async def test_unknown_database_revision_is_detected(engine):
    async with engine.begin() as conn:
        await conn.execute(text("UPDATE alembic_version SET version_num = '9999'"))

    with pytest.raises(MigrationException) as exc_info:
        await apply_migrations(engine)

    assert exc_info.value.version == "9999"


async def test_failed_migration_is_rolled_back(engine, tmp_path):
    location = tmp_path / "migrations"
    shutil.copytree(MIGRATIONS_DIR, location, ignore=shutil.ignore_patterns("__pycache__"))
    (location / "versions" / "0002_broken.py").write_text(textwrap.dedent("""
        from alembic import op

        revision = "0002"
        down_revision = "0001"
        branch_labels = None
        depends_on = None


        def upgrade():
            op.execute("CREATE TABLE half_applied (id INT)")
            op.execute("SELECT * FROM table_that_does_not_exist")


        def downgrade():
            pass
    """), encoding="utf-8")

    with pytest.raises(MigrationException) as exc_info:
        await apply_migrations(engine, alembic_config(location))

    assert exc_info.value.version == "0002"
    assert exc_info.value.details["sqlstate"] == "42P01"
    assert await _current_revision(engine) == ["0001"]
    async with engine.connect() as conn:
        exists = await conn.execute(text("SELECT to_regclass('public.half_applied') IS NOT NULL"))
        assert exists.scalar_one() is False


async def test_migration_lock_wait_is_bounded(engine):
    async with engine.connect() as holder:
        await holder.execute(text("SELECT pg_advisory_lock(:lock_id)"), {"lock_id": MIGRATION_LOCK_ID})
        await holder.commit()
        try:
            started = time.monotonic()
            with pytest.raises(MigrationException) as exc_info:
                await apply_migrations(engine, lock_timeout_secs=1)
            elapsed = time.monotonic() - started
        finally:
            await holder.execute(text("SELECT pg_advisory_unlock(:lock_id)"), {"lock_id": MIGRATION_LOCK_ID})
            await holder.commit()

    assert "migration lock" in exc_info.value.message
    assert 1 <= elapsed < 5


async def test_acquire_timeout_fails_ping_when_pool_is_exhausted(settings_factory, database_url):
    engine = build_engine(settings_factory(
        database_url=database_url,
        db_max_connections=1,
        db_min_connections=1,
        db_acquire_timeout_secs=1,
    ))
    try:
        async with engine.connect() as held:
            await held.execute(text("SELECT 1"))

            started = time.monotonic()
            with pytest.raises(ProbeException) as exc_info:
                await ping(engine)
            elapsed = time.monotonic() - started

        assert exc_info.value.details == {"error_type": "TimeoutError"}
        assert 0.9 <= elapsed < 5

        await ping(engine)
    finally:
        await engine.dispose()


async def test_checked_out_connections_never_exceed_maximum(settings_factory, database_url):
    engine = build_engine(settings_factory(
        database_url=database_url,
        db_max_connections=3,
        db_min_connections=1,
    ))
    peak = 0

    async def borrow():
        nonlocal peak
        async with engine.connect() as conn:
            peak = max(peak, engine.pool.checkedout())
            await conn.execute(text("SELECT pg_sleep(0.1)"))

    try:
        await asyncio.gather(*(borrow() for _ in range(12)))

        assert 1 <= peak <= 3
        assert pool_status(engine)["checked_out"] == 0
    finally:
        await engine.dispose()
