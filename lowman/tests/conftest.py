"""
Shared pytest configuration for engine tests.

Defaults to a SQLite file through aiosqlite so the suite runs without a
database server; set TEST_DATABASE_URL to run against PostgreSQL.

SAFETY: This module REFUSES to run against any database whose name does not
contain the substring "test". This prevents accidental drops of the
development or production database when environment variables are
misconfigured.
"""

import os

# Must be set before the API routes are imported (disables rate limiting)
os.environ.setdefault("ENV", "test")

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker  # noqa: E402
from sqlalchemy.pool import NullPool  # noqa: E402

from lowman.database.db import Base  # noqa: E402
from lowman.services import redis_service  # noqa: E402
from lowman.services.notification_service import get_notification_dispatcher  # noqa: E402

# Teardown-noise hook, registered by being importable from this conftest
from lowman.tests.pytest_cleanup_plugin import pytest_runtest_makereport  # noqa: E402, F401


def _resolve_test_database_url() -> str:
    """Build the test database URL with safety checks.

    Raises ``RuntimeError`` if the resolved URL does not point to a database
    whose name contains "test".
    """
    url = os.getenv("TEST_DATABASE_URL", "sqlite+aiosqlite:///./lowman_test.db")

    # ── Safety gate: database name MUST contain "test" ──────────────────
    db_name = url.rsplit("/", 1)[-1].split("?")[0]
    if "test" not in db_name.lower():
        raise RuntimeError(
            f"\n{'=' * 70}\n"
            f"  SAFETY: Refusing to run tests against database '{db_name}'.\n"
            f"  The database name must contain 'test' to prevent accidental\n"
            f"  data loss in development or production databases.\n\n"
            f"  Resolved URL: {url}\n\n"
            f"  Fix: set TEST_DATABASE_URL to a test database, e.g.:\n"
            f"    export TEST_DATABASE_URL=postgresql+asyncpg://.../lowman_test\n"
            f"{'=' * 70}"
        )

    return url


# Validated at import time so pytest fails immediately with a clear message
TEST_DATABASE_URL = _resolve_test_database_url()


@pytest_asyncio.fixture(scope="function")
async def test_engine():
    """Create a fresh schema on the test database for one test."""
    # NullPool: every session gets its own connection, which the concurrency
    # tests rely on, and nothing is reused across event loops
    engine = create_async_engine(TEST_DATABASE_URL, echo=False, poolclass=NullPool)

    async with engine.begin() as conn:
        from lowman.database import models  # noqa: F401

        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    # Code that opens its own sessions (IngestService, get_db_session) goes
    # through db.AsyncSessionLocal, so point it at the test engine
    from lowman.database import db

    test_session_maker = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )
    original_async_session_local = db.AsyncSessionLocal
    db.AsyncSessionLocal = test_session_maker

    yield engine

    db.AsyncSessionLocal = original_async_session_local

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(test_engine):
    """Session maker bound to the test engine, for tests that need several sessions."""
    return async_sessionmaker(
        test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest_asyncio.fixture
async def db_session(session_factory):
    """A test database session on a freshly created schema."""
    async with session_factory() as session:
        try:
            yield session
        finally:
            await session.rollback()
            await session.close()


@pytest.fixture(autouse=True)
def published(monkeypatch):
    """Capture Redis publishes instead of talking to a Redis server."""
    messages = []

    async def fake_publish(channel, message):
        messages.append((channel, message))
        return True

    monkeypatch.setattr(redis_service, "redis_publish", fake_publish)
    dispatcher = get_notification_dispatcher()
    dispatcher.clear_sinks()
    yield messages
    dispatcher.clear_sinks()
