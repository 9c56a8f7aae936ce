"""pytest fixtures for storyforge tests.

Provides:
- postgres_container: Session-scoped testcontainer PostgreSQL instance with
  migrations applied (tests using it are skipped when Docker is unavailable)
- session: Function-scoped database session with table cleanup
- uow_factory: Function-scoped UnitOfWork factory
- clock: Manually advanced clock for lease and budget tests
"""

import os

# Settings skip credential validation in test environments; must be set before app imports
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("QUEUE_BACKEND", "memory")
os.environ.setdefault("ARTIFACT_BACKEND", "memory")

import subprocess  # noqa: E402
import sys  # noqa: E402
from pathlib import Path  # noqa: E402
from typing import AsyncGenerator  # noqa: E402

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from fakes import FakeClock  # noqa: E402
from sqlalchemy import text  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker  # noqa: E402

from storyforge.core.database import setup_db_session  # noqa: E402
from storyforge.uow import create_uow_factory  # noqa: E402

PROJECT_ROOT = Path(__file__).resolve().parent.parent


@pytest.fixture(scope="session")
def postgres_container():
    """Provide session-scoped PostgreSQL container with migrations applied.

    Container starts once per test session and is reused across all tests.
    Migrations are applied using subprocess to avoid asyncio event loop conflicts.
    """
    try:
        from testcontainers.postgres import PostgresContainer

        container = PostgresContainer(
            image="postgres:17",
            username="test",
            password="test",
            dbname="test_storyforge",
        )
        container.start()
    except Exception as e:
        pytest.skip(f"PostgreSQL container unavailable (Docker required): {e}")

    try:
        db_url = container.get_connection_url(driver="psycopg")

        # Set DATABASE_URL environment variable for alembic env.py
        env = os.environ.copy()
        env["DATABASE_URL"] = db_url

        subprocess.run(
            [sys.executable, "-m", "alembic", "upgrade", "head"],
            check=True,
            capture_output=True,
            text=True,
            env=env,
            cwd=PROJECT_ROOT,
        )

        yield container
    finally:
        container.stop()


@pytest_asyncio.fixture(scope="function")
async def session(postgres_container) -> AsyncGenerator[AsyncSession, None]:
    """Provide function-scoped database session with table cleanup.

    Each test gets a fresh session with empty tables (deleted between tests).
    """
    db_url = postgres_container.get_connection_url(driver="psycopg")
    session_factory = setup_db_session(db_url, pool_size=5)

    async with session_factory() as session:
        yield session

        # Rollback uncommitted changes first to avoid foreign key violations on cleanup
        await session.rollback()

        # Order matters: delete from dependent tables first
        await session.execute(text("DELETE FROM artifacts"))
        await session.execute(text("DELETE FROM provider_attempts"))
        await session.execute(text("DELETE FROM generation_jobs"))
        await session.execute(text("DELETE FROM queue_messages"))
        await session.commit()

    await session_factory.kw["bind"].dispose()


@pytest_asyncio.fixture(scope="function")
async def uow_factory(session: AsyncSession):
    """Provide function-scoped UnitOfWork factory bound to the test database."""
    session_factory = async_sessionmaker(
        bind=session.bind,
        expire_on_commit=False,
    )
    return create_uow_factory(session_factory)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
