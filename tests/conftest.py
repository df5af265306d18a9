"""Test fixtures. Database-backed tests use a real Postgres reached through the DB_* env vars."""

from contextlib import asynccontextmanager

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession

from concierge.config import Settings
from concierge.storage.database import Database
from concierge.storage.migrator import run_migrations


@pytest.fixture
def settings() -> Settings:
    """Settings without .env overrides."""
    return Settings(_env_file=None)


# ---------------------------------------------------------------------------
# Database fixtures
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def db():
    """Connected database with migrations applied. Skips when Postgres is down."""
    database = Database(Settings(_env_file=None))
    try:
        await database.connect()
    except Exception as e:
        await database.disconnect()
        pytest.skip(f"Postgres not available: {e}")
    await run_migrations(database.engine)
    yield database
    await database.disconnect()


@pytest_asyncio.fixture
async def session(db):
    """Function-scoped session with SAVEPOINT isolation.

    Tests can call session.commit() freely; everything is rolled back
    after each test via the outer transaction.
    """
    async with db.engine.connect() as conn:
        trans = await conn.begin()
        session = AsyncSession(
            bind=conn,
            expire_on_commit=False,
            join_transaction_mode="create_savepoint",
        )

        yield session

        # Roll back the outer transaction, undoing everything
        await session.close()
        await trans.rollback()


class SessionBoundDatabase:
    """Database stand-in whose ``session()`` always yields one shared session.

    Lets components that open their own sessions (dashboard tools, stores
    called without ``session=``) run inside the test's rolled-back transaction.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    @asynccontextmanager
    async def session(self):
        yield self._session


@pytest.fixture
def bound_db(session) -> SessionBoundDatabase:
    return SessionBoundDatabase(session)
