"""
Pytest configuration and fixtures
"""

import pytest
import pytest_asyncio
from datetime import date
from typing import AsyncGenerator

from sqlalchemy.ext.asyncio import AsyncSession

from core.config import Settings
from core.database import Database
from ingestion.service import build_service
from tests.fakes import FakeWarehouseClient, make_row


@pytest.fixture
def sample_rows():
    """Two ASINs over two weeks, three search queries each"""
    rows = []
    for asin in ("B000TEST01", "B000TEST02"):
        for start, end in ((date(2024, 1, 1), date(2024, 1, 7)), (date(2024, 1, 8), date(2024, 1, 14))):
            for query in ("wireless earbuds", "bluetooth headphones", "noise cancelling"):
                rows.append(make_row(asin=asin, search_query=query, start_date=start, end_date=end))
    return rows


@pytest.fixture
def test_settings(tmp_path):
    return Settings(
        DATABASE_URL=f"sqlite+aiosqlite:///{tmp_path / 'sync_test.db'}",
        WAREHOUSE_URL=None,
        SCHEDULER_ENABLED=False,
        MAX_CONCURRENT_REFRESHES=1,
        SYNC_PAGE_SIZE=5,
        CHILD_UPSERT_BATCH_SIZE=4,
        TABLE_RUN_TIMEOUT_SECONDS=30.0,
        ALERT_WEBHOOK_URL=None,
    )


@pytest_asyncio.fixture(scope="function")
async def database(test_settings) -> AsyncGenerator[Database, None]:
    """Temporary SQLite store with every table created"""
    db = Database(test_settings.DATABASE_URL)
    await db.create_all()
    yield db
    await db.dispose()


@pytest_asyncio.fixture(scope="function")
async def db_session(database) -> AsyncGenerator[AsyncSession, None]:
    async with database.session() as session:
        yield session
        await session.rollback()


@pytest.fixture
def warehouse(sample_rows):
    return FakeWarehouseClient(sample_rows)


@pytest_asyncio.fixture(scope="function")
async def service(test_settings, database, warehouse):
    """Fully wired service over the temporary store and the fake warehouse"""
    svc = build_service(test_settings, database=database, warehouse_client=warehouse)
    await svc.initialize()
    yield svc
    svc.scheduler.stop()
