"""
Pytest configuration and fixtures.
"""

import pytest
import pytest_asyncio

from stakeledger.db.database import close_db, create_tables, init_db
from stakeledger.services.kv_store import MemoryKeyValueStore

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


@pytest_asyncio.fixture
async def db():
    """Fresh in-memory database with all tables."""
    await init_db(TEST_DATABASE_URL)
    await create_tables()
    yield
    await close_db()


@pytest.fixture
def kv_store() -> MemoryKeyValueStore:
    """In-process key-value store standing in for Redis."""
    return MemoryKeyValueStore()


@pytest.fixture
def player_id() -> str:
    """Provide a test staked player ID."""
    return "player-1"
