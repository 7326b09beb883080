"""Shared fixtures: a fresh file-backed SQLite ledger per test."""

from decimal import Decimal

import pytest
import pytest_asyncio

from creditledger.core.config import Settings
from creditledger.core.credits import CostEstimator
from creditledger.core.ledger import LedgerEngine
from creditledger.core.pricing import build_default_resolver
from creditledger.db.database import Database


@pytest.fixture
def settings(tmp_path):
    return Settings(
        _env_file=None,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}",
        cleanup_enabled=False,
        rate_limit_enabled=False,
    )


@pytest_asyncio.fixture
async def db(settings):
    database = Database(settings)
    await database.init()
    yield database
    await database.close()


@pytest.fixture
def estimator(db, settings):
    return CostEstimator(build_default_resolver(db), settings)


@pytest.fixture
def ledger(db, estimator, settings):
    return LedgerEngine(db, estimator, settings)


@pytest_asyncio.fixture
async def user_id(ledger):
    """A user with 1000 credits."""
    result = await ledger.create_user("user-1", "user1@example.com", Decimal("1000"))
    assert result.ok
    return "user-1"
