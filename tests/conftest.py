"""
Pytest configuration and fixtures for SCANAGENTS tests.
"""

from datetime import UTC, datetime
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from scanagents.db.models import Base
from scanagents.db.repositories.agent import AgentRepository
from scanagents.services.agent_lifecycle import AgentLifecycleManager
from scanagents.services.agent_store import InMemoryAgentStore
from scanagents.services.agent_validator import AgentValidator
from scanagents.services.strategy_catalog import get_strategy_catalog
from scanagents.services.trigger_evaluator import TriggerEvaluator


# Use an in-memory SQLite database for tests
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


@pytest_asyncio.fixture(scope="function")
async def db_engine():
    """Create a test database engine."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def db_session(db_engine) -> AsyncGenerator[AsyncSession, None]:
    """Create a test database session."""
    async_session = async_sessionmaker(
        db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )

    async with async_session() as session:
        yield session


@pytest.fixture
def now() -> datetime:
    """Fixed reference time (a Monday)"""
    return datetime(2025, 1, 6, 12, 0, tzinfo=UTC)


@pytest.fixture
def valid_submission() -> dict:
    """A submission that passes every validation rule"""
    return {
        "name": "BTC momentum scanner",
        "strategy_id": "momentum",
        "symbols": ["BTC/USDT", "ETH/USDT"],
        "timeframe": "1h",
        "schedule": "5m",
        "risk_parameters": {"stop_loss_pct": 2.5, "max_leverage": 3},
    }


@pytest.fixture
def catalog():
    return get_strategy_catalog()


@pytest.fixture
def validator(catalog) -> AgentValidator:
    return AgentValidator(catalog, lookahead_days=365)


@pytest.fixture
def evaluator() -> TriggerEvaluator:
    return TriggerEvaluator()


@pytest.fixture
def store() -> InMemoryAgentStore:
    return InMemoryAgentStore()


@pytest.fixture
def lifecycle(store, catalog, validator, evaluator) -> AgentLifecycleManager:
    """Lifecycle manager over the in-memory store"""
    return AgentLifecycleManager(
        store,
        catalog=catalog,
        validator=validator,
        evaluator=evaluator,
        max_backoff_seconds=60,
    )


@pytest_asyncio.fixture
async def sql_lifecycle(db_session, catalog, validator, evaluator) -> AgentLifecycleManager:
    """Lifecycle manager over the SQL repository"""
    return AgentLifecycleManager(
        AgentRepository(db_session),
        catalog=catalog,
        validator=validator,
        evaluator=evaluator,
        max_backoff_seconds=60,
    )
