"""
Payroll Engine - Test Configuration

Pytest fixtures and configuration.
"""

from typing import AsyncGenerator, List

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

import app.models  # noqa: F401  (registers every table on Base.metadata)
from app.config import Settings, get_settings
from app.database import Base
from app.dependencies import get_session_factory
from app.services.payroll_repository import SqlAlchemyPayrollRepository
from app.services.payroll_service import PayrollRunService
from app.utils.retry import RetryPolicy
from main import app
from tests.fakes import InMemoryPayrollRepository, RecordingNotifier


# In-memory SQLite shared through a single connection
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


# ===========================================
# IN-MEMORY PORTS
# ===========================================

@pytest.fixture
def repository() -> InMemoryPayrollRepository:
    return InMemoryPayrollRepository()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def sleeps() -> List[float]:
    """Backoff delays requested by the retry helper, in order."""
    return []


@pytest.fixture
def payroll_service(repository, notifier, sleeps) -> PayrollRunService:
    async def fake_sleep(delay: float) -> None:
        sleeps.append(delay)

    return PayrollRunService(
        repository,
        notifier=notifier,
        retry_policy=RetryPolicy(attempts=3, base_delay=0.2, max_delay=2.0),
        sleep=fake_sleep,
    )


# ===========================================
# SQLITE DATABASE
# ===========================================

@pytest_asyncio.fixture(scope="function")
async def session_factory() -> AsyncGenerator[async_sessionmaker, None]:
    """Fresh schema per test on an in-memory SQLite database."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def sql_repository(session_factory) -> SqlAlchemyPayrollRepository:
    return SqlAlchemyPayrollRepository(session_factory)


@pytest.fixture
def test_settings() -> Settings:
    # One unit at a time: every session shares the single SQLite connection
    return Settings(payroll_worker_concurrency=1, storage_retry_base_delay=0.0)


@pytest_asyncio.fixture(scope="function")
async def client(session_factory, test_settings) -> AsyncGenerator[AsyncClient, None]:
    """Test client wired to the SQLite database."""
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_settings] = lambda: test_settings

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
