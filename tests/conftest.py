"""pytest fixtures for mockgen backend tests.

Provides:
- engine: Function-scoped SQLite (aiosqlite) file database with all tables created
- session: Function-scoped database session
- uow_factory: Function-scoped UnitOfWork factory
- utc_clock / mono_clock: Controllable clocks for the scheduler, breaker and limiter
- seed_user / seed_job: Helpers that commit fixture data before the code under test runs
- build_app / test_client: FastAPI app wired to the test database, and an AsyncClient for it
"""

import os
from datetime import datetime, timedelta
from typing import AsyncGenerator, Optional

import pytest
import pytest_asyncio
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlmodel import SQLModel

from mockgen import models  # noqa: F401  (registers tables on SQLModel.metadata)
from mockgen.app import create_app
from mockgen.core.config import Settings
from mockgen.models.generation_job import GenerationJob, JobType
from mockgen.models.mockup import Mockup, MockupQuality
from mockgen.models.user import User
from mockgen.uow import create_uow_factory

TEST_WEBHOOK_SECRET = "whsec_test_secret"


class FakeClock:
    """Naive-UTC wall clock that only moves when told to."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2025, 1, 1, 12, 0, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FakeMonotonic:
    """Monotonic clock (seconds) that only moves when told to."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture(scope="session", autouse=True)
def test_environment():
    """Keep Settings() in tests away from production validation."""
    os.environ["APP_ENV"] = "test"
    os.environ["TZ"] = "UTC"
    yield


@pytest_asyncio.fixture(scope="function")
async def engine(tmp_path):
    """Provide a fresh SQLite database file per test with all tables created."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path}/test.db")
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def session_factory(engine):
    return async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture(scope="function")
async def session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Provide a function-scoped session for direct assertions."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest_asyncio.fixture(scope="function")
async def uow_factory(session_factory):
    """Provide function-scoped UnitOfWork factory."""
    return create_uow_factory(session_factory)


@pytest.fixture
def utc_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def mono_clock() -> FakeMonotonic:
    return FakeMonotonic()


@pytest.fixture
def seed_user(uow_factory):
    """Commit a user and return it."""

    async def _seed(
        external_user_id: str = "user_1",
        credits: int = 100,
        subscription_tier: str = "starter",
    ) -> User:
        async with await uow_factory() as uow:
            return await uow.users.add(
                User(
                    external_user_id=external_user_id,
                    credits_remaining=credits,
                    subscription_tier=subscription_tier,
                )
            )

    return _seed


@pytest.fixture
def seed_job(uow_factory, utc_clock):
    """Commit a queued job (and its mockup) for ``user`` and return the job."""

    async def _seed(
        user: User,
        priority: int = 100,
        queued_at: Optional[datetime] = None,
        max_attempts: int = 3,
        estimated_credits: int = 10,
        prompt: str = "Ceramic mug on a wooden desk",
    ) -> GenerationJob:
        async with await uow_factory() as uow:
            mockup = await uow.mockups.add(
                Mockup(user_id=user.id, prompt=prompt, quality=MockupQuality.STANDARD)
            )
            return await uow.jobs.add(
                GenerationJob(
                    mockup_id=mockup.id,
                    user_id=user.id,
                    job_type=JobType.GENERATION,
                    priority=priority,
                    max_attempts=max_attempts,
                    queued_at=queued_at or utc_clock(),
                    estimated_credits=estimated_credits,
                )
            )

    return _seed


@pytest.fixture
def build_app(uow_factory, session_factory):
    """Build a fresh app (own breakers and rate limiters) wired to the test database.

    The lifespan is not run, so no scheduler is started.
    """

    def _build(**overrides) -> FastAPI:
        settings = Settings(
            APP_ENV="test", PAYMENT_WEBHOOK_SECRET=TEST_WEBHOOK_SECRET, **overrides
        )
        app = create_app(settings)
        app.state.uow_factory = uow_factory
        app.state.session_factory = session_factory
        return app

    return _build


@pytest_asyncio.fixture
async def test_client(build_app):
    """Provide AsyncClient for testing API endpoints with database access."""
    async with AsyncClient(transport=ASGITransport(app=build_app()), base_url="http://test") as client:
        yield client


@pytest.fixture
def webhook_secret() -> str:
    """Secret the ``build_app`` apps verify payment webhooks against."""
    return TEST_WEBHOOK_SECRET
