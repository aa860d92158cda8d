"""Shared fixtures: in-memory database and a controllable clock."""

import os

# Must be set before appointment_bot.config builds its settings
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("APP_ENV", "development")
os.environ["GOOGLE_CALENDAR_ACCESS_TOKEN"] = ""
os.environ["ANTHROPIC_API_KEY"] = ""

from datetime import datetime, timedelta

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from appointment_bot.models.database import Base

# Monday
NOW = datetime(2026, 10, 19, 9, 0)


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, current: datetime = NOW):
        self.current = current

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> None:
        self.current += timedelta(**kwargs)


@pytest.fixture
def clock():
    """Clock frozen at Monday 2026-10-19 09:00."""
    return FakeClock()


@pytest.fixture
async def engine():
    """Fresh in-memory SQLite database per test."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
