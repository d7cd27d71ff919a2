"""
Shared fixtures. The environment is pinned before anything imports adsync so
module-level settings (engine, rate limiter) come up in development mode.
"""

import os

os.environ["ENVIRONMENT"] = "development"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["API_KEY"] = ""
os.environ["ENCRYPTION_KEY"] = ""
os.environ["CRON_SECRET"] = ""
os.environ["AMAZON_CLIENT_ID"] = "test-client-id"
os.environ["AMAZON_CLIENT_SECRET"] = "test-client-secret"

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from adsync.database import Base
import adsync.models  # noqa: F401


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
async def session_factory(tmp_path):
    """File-backed SQLite so separate sessions see each other's commits."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'adsync.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture(autouse=True)
def _fresh_token_managers():
    from adsync.services.token_service import clear_token_managers

    clear_token_managers()
    yield
    clear_token_managers()
