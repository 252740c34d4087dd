# tests/conftest.py

from __future__ import annotations

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel
from sqlmodel.ext.asyncio.session import AsyncSession

from tasklist.cache.layer import TaskCache
from tasklist.core.config import Settings
from tasklist.database import get_db
from tasklist.main import app

from .fakes import FakeTaskAPI


@pytest.fixture()
def settings() -> Settings:
    return Settings(
        api_url="http://test",
        view_cache_maxsize=16,
        view_idle_seconds=10,
    )


@pytest_asyncio.fixture()
async def engine():
    """
    In-memory SQLite engine standing in for Postgres.

    StaticPool keeps one connection so every session sees the same database.
    """
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture()
async def asgi_app(engine):
    session_factory = async_sessionmaker(
        engine, class_=AsyncSession, expire_on_commit=False
    )

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    yield app
    app.dependency_overrides.clear()


@pytest_asyncio.fixture()
async def client(asgi_app):
    transport = httpx.ASGITransport(app=asgi_app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest.fixture()
def fake_api() -> FakeTaskAPI:
    return FakeTaskAPI()


@pytest.fixture()
def cache(fake_api: FakeTaskAPI, settings: Settings) -> TaskCache:
    cache = TaskCache(fake_api, settings=settings)
    cache.set_user("user-1")
    return cache
