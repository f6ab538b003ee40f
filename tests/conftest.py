import os

# settings are read at import time
os.environ.setdefault("TELEMETRY_ENABLED", "false")
os.environ.setdefault("INTERNAL_ADMIN_KEY", "test-internal")
os.environ.setdefault("GUARD_BACKEND", "local")

import functools

import pytest
import httpx

from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.pool import StaticPool

# Import Base + all models so metadata is complete
from delivery_hub.models.base import Base
import delivery_hub.models  # noqa: F401

from delivery_hub.main import app
from delivery_hub.services.commit_engine import CommitEngine
from delivery_hub.services.pipeline import CoveragePipeline, get_pipeline
from delivery_hub.services.progress import ProgressHub
from delivery_hub.services.single_flight import LocalOperationGuard

from tests.fixtures_seed import FakeClassifier, FakeProvider, no_sleep


@pytest.fixture
async def async_engine():
    # one in-memory database per test; StaticPool keeps every session on the same connection
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    try:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        yield engine
    finally:
        await engine.dispose()


@pytest.fixture
def session_factory(async_engine):
    return async_sessionmaker(async_engine, expire_on_commit=False, class_=AsyncSession)


@pytest.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def hub():
    return ProgressHub()


@pytest.fixture
def guard():
    return LocalOperationGuard()


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def classifier():
    return FakeClassifier()


@pytest.fixture
def pipeline(session_factory, guard, provider, classifier, hub):
    return CoveragePipeline(
        session_factory,
        guard=guard,
        provider_factory=lambda: provider,
        classifier_factory=lambda: classifier,
        hub=hub,
        commit_engine_factory=functools.partial(CommitEngine, sleep=no_sleep),
    )


@pytest.fixture
def admin_headers():
    return {"X-Internal-Admin-Key": os.environ["INTERNAL_ADMIN_KEY"], "X-Admin-Actor": "reviewer-1"}


@pytest.fixture
async def client(pipeline):
    """
    HTTP client wired to the test pipeline via dependency override.
    """
    app.dependency_overrides[get_pipeline] = lambda: pipeline

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
