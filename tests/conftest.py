import os

# Settings are read at import time; point everything at local fakes first
os.environ["SYSTEM_DB_URL"] = "sqlite+aiosqlite://"
os.environ["REDIS_ENABLED"] = "false"
os.environ["OPENAI_API_KEY"] = ""
os.environ["JWT_SECRET"] = "test-jwt-secret"
os.environ["INTERNAL_API_KEY"] = "test-internal-key"
os.environ["ENCRYPTION_KEY"] = "test-encryption-key-with-32-bytes!!"

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

from api import dependencies
from db.models import Base
from main import app
from services.auth import auth_service
from services.cache_service import InMemoryResultCache
from services.data_sources import create_data_source
from services.state_store import StateStore
from tests.fakes import (
    TENANT,
    OTHER_TENANT,
    SQL_CONFIG,
    FakeDispatcher,
    FakeEmbeddingService,
    FakeJobManager,
    FakeVectorStore,
)

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture(scope="function")
async def session_factory():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)
    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def store(session_factory):
    return StateStore(session_factory=session_factory)


@pytest_asyncio.fixture(scope="function")
async def connection(store):
    return await create_data_source(store, TENANT, "Sales", SQL_CONFIG, created_by="user-1")


@pytest.fixture
def result_cache():
    return InMemoryResultCache(ttl_seconds=60)


@pytest.fixture
def dispatcher():
    return FakeDispatcher()


@pytest.fixture
def jobs():
    return FakeJobManager()


@pytest_asyncio.fixture(scope="function")
async def client(store, result_cache, dispatcher, jobs):
    app.dependency_overrides[dependencies.get_store] = lambda: store
    app.dependency_overrides[dependencies.get_result_cache] = lambda: result_cache
    app.dependency_overrides[dependencies.get_dispatcher] = lambda: dispatcher
    app.dependency_overrides[dependencies.get_job_manager] = lambda: jobs
    app.dependency_overrides[dependencies.get_embedding_service] = lambda: FakeEmbeddingService()
    app.dependency_overrides[dependencies.get_vector_store] = lambda: FakeVectorStore()

    async with AsyncClient(
        transport=ASGITransport(app=app), base_url="http://test"
    ) as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers_user():
    token = auth_service.create_token("user-1", TENANT, role="member")
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def auth_headers_admin():
    token = auth_service.create_token("admin-1", TENANT, role="admin")
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def auth_headers_other_tenant():
    token = auth_service.create_token("user-9", OTHER_TENANT, role="member")
    return {"Authorization": f"Bearer {token}"}
