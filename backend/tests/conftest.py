"""
Shared test fixtures for the AdPilot backend test suite.

NOTE: This test suite uses aiosqlite as the async SQLite driver so that tests
run against an in-memory database instead of a real PostgreSQL instance, and
fakeredis in place of a Redis server. Both are declared in ``pyproject.toml``
under ``[project.optional-dependencies] dev``:

    pip install -e ".[dev]"

Graph API calls go through ``SandboxTransport`` or an ``httpx.MockTransport``;
nothing in the suite talks to the network.
"""

from __future__ import annotations

import os
import uuid
from typing import AsyncGenerator

from cryptography.fernet import Fernet

# Settings are cached on first use, so the key must be in the environment
# before anything under ``adpilot`` is imported.
TEST_ENCRYPTION_KEY = Fernet.generate_key().decode()
os.environ["TOKEN_ENCRYPTION_KEY"] = TEST_ENCRYPTION_KEY

import fakeredis  # noqa: E402
import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy import event  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402
from sqlalchemy.dialects.postgresql import UUID as PG_UUID, JSONB  # noqa: E402

from adpilot.database import Base, get_db  # noqa: E402
from adpilot.dependencies import get_redis  # noqa: E402
from adpilot.meta.client import GraphClient  # noqa: E402
from adpilot.meta.rate_limiter import RateLimiter  # noqa: E402
from adpilot.meta.tokens import TokenService  # noqa: E402
from adpilot.meta.transport import SandboxTransport  # noqa: E402
from adpilot.models.meta_ads import MetaConnection  # noqa: E402
from adpilot.models.tenant import Tenant  # noqa: E402

# Import all models so Base.metadata has every table registered.
import adpilot.models  # noqa: F401, E402

# ---------------------------------------------------------------------------
# Async SQLite engine (in-memory, shared across a single test run)
# ---------------------------------------------------------------------------

TEST_DATABASE_URL = "sqlite+aiosqlite://"

engine_test = create_async_engine(
    TEST_DATABASE_URL,
    echo=False,
    # SQLite needs ``check_same_thread=False`` when used with async.
    connect_args={"check_same_thread": False},
)

TestingSessionLocal = async_sessionmaker(
    engine_test,
    class_=AsyncSession,
    expire_on_commit=False,
)


# ---------------------------------------------------------------------------
# Type-adaptation: teach SQLAlchemy to compile PG types for the SQLite dialect.
# ---------------------------------------------------------------------------

@event.listens_for(engine_test.sync_engine, "connect")
def _set_sqlite_pragma(dbapi_connection, connection_record):
    """Enable foreign keys for the SQLite connection."""
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


# Register compile-time overrides so PG-specific types get rendered as
# something SQLite understands.
from sqlalchemy.ext.compiler import compiles  # noqa: E402

@compiles(PG_UUID, "sqlite")
def _compile_uuid_sqlite(type_, compiler, **kw):
    return "CHAR(32)"

@compiles(JSONB, "sqlite")
def _compile_jsonb_sqlite(type_, compiler, **kw):
    return "JSON"


async def _no_sleep(_seconds: float) -> None:
    return None


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture(scope="session")
async def setup_database():
    """Create all tables once per test session, then drop them at teardown."""
    async with engine_test.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with engine_test.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine_test.dispose()


@pytest_asyncio.fixture()
async def db_session(setup_database) -> AsyncGenerator[AsyncSession, None]:
    """
    Provide a transactional database session that rolls back after each test,
    keeping every test isolated. ``commit()`` inside the code under test only
    releases to the outer transaction.
    """
    async with engine_test.connect() as conn:
        transaction = await conn.begin()
        session = AsyncSession(bind=conn, expire_on_commit=False)

        try:
            yield session
        finally:
            await session.close()
            await transaction.rollback()


@pytest_asyncio.fixture()
async def redis_client():
    """In-process Redis with string responses, flushed after each test."""
    r = fakeredis.FakeAsyncRedis(decode_responses=True)
    yield r
    await r.flushall()
    await r.aclose()


@pytest.fixture()
def token_service() -> TokenService:
    return TokenService(TEST_ENCRYPTION_KEY)


@pytest.fixture()
def sandbox() -> SandboxTransport:
    return SandboxTransport(page_size=2)


@pytest.fixture()
def graph_client(sandbox: SandboxTransport, redis_client) -> GraphClient:
    """Graph client over the sandbox transport, with a real (fake-Redis) call budget."""
    return GraphClient(sandbox, RateLimiter(redis_client), sleep=_no_sleep)


@pytest_asyncio.fixture()
async def tenant(db_session: AsyncSession) -> Tenant:
    tenant = Tenant(id=uuid.uuid4(), name="Test Org", slug=f"test-org-{uuid.uuid4().hex[:8]}")
    db_session.add(tenant)
    await db_session.flush()
    return tenant


@pytest_asyncio.fixture()
async def connection(db_session: AsyncSession, tenant: Tenant, token_service: TokenService) -> MetaConnection:
    """An ACTIVE connection for ``act_123`` holding an encrypted token."""
    conn = MetaConnection(
        id=uuid.uuid4(),
        tenant_id=tenant.id,
        ad_account_id="act_123",
        fb_user_id="10001",
        access_token_encrypted=token_service.encrypt_token("user-token"),
        scopes=["ads_management", "ads_read"],
        status="ACTIVE",
    )
    db_session.add(conn)
    await db_session.flush()
    return conn


@pytest_asyncio.fixture()
async def client(db_session: AsyncSession, redis_client) -> AsyncGenerator[AsyncClient, None]:
    """
    FastAPI test client that uses ``httpx.AsyncClient`` with ``ASGITransport``.
    ``get_db`` and ``get_redis`` are overridden so requests share the test
    session and the fake Redis.
    """
    from adpilot.main import app
    from adpilot.rate_limit import limiter

    async def _override_get_db() -> AsyncGenerator[AsyncSession, None]:
        yield db_session

    app.dependency_overrides[get_db] = _override_get_db
    app.dependency_overrides[get_redis] = lambda: redis_client
    limiter.reset()

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://testserver") as ac:
        yield ac

    app.dependency_overrides.clear()
