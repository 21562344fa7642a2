"""Pytest configuration and fixtures for tokenauth tests.

Database tests run against an in-memory SQLite database (aiosqlite with a
StaticPool so every session shares one connection). Rotation engine tests
use the in-memory token store.
"""

import os
from collections.abc import AsyncGenerator, Callable
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from argon2 import PasswordHasher
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

# Set test environment variables before importing app modules
os.environ["TESTING"] = "true"
os.environ["JWT_SECRET_KEY"] = "k" * 64
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"

TEST_SIGNING_KEY = "test-signing-key-" + "x" * 47
TEST_OWNER = "user-42"
TEST_ORIGIN = "10.0.0.1"
OTHER_ORIGIN = "10.0.0.2"


# --- Core Fixtures ---


@pytest.fixture
def token_config():
    """Token configuration with the service defaults and a test key."""
    from tokenauth.core.config import TokenConfig

    return TokenConfig(
        signing_key=TEST_SIGNING_KEY,
        algorithm="HS512",
        allowed_algorithms=("HS512",),
        access_ttl=timedelta(seconds=300),
        refresh_ttl=timedelta(seconds=3600),
    )


@pytest.fixture
def fast_hasher() -> PasswordHasher:
    """Cheap Argon2 parameters so hashing does not dominate test time."""
    return PasswordHasher(time_cost=1, memory_cost=8, parallelism=1)


@pytest.fixture
def codec(token_config, fast_hasher):
    from tokenauth.services.codec import CredentialCodec

    return CredentialCodec(token_config, hasher=fast_hasher)


@pytest.fixture
def memory_store():
    from tokenauth.services.token_store import InMemoryTokenStore

    return InMemoryTokenStore()


@pytest.fixture
def notifier() -> MagicMock:
    """Notifier double recording every notify() call."""
    mock = MagicMock()
    mock.notify = AsyncMock(return_value=None)
    return mock


@pytest.fixture
def rotation_engine(codec, memory_store, notifier):
    from tokenauth.services.rotation import RotationEngine

    return RotationEngine(codec, memory_store, notifier)


@pytest_asyncio.fixture(autouse=True)
async def drain_pending_notifications():
    """Make sure no notification task outlives its test."""
    yield
    from tokenauth.services.notifier import drain_notifications

    await drain_notifications()


# --- Database Fixtures ---


@pytest_asyncio.fixture(scope="function")
async def db_engine():
    """In-memory SQLite engine with the schema created."""
    from tokenauth.core.database import Base
    from tokenauth.models import RefreshToken  # noqa: F401

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
def session_maker(db_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def sql_store(session_maker):
    from tokenauth.services.token_store import SqlTokenStore

    return SqlTokenStore(session_maker)


# --- HTTP Fixtures ---


@pytest.fixture
def app(session_maker, codec, notifier):
    """Application with database, codec and notifier overridden."""
    from tokenauth.api.auth import get_codec, get_notifier
    from tokenauth.core.database import get_session_maker
    from tokenauth.main import app

    app.dependency_overrides[get_session_maker] = lambda: session_maker
    app.dependency_overrides[get_codec] = lambda: codec
    app.dependency_overrides[get_notifier] = lambda: notifier

    yield app

    app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def client_factory(app) -> AsyncGenerator[Callable[[str], AsyncClient], None]:
    """Create clients whose requests appear to come from a given IP."""
    clients: list[AsyncClient] = []

    def _make(host: str = TEST_ORIGIN, port: int = 51000) -> AsyncClient:
        transport = ASGITransport(app=app, client=(host, port))
        client = AsyncClient(transport=transport, base_url="http://test")
        clients.append(client)
        return client

    yield _make

    for client in clients:
        await client.aclose()


@pytest_asyncio.fixture
async def async_client(client_factory) -> AsyncClient:
    """Client connecting from TEST_ORIGIN."""
    return client_factory(TEST_ORIGIN)


# --- Pytest Hooks for Auto-Marking ---


def pytest_collection_modifyitems(config, items):
    """Mark tests using the database or HTTP app as integration, the rest as unit."""
    integration_fixtures = {"db_engine", "session_maker", "sql_store", "async_client", "app"}

    for item in items:
        if any(mark.name in ("unit", "integration") for mark in item.iter_markers()):
            continue
        if integration_fixtures & set(getattr(item, "fixturenames", ())):
            item.add_marker(pytest.mark.integration)
        else:
            item.add_marker(pytest.mark.unit)
