# backend/tests/conftest.py
import os
import tempfile

# Settings are read at import time, so the test environment must be in place first
os.environ["APP_ENV"] = "test"
os.environ.setdefault("SECRET_KEY", "trustgate-test-secret-key-0123456789abcdef")
os.environ.setdefault("ENCRYPTION_KEY", "5f" * 32)
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault(
    "SECURITY_LOG_PATH", os.path.join(tempfile.gettempdir(), "trustgate-tests", "security.log")
)

import uuid  # noqa: E402
from collections.abc import AsyncGenerator  # noqa: E402
from datetime import UTC, datetime, timedelta  # noqa: E402

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker  # noqa: E402

from support import (  # noqa: E402
    ALL_LOCATIONS,
    FakeClock,
    InMemoryAuditStore,
    InMemoryBlacklistStore,
    InMemoryCredentialStore,
    InMemoryUserStore,
    StaticGeoProvider,
    make_token,
)
from trustgate.core.config import settings  # noqa: E402
from trustgate.db.session import build_session_factory, create_tables  # noqa: E402
from trustgate.db.stores import UserRecord  # noqa: E402
from trustgate.services.registry import SecurityServices, build_services  # noqa: E402


# --- Fixtures ---


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def blacklist_store() -> InMemoryBlacklistStore:
    return InMemoryBlacklistStore()


@pytest.fixture
def audit_store() -> InMemoryAuditStore:
    return InMemoryAuditStore()


@pytest.fixture
def credential_store() -> InMemoryCredentialStore:
    return InMemoryCredentialStore()


@pytest.fixture
def user_store() -> InMemoryUserStore:
    return InMemoryUserStore()


@pytest.fixture
def geo_provider() -> StaticGeoProvider:
    return StaticGeoProvider({loc.ip: loc for loc in ALL_LOCATIONS})


@pytest.fixture
def user(user_store: InMemoryUserStore) -> UserRecord:
    return user_store.add(
        UserRecord(
            id=uuid.uuid4(),
            email="alice@example.com",
            email_verified=True,
            created_at=datetime.now(UTC) - timedelta(days=90),
            last_login_at=datetime.now(UTC) - timedelta(days=1),
        )
    )


@pytest.fixture
def auth_headers(user: UserRecord) -> dict[str, str]:
    return {"Authorization": f"Bearer {make_token(user.id)}"}


@pytest.fixture
def admin_headers() -> dict[str, str]:
    return {"Authorization": f"Bearer {make_token(uuid.uuid4(), is_admin=True)}"}


@pytest_asyncio.fixture
async def session_factory(tmp_path) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """Session factory over a fresh file-backed SQLite database."""
    engine, factory = build_session_factory(f"sqlite+aiosqlite:///{tmp_path}/test.db")
    await create_tables(engine)
    try:
        yield factory
    finally:
        await engine.dispose()


@pytest_asyncio.fixture
async def services(
    blacklist_store, audit_store, credential_store, user_store, geo_provider
) -> AsyncGenerator[SecurityServices, None]:
    services = build_services(
        settings,
        blacklist_store=blacklist_store,
        audit_store=audit_store,
        credential_store=credential_store,
        user_store=user_store,
        provider=geo_provider,
    )
    await services.start()
    try:
        yield services
    finally:
        await services.stop()


@pytest_asyncio.fixture
async def test_client(services: SecurityServices) -> AsyncGenerator[AsyncClient, None]:
    """
    httpx AsyncClient bound to the app through ASGITransport.

    ASGITransport does not run the lifespan, so the in-memory services are
    attached to app.state directly.
    """
    from trustgate.main import app as fastapi_app

    fastapi_app.state.services = services
    async with AsyncClient(
        transport=ASGITransport(app=fastapi_app), base_url="http://test"
    ) as client:
        yield client
    fastapi_app.state.services = None
