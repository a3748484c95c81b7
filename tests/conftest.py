"""
Shared test fixtures for pytest.

Provides:
- fake_settings: Test environment configuration (SQLite, dev JWT secret)
- clock: Controllable UTC clock injected into DSARService
- db_engine / db_session: Real async SQLAlchemy session on in-memory SQLite
- event_bus, service: DSARService wired to the real session
- test_app: FastAPI app with the DB session and clock overridden
- customer_client, other_customer_client, csr_client, admin_client,
  anon_client: Pre-authenticated HTTP clients
- make_token: Helper to create test JWT tokens
"""

import uuid
from collections.abc import AsyncGenerator
from datetime import UTC, datetime, timedelta
from typing import Any

import httpx
import jwt
import pytest
from fastapi import Depends, FastAPI, Request
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

import consenthub.models  # noqa: F401 - registers all models with Base.metadata
from consenthub.config import Environment, Settings, get_settings
from consenthub.database import Base, get_db_session
from consenthub.dsar.service import DSARService
from consenthub.events.bus import EventBus
from consenthub.telemetry.logging import clear_context

# ------------------------------------------------------------------ #
# Session-scoped: clear settings cache between test sessions
# ------------------------------------------------------------------ #


@pytest.fixture(autouse=True, scope="session")
def _clear_settings_cache():
    """Clear the lru_cache on get_settings so test overrides take effect."""
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture(autouse=True)
def _clear_log_context():
    """Drop request/user ids bound by the middleware between tests."""
    yield
    clear_context()


# ------------------------------------------------------------------ #
# Constants for Test JWTs
# ------------------------------------------------------------------ #

TEST_JWT_SECRET = "dev-only-jwt-secret-not-for-production"
TEST_AUDIENCE = "consenthub-api"

CUSTOMER_SUB = "cust-alice"
OTHER_CUSTOMER_SUB = "cust-bob"
CSR_SUB = "csr-carol"
ADMIN_SUB = "admin-dave"

START = datetime(2026, 3, 2, 9, 0, tzinfo=UTC)


def make_token(
    sub: str,
    role: str = "customer",
    email: str = "test@example.com",
    name: str = "",
    *,
    secret: str = TEST_JWT_SECRET,
    audience: str = TEST_AUDIENCE,
    expires_in: int = 3600,
) -> str:
    """Create a test JWT token using HS256.

    Args:
        sub: Subject claim (the caller's user id)
        role: customer, csr or admin
        email: User email address
        name: Display name
    """
    now = int(datetime.now(UTC).timestamp())
    payload = {
        "sub": sub,
        "role": role,
        "email": email,
        "name": name,
        "aud": audience,
        "iat": now,
        "exp": now + expires_in,
        "jti": str(uuid.uuid4()),
    }
    return jwt.encode(payload, secret, algorithm="HS256")


def auth_header(sub: str, role: str = "customer", **kwargs: Any) -> dict[str, str]:
    return {"Authorization": f"Bearer {make_token(sub, role, **kwargs)}"}


def dsar_payload(**overrides: Any) -> dict[str, Any]:
    """A valid submission body (camelCase, as the frontend sends it)."""
    body: dict[str, Any] = {
        "requesterName": "Alice Perera",
        "requesterEmail": "alice@example.com",
        "requestType": "data_erasure",
        "subject": "Delete my data",
        "description": "Please delete all my data.",
    }
    body.update(overrides)
    return body


class FrozenClock:
    """Deterministic clock; call advance() to move time forward."""

    def __init__(self, start: datetime = START) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> datetime:
        self.now = self.now + timedelta(**delta)
        return self.now


# ------------------------------------------------------------------ #
# Settings & clock
# ------------------------------------------------------------------ #


@pytest.fixture
def fake_settings() -> Settings:
    """Test environment settings with safe defaults."""
    return Settings(
        environment=Environment.TEST,
        database_url="sqlite+aiosqlite:///:memory:",
        dev_jwt_secret=TEST_JWT_SECRET,
        oidc_issuer_url="http://localhost:8080/realms/test",
        debug=True,
        db_echo_sql=False,
        event_history_size=50,
        event_subscriber_queue_size=10,
    )


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


# ------------------------------------------------------------------ #
# Database Fixtures
# ------------------------------------------------------------------ #


@pytest.fixture
async def db_engine() -> AsyncGenerator[AsyncEngine, None]:
    """In-memory SQLite engine shared by every connection of one test."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    @event.listens_for(engine.sync_engine, "connect")
    def _enable_foreign_keys(dbapi_conn, connection_record):
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(db_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def event_bus(fake_settings: Settings) -> EventBus:
    return EventBus(
        history_size=fake_settings.event_history_size,
        queue_size=fake_settings.event_subscriber_queue_size,
    )


@pytest.fixture
def service(
    db_session: AsyncSession,
    fake_settings: Settings,
    event_bus: EventBus,
    clock: FrozenClock,
) -> DSARService:
    return DSARService(db_session, fake_settings, event_bus=event_bus, clock=clock)


# ------------------------------------------------------------------ #
# App Fixtures
# ------------------------------------------------------------------ #


@pytest.fixture
def test_app(
    fake_settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    clock: FrozenClock,
) -> FastAPI:
    """FastAPI app on the test database with a frozen clock.

    Each HTTP request gets its own session that commits on success and
    rolls back on error, mirroring get_db_session().
    """
    from consenthub.api.dsar import get_dsar_service
    from consenthub.main import create_app

    app = create_app(fake_settings)

    async def _test_db_session() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    def _test_service(
        request: Request,
        db: AsyncSession = Depends(get_db_session),
    ) -> DSARService:
        return DSARService(
            db,
            fake_settings,
            event_bus=request.app.state.event_bus,
            clock=clock,
        )

    app.dependency_overrides[get_db_session] = _test_db_session
    app.dependency_overrides[get_dsar_service] = _test_service
    return app


def _client(app: FastAPI, headers: dict[str, str] | None = None) -> httpx.AsyncClient:
    transport = httpx.ASGITransport(app=app)  # type: ignore[arg-type]
    return httpx.AsyncClient(
        transport=transport,
        base_url="http://testserver",
        headers=headers or {},
    )


@pytest.fixture
async def anon_client(test_app: FastAPI) -> AsyncGenerator[httpx.AsyncClient, None]:
    async with _client(test_app) as ac:
        yield ac


@pytest.fixture
async def customer_client(test_app: FastAPI) -> AsyncGenerator[httpx.AsyncClient, None]:
    """HTTP client authenticated as customer Alice."""
    headers = auth_header(CUSTOMER_SUB, "customer", email="alice@example.com", name="Alice Perera")
    async with _client(test_app, headers) as ac:
        yield ac


@pytest.fixture
async def other_customer_client(test_app: FastAPI) -> AsyncGenerator[httpx.AsyncClient, None]:
    """HTTP client authenticated as a different customer (Bob)."""
    headers = auth_header(OTHER_CUSTOMER_SUB, "customer", email="bob@example.com", name="Bob Silva")
    async with _client(test_app, headers) as ac:
        yield ac


@pytest.fixture
async def csr_client(test_app: FastAPI) -> AsyncGenerator[httpx.AsyncClient, None]:
    headers = auth_header(CSR_SUB, "csr", email="carol@consenthub.example", name="Carol CSR")
    async with _client(test_app, headers) as ac:
        yield ac


@pytest.fixture
async def admin_client(test_app: FastAPI) -> AsyncGenerator[httpx.AsyncClient, None]:
    headers = auth_header(ADMIN_SUB, "admin", email="dave@consenthub.example", name="Dave Admin")
    async with _client(test_app, headers) as ac:
        yield ac
