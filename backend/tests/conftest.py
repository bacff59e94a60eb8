"""Pytest configuration and fixtures for backend tests.

Database Handling:
- Uses TEST_DATABASE_URL when set (e.g. a PostgreSQL instance)
- Otherwise runs against an in-memory SQLite database via aiosqlite
"""

import os
from collections.abc import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool, StaticPool

# Set test environment variables before importing app modules
_database_url = os.environ.get("TEST_DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ["DATABASE_URL"] = _database_url
os.environ["SESSION_SECRET_KEY"] = "test-session-secret-key-" + "0" * 32
os.environ["IDENTITY_ISSUER"] = "https://identity.test/sessiongate"
os.environ["IDENTITY_AUDIENCE"] = "sessiongate-test"
os.environ["LOG_FORMAT"] = "dev"

TEST_TOKENS = {
    "valid-token-alice": ("alice-uid", "alice@example.com"),
    "valid-token-bob": ("bob-uid", "bob@example.com"),
}


class FakeIdentityAuthority:
    """Identity authority that knows a fixed set of tokens."""

    def __init__(self, tokens: dict[str, tuple[str, str | None]] | None = None):
        self.tokens = dict(tokens or TEST_TOKENS)
        self.unavailable = False
        self.calls = 0

    async def verify_id_token(self, id_token: str):
        from sessiongate.services.identity import (
            IdentityAuthorityUnavailable,
            IdentityClaims,
            IdentityTokenRejected,
        )

        self.calls += 1
        if self.unavailable:
            raise IdentityAuthorityUnavailable("Identity authority keys unavailable")
        if id_token not in self.tokens:
            raise IdentityTokenRejected("Unknown identity token")
        subject, email = self.tokens[id_token]
        return IdentityClaims(subject=subject, email=email, issuer="https://identity.test")


# --- Circuit Breaker Reset Fixture ---


def _reset_circuit_breaker_state():
    """Reset all circuit breakers so an open circuit does not leak between tests."""
    from sessiongate.core.retry import CircuitBreaker, CircuitBreakerState

    for cb in CircuitBreaker._instances.values():
        cb._state = CircuitBreakerState()


@pytest.fixture(autouse=True)
def reset_circuit_breakers():
    _reset_circuit_breaker_state()
    yield
    _reset_circuit_breaker_state()


# --- Issue Rate Limiter Reset Fixture ---


def _reset_issue_rate_limiter_state():
    """Failed sign-in attempts are tracked per IP in a module-level dict."""
    from sessiongate.api.auth import _issue_attempts

    _issue_attempts.clear()


@pytest.fixture(autouse=True)
def reset_issue_rate_limiter():
    _reset_issue_rate_limiter_state()
    yield
    _reset_issue_rate_limiter_state()


# --- Database Fixtures ---


@pytest_asyncio.fixture(scope="function")
async def db_engine():
    """Create a database engine with all tables for one test."""
    from sessiongate.core.database import Base
    from sessiongate.models import SessionRecord  # noqa: F401

    if _database_url.startswith("sqlite"):
        engine = create_async_engine(
            _database_url,
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )
    else:
        engine = create_async_engine(_database_url, poolclass=NullPool)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture
def session_factory(db_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture(scope="function")
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create a database session for testing."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def identity() -> FakeIdentityAuthority:
    return FakeIdentityAuthority()


@pytest_asyncio.fixture(scope="function")
async def async_client(session_factory, identity) -> AsyncGenerator[AsyncClient, None]:
    """Async test client with database, identity authority and route gate overrides.

    Uses an https base URL so the Secure session cookie is sent back.
    """
    from sessiongate.core.database import get_db
    from sessiongate.main import app
    from sessiongate.services.identity import get_identity_authority
    from sessiongate.services.route_gate import LocalSessionVerifier, RouteGate

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except BaseException:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_identity_authority] = lambda: identity

    original_gate = app.state.route_gate
    app.state.route_gate = RouteGate.from_settings(LocalSessionVerifier(session_factory))

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="https://test") as client:
        yield client

    app.state.route_gate = original_gate
    app.dependency_overrides.clear()


# --- Client-side Fixtures ---


@pytest.fixture
def scheduler():
    from sessiongate.client.scheduler import VirtualScheduler

    return VirtualScheduler()


# --- Pytest Hooks for Auto-Marking ---


def pytest_collection_modifyitems(config, items):
    """Automatically mark tests based on their fixtures.

    - Tests using db_session, db_engine, or async_client are marked as 'integration'
    - Everything else is marked as 'unit'
    - Tests can override with explicit markers
    """
    integration_fixtures = {"db_session", "db_engine", "session_factory", "async_client"}

    for item in items:
        if any(mark.name in ("unit", "integration") for mark in item.iter_markers()):
            continue

        if hasattr(item, "fixturenames") and integration_fixtures & set(item.fixturenames):
            item.add_marker(pytest.mark.integration)
        else:
            item.add_marker(pytest.mark.unit)
