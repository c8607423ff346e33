"""
tests/conftest.py -- Shared test fixtures for EstateHub auth tests.

This module provides:
  - FakeClock: a settable clock injected into stores and services
  - service fixtures (store, hasher, issuer, sessions, authenticator,
    reset_flow) wired the same way api/main.py wires them
  - api_client: TestClient over the real app with a patched lifespan

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares
one in-memory instance across all connections in the same process. Each
fixture gets a uuid-suffixed name so tests never see each other's rows.

The DEBUG env var must be set before any auth module import so get_settings()
auto-generates SECRET_KEY in dev mode rather than raising ValueError.
"""

from __future__ import annotations

import asyncio
import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from unittest.mock import MagicMock

# CRITICAL: Set DEBUG before any auth/core import so get_settings() can
# auto-generate SECRET_KEY in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import app, configure_services
from auth.models import User
from auth.passwords import PasswordHasher
from auth.reset import PasswordResetFlow
from auth.service import CredentialAuthenticator
from auth.sessions import SessionRotator
from auth.store import CredentialStore
from auth.tokens import TokenIssuer
from core.clock import utcnow
from core.config import get_settings

TEST_SECRET = "test-secret-key-that-is-at-least-32-characters"
STRONG_PASSWORD = "Secure1Pass"
OWNER_EMAIL = "owner@estatehub.test"


class FakeClock:
    """Clock that only moves when a test moves it.

    Starts at the real current time so access tokens it stamps are still
    accepted by python-jose, which checks `exp` against the wall clock.
    """

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or utcnow()

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


def memory_db_url(prefix: str) -> str:
    return f"sqlite:///file:{prefix}_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"


# ---------------------------------------------------------------------------
# Service fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(clock: FakeClock) -> Generator[CredentialStore, None, None]:
    credential_store = CredentialStore(memory_db_url("test_auth"), clock=clock)
    yield credential_store
    credential_store.close()


@pytest.fixture(scope="session")
def hasher() -> PasswordHasher:
    # 4 is the bcrypt minimum cost; production uses 12.
    return PasswordHasher(rounds=4)


@pytest.fixture
def issuer(clock: FakeClock) -> TokenIssuer:
    return TokenIssuer(TEST_SECRET, access_ttl="15m", refresh_ttl="30d", clock=clock)


@pytest.fixture
def sessions(store, issuer, clock) -> SessionRotator:
    return SessionRotator(store, issuer, max_sessions=3, clock=clock)


@pytest.fixture
def authenticator(store, hasher, issuer, sessions, clock) -> CredentialAuthenticator:
    return CredentialAuthenticator(store, hasher, issuer, sessions, owner_email=OWNER_EMAIL, clock=clock)


@pytest.fixture
def mailer() -> MagicMock:
    return MagicMock()


@pytest.fixture
def reset_flow(store, hasher, mailer, clock) -> PasswordResetFlow:
    return PasswordResetFlow(store, hasher, mailer, base_url="http://localhost:3000/", clock=clock)


@pytest.fixture
def alice(authenticator) -> User:
    return authenticator.register("alice", "alice@example.com", STRONG_PASSWORD)


# ---------------------------------------------------------------------------
# API fixtures
# ---------------------------------------------------------------------------


def _patch_lifespan(store: CredentialStore, mailer: MagicMock):
    """Return an async context manager that replaces the real lifespan.

    Wires the test store and a mock mailer into app.state through the same
    configure_services() the real lifespan uses, with a cheap bcrypt cost.
    Registering OWNER_EMAIL yields an admin account.

    The purge_task is a long-sleeping coroutine that keeps asyncio happy
    (a real asyncio.Task is required; MagicMock would fail on .cancel()).
    """
    settings = get_settings().model_copy(update={"bcrypt_rounds": 4, "owner_email": OWNER_EMAIL})

    @asynccontextmanager
    async def test_lifespan(app):
        configure_services(app, store, settings, mailer=mailer)
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


@pytest.fixture
def api_client() -> Generator[TestClient, None, None]:
    """TestClient over the real app with an isolated store and fresh rate limits.

    base_url uses localhost so TrustedHostMiddleware accepts the requests.
    The mock mailer is reachable as client.app.state.mailer.
    """
    store = CredentialStore(memory_db_url("test_api"))
    app.router.lifespan_context = _patch_lifespan(store, MagicMock())
    limiter.reset()

    with TestClient(app, base_url="http://localhost", raise_server_exceptions=True) as client:
        yield client

    store.close()


@pytest.fixture
def logged_in(api_client: TestClient) -> tuple[TestClient, dict]:
    """(client, login body) for alice@example.com, registered and logged in through the API.

    The refresh cookie is in the client's cookie jar.
    """
    client = api_client
    username, email = "alice", "alice@example.com"
    resp = client.post("/api/v1/auth/register", json={"username": username, "email": email, "password": STRONG_PASSWORD})
    assert resp.status_code == 201, resp.text
    resp = client.post("/api/v1/auth/login", json={"email": email, "password": STRONG_PASSWORD})
    assert resp.status_code == 200, resp.text
    return client, resp.json()
