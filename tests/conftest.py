"""
tests/conftest.py -- Shared test fixtures for SponsorLink identity tests.

This module provides:
  - store: isolated in-memory AccountStore per test
  - FakeClock / FakeProvider: deterministic time and a network-free OAuth provider
  - _patch_lifespan(): wires test objects into app.state, bypassing real startup
  - api_client: TestClient for the JSON API
  - web_client: TestClient with follow_redirects=False for browser routes

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares
one in-memory instance across all connections in the same process. A uuid in
the name keeps every test on its own database.

The DEBUG env var must be set before any auth/core import so get_settings()
auto-generates SECRET_KEY in dev mode rather than raising ValueError.
"""

from __future__ import annotations

import asyncio
import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from urllib.parse import quote

# CRITICAL: Set DEBUG before any auth/core import so get_settings() can
# auto-generate SECRET_KEY in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from asgi import app
from auth.credentials import hash_password
from auth.errors import ProviderExchangeFailed
from auth.models import SocialProfile
from auth.oauth import OAuthFlowCoordinator
from auth.sessions import SessionManager
from auth.store import AccountStore
from core.config import get_settings

TEST_SECRET = "test-secret-key-that-is-long-enough-0123456789"


# ---------------------------------------------------------------------------
# Test doubles
# ---------------------------------------------------------------------------


class FakeClock:
    """Manually advanced replacement for time.time."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeProvider:
    """OAuth provider double. Returns `profile`, raises `error`, or stalls for `delay` seconds."""

    def __init__(
        self,
        name: str,
        profile: SocialProfile | None = None,
        error: Exception | None = None,
        delay: float = 0.0,
    ) -> None:
        self.name = name
        self.profile = profile
        self.error = error
        self.delay = delay
        self.exchanged_codes: list[str] = []
        self.last_nonce: str | None = None

    async def authorization_url(self, redirect_uri: str, state: str, nonce: str) -> str:
        return f"https://{self.name}.example/authorize?state={state}&redirect_uri={quote(redirect_uri, safe='')}"

    async def exchange(self, code: str, redirect_uri: str, nonce: str | None = None) -> SocialProfile:
        self.exchanged_codes.append(code)
        self.last_nonce = nonce
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        if self.profile is None:
            raise ProviderExchangeFailed("no profile configured")
        return self.profile


def google_profile(provider_id: str = "g-123", email: str = "ann@example.com", name: str = "Ann") -> SocialProfile:
    return SocialProfile(provider_id=provider_id, email=email, name=name, profile_data={"locale": "en"})


# ---------------------------------------------------------------------------
# Store helpers
# ---------------------------------------------------------------------------


def _make_test_store() -> AccountStore:
    return AccountStore(f"sqlite:///file:test_auth_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true")


@pytest.fixture
def store() -> Generator[AccountStore, None, None]:
    s = _make_test_store()
    yield s
    s.close()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sessions(store: AccountStore, clock: FakeClock) -> SessionManager:
    return SessionManager(store, TEST_SECRET, ttl_seconds=3600, clock=clock)


@pytest.fixture
def password_account(store: AccountStore):
    """A sponsor account with password 'correct-horse'."""
    return store.create_account(
        "ann@example.com",
        role="sponsor",
        name="Ann",
        hashed_password=hash_password("correct-horse"),
    )


# ---------------------------------------------------------------------------
# App fixtures
# ---------------------------------------------------------------------------


def _patch_lifespan(store: AccountStore, providers: dict[str, FakeProvider]):
    """Return an async context manager that replaces the real lifespan.

    Wires the test store and fake providers into app.state so TestClient
    routes never touch the real database or the network.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        settings = get_settings()
        app.state.account_store = store
        app.state.sessions = SessionManager(store, settings.secret_key, settings.session_ttl_seconds)
        app.state.oauth = OAuthFlowCoordinator(store, providers, timeout_seconds=0.5)
        yield

    return test_lifespan


@pytest.fixture
def providers() -> dict[str, FakeProvider]:
    return {
        "google": FakeProvider("google", profile=google_profile()),
        "apple": FakeProvider("apple", profile=SocialProfile(provider_id="a-999", email="bob@example.com")),
    }


@pytest.fixture
def api_client(store: AccountStore, providers) -> Generator[tuple[TestClient, AccountStore], None, None]:
    """Yield (client, store) for API integration tests.

    Rate limiting is switched off; the shared in-memory counter would
    otherwise leak between tests.
    """
    limiter.enabled = False
    app.router.lifespan_context = _patch_lifespan(store, providers)
    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, store
    limiter.enabled = True


@pytest.fixture
def web_client(store: AccountStore, providers) -> Generator[tuple[TestClient, AccountStore, dict], None, None]:
    """Yield (client, store, providers) for browser route tests.

    follow_redirects=False is essential: we assert on redirect *locations*,
    which are invisible once the client follows the redirect.
    """
    limiter.enabled = False
    app.router.lifespan_context = _patch_lifespan(store, providers)
    with TestClient(app, follow_redirects=False, raise_server_exceptions=True) as client:
        yield client, store, providers
    limiter.enabled = True
