"""
tests/conftest.py -- Shared fixtures for the credential service tests.

This module provides:
  - Service fixtures (store, ledger, tokens, passkeys, two_factor, sso,
    orchestrator, accounts) over in-memory SQLite, wired with a FrozenClock
  - api: TestClient over the real FastAPI app with a patched lifespan

Test doubles (FrozenClock, FakeAuthenticator, FakeIdentityProvider) live in
tests/helpers.py.

Design: Named shared-memory SQLite URIs (not plain :memory:) are required for
the TestClient fixture because route handlers run in a thread pool. Plain
:memory: DBs are per-connection and would present a blank schema to each
worker thread. Unit tests run on one thread and use plain :memory:.

The env vars must be set before any core/auth import so get_settings() sees
them: DEBUG lets it auto-generate SECRET_KEY instead of raising ValueError.
"""

from __future__ import annotations

import asyncio
import os
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass

# CRITICAL: set before any auth/core import so get_settings() sees them.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("LOGIN_RATE_LIMIT", "1000/minute")
os.environ.setdefault("ALLOWED_HOSTS", '["testserver", "localhost"]')

import pytest
from fastapi.testclient import TestClient

from api.main import app, wire_services
from auth.accounts import AccountService
from auth.ledger import TokenLedger
from auth.login import LoginOrchestrator
from auth.passkeys import PasskeyCeremonyEngine
from auth.sso import SSOBindingManager
from auth.store import CredentialStore
from auth.tokens import TokenService
from auth.twofactor import TwoFactorService
from core.config import Settings, get_settings
from tests.helpers import PASSWORD, FakeAuthenticator, FakeIdentityProvider, FrozenClock, make_test_settings

# ---------------------------------------------------------------------------
# Service fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings() -> Settings:
    return make_test_settings()


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def store() -> Generator[CredentialStore, None, None]:
    s = CredentialStore("sqlite:///:memory:")
    yield s
    s.close()


@pytest.fixture
def ledger() -> Generator[TokenLedger, None, None]:
    led = TokenLedger("sqlite:///:memory:")
    yield led
    led.close()


@pytest.fixture
def tokens(ledger: TokenLedger, settings: Settings, clock: FrozenClock) -> TokenService:
    return TokenService(ledger, settings, clock)


@pytest.fixture
def passkeys(store: CredentialStore, settings: Settings, clock: FrozenClock) -> PasskeyCeremonyEngine:
    return PasskeyCeremonyEngine(store, settings, clock)


@pytest.fixture
def two_factor(
    store: CredentialStore, tokens: TokenService, settings: Settings, clock: FrozenClock
) -> TwoFactorService:
    return TwoFactorService(store, tokens, settings, clock)


@pytest.fixture
def idp() -> FakeIdentityProvider:
    return FakeIdentityProvider()


@pytest.fixture
def sso(store: CredentialStore, idp: FakeIdentityProvider, settings: Settings) -> SSOBindingManager:
    return SSOBindingManager(store, {idp.name: idp}, settings)


@pytest.fixture
def orchestrator(
    store: CredentialStore,
    tokens: TokenService,
    sso: SSOBindingManager,
    passkeys: PasskeyCeremonyEngine,
    two_factor: TwoFactorService,
    settings: Settings,
) -> LoginOrchestrator:
    return LoginOrchestrator(store, tokens, sso, passkeys, two_factor, settings)


@pytest.fixture
def accounts(store: CredentialStore, settings: Settings) -> AccountService:
    return AccountService(store, settings)


@pytest.fixture
def authenticator() -> FakeAuthenticator:
    return FakeAuthenticator()


# ---------------------------------------------------------------------------
# API fixture -- one TestClient per test module for speed
# ---------------------------------------------------------------------------


@dataclass
class ApiContext:
    client: TestClient
    store: CredentialStore
    ledger: TokenLedger
    idp: FakeIdentityProvider

    def login(self, username: str, password: str = PASSWORD) -> dict:
        resp = self.client.post("/api/v1/auth/login", json={"username": username, "password": password})
        assert resp.status_code == 200, resp.text
        return resp.json()

    @staticmethod
    def bearer(access_token: str) -> dict:
        return {"Authorization": f"Bearer {access_token}"}


def _patch_lifespan(store: CredentialStore, ledger: TokenLedger, idp: FakeIdentityProvider):
    """Return an async context manager that replaces the real lifespan.

    Wires the test stores and the fake provider through the same
    wire_services() the real lifespan uses. The purge task is a long sleep so
    shutdown still has a real asyncio.Task to cancel.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        wire_services(app, store, ledger, get_settings(), {idp.name: idp})
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


@pytest.fixture(scope="module")
def api(request) -> Generator[ApiContext, None, None]:
    """Yield an ApiContext backed by isolated shared-memory databases.

    The DB name includes the test module name so modules never share state.
    """
    suffix = request.module.__name__.rsplit(".", 1)[-1]
    url = f"sqlite:///file:toolcraft_{suffix}?mode=memory&cache=shared&uri=true"
    store = CredentialStore(url)
    ledger = TokenLedger(url)
    idp = FakeIdentityProvider()

    app.router.lifespan_context = _patch_lifespan(store, ledger, idp)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield ApiContext(client=client, store=store, ledger=ledger, idp=idp)

    store.close()
    ledger.close()
