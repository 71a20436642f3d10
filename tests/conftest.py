"""
tests/conftest.py -- Shared test fixtures for Immobilier API tests.

This module provides:
  - make_settings(): an explicit Settings object for tests (fast bcrypt,
    fixed JWT secrets, no .env lookup)
  - _make_test_stores(): isolated in-memory DBs for users and catalog
  - _patch_lifespan(): wires test stores and mocked GED/mail into app.state
  - api_env: module-scoped ApiEnv (client + stores + mocks) for route tests
  - make_user() / auth_headers(): create accounts and Bearer headers

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares
one in-memory instance across all connections in the same process.

The GED client and the mailer are MagicMocks: no test makes a network call.
BackgroundTasks run inside TestClient before the call returns, so tests can
assert on the mailer mock right after the request.
"""

from __future__ import annotations

import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import create_app
from auth.models import Role, User
from auth.store import UserStore
from auth.tokens import TokenIssuer, hash_password
from catalog.store import CatalogStore
from core.config import Settings
from ged.client import BatchUploadResult, GedClient
from mail.mailer import Mailer

ACCESS_SECRET = "test-access-secret-0123456789abcdef0123"
REFRESH_SECRET = "test-refresh-secret-0123456789abcdef012"
PASSWORD = "secret123"

# Chrome 120 on Windows 10, used wherever a test needs a device label.
DESKTOP_UA = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)


def make_settings(**overrides) -> Settings:
    values = {
        "_env_file": None,
        "debug": True,
        "environment": "test",
        "jwt_access_secret": ACCESS_SECRET,
        "jwt_refresh_secret": REFRESH_SECRET,
        "bcrypt_rounds": 4,
        "database_url": "sqlite://",
        "frontend_url": "http://frontend.test",
    }
    values.update(overrides)
    return Settings(**values)


def db_url(name: str) -> str:
    return f"sqlite:///file:test_{name}?mode=memory&cache=shared&uri=true"


# ---------------------------------------------------------------------------
# Store helpers
# ---------------------------------------------------------------------------


def _make_test_stores(db_suffix: str) -> tuple[UserStore, CatalogStore]:
    """Create isolated named shared-memory SQLite stores for test isolation.

    Args:
        db_suffix: Unique string appended to the DB name so test modules
                   don't share state (e.g. 'auth', 'listings').
    """
    url = db_url(db_suffix)
    return UserStore(db_url=url), CatalogStore(db_url=url)


def make_user(
    store: UserStore,
    *,
    email: str | None = None,
    name: str = "Test User",
    role: Role = Role.USER,
    active: bool = True,
    password: str = PASSWORD,
) -> User:
    """Insert an account (active by default) and return it as stored."""
    user = User(
        identity_key=str(uuid.uuid4()),
        name=name,
        email=email or f"user-{uuid.uuid4().hex[:8]}@example.com",
        role=role,
        hashed_password=hash_password(password, 4),
        is_active=active,
        email_verified=active,
    )
    return store.get_by_id(store.create_user(user))


def auth_headers(issuer: TokenIssuer, user: User) -> dict[str, str]:
    return {"Authorization": f"Bearer {issuer.issue_access_token(user.identity_key).token}"}


def _patch_lifespan(user_store: UserStore, catalog: CatalogStore, issuer: TokenIssuer, ged, mailer):
    """Return an async context manager that replaces the real lifespan.

    Wires pre-created test stores into app.state so TestClient routes see
    isolated test DBs, and mocks the GED client and mailer to prevent real
    network calls.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.user_store = user_store
        app.state.catalog_store = catalog
        app.state.token_issuer = issuer
        app.state.ged = ged
        app.state.mailer = mailer
        yield

    return test_lifespan


# ---------------------------------------------------------------------------
# Module-scoped fixture -- one app + TestClient per test module
# ---------------------------------------------------------------------------


@dataclass
class ApiEnv:
    client: TestClient
    settings: Settings
    users: UserStore
    catalog: CatalogStore
    issuer: TokenIssuer
    ged: MagicMock
    mailer: MagicMock

    def reset_mocks(self) -> None:
        self.ged.reset_mock(return_value=True, side_effect=True)
        self.ged.upload_files.return_value = BatchUploadResult()
        self.ged.delete_file.return_value = True
        self.mailer.reset_mock(return_value=True, side_effect=True)


@pytest.fixture(scope="module")
def api_env(request) -> Generator[ApiEnv, None, None]:
    """Yield an ApiEnv wired to the real app with a patched lifespan.

    Rate limiting is disabled; tests that exercise it turn it back on
    explicitly and restore it.
    """
    suffix = request.module.__name__.rsplit(".", 1)[-1]
    settings = make_settings(database_url=db_url(suffix))
    users, catalog = _make_test_stores(suffix)
    issuer = TokenIssuer(settings)
    ged = MagicMock(spec=GedClient)
    mailer = MagicMock(spec=Mailer)

    app = create_app(settings)
    app.router.lifespan_context = _patch_lifespan(users, catalog, issuer, ged, mailer)
    limiter.enabled = False

    with TestClient(app, raise_server_exceptions=True) as client:
        env = ApiEnv(client, settings, users, catalog, issuer, ged, mailer)
        env.reset_mocks()
        yield env

    users.close()
    catalog.close()


@pytest.fixture
def env(api_env: ApiEnv) -> ApiEnv:
    """Per-test view of api_env with fresh mocks and no cookies."""
    api_env.reset_mocks()
    api_env.client.cookies.clear()
    return api_env
