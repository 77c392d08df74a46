"""
tests/conftest.py -- Shared test fixtures for TenantAuth.

This module provides:
  - FakeRedis: dictionary-backed stand-in for the redis.Redis calls
    SessionCache makes (get/set/delete/exists/ping), with a switch that makes
    every call raise redis.ConnectionError
  - settings / store / session_cache / tokens / service: isolated unit-level
    fixtures, one fresh in-memory database per test
  - api_client: TestClient with a patched lifespan for HTTP integration tests

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs sync route handlers in a thread pool. Plain :memory:
DBs are per-connection and would present a blank schema to each worker thread.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares
one in-memory instance across all connections in the same process.

DEBUG must be set before any core/auth/api import so get_settings() can
auto-generate SECRET_KEY instead of raising ValueError. The credential rate
limit is raised for the same reason: the suite logs in far more than ten
times a minute from one client address.
"""

from __future__ import annotations

import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from unittest.mock import MagicMock

# CRITICAL: set before any auth/core/api import.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("LOGIN_RATE_LIMIT", "1000/minute")

import pytest
import redis
from fastapi.testclient import TestClient

from api.main import app
from auth.mailer import MailSender
from auth.service import AuthService
from auth.store import AuthStore
from auth.tokens import TokenService
from cache.session import SessionCache
from core.config import Settings

TEST_SECRET = "test-secret-key-0123456789abcdef0123456789abcdef"
HANDOFF_SECRET = "test-handoff-secret"


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeRedis:
    """In-memory replacement for the redis client. Set .fail = True to simulate an outage."""

    def __init__(self) -> None:
        self.data: dict[str, str] = {}
        self.ttls: dict[str, int | None] = {}
        self.fail = False

    def _check(self) -> None:
        if self.fail:
            raise redis.ConnectionError("redis is down")

    def set(self, key: str, value: str, ex: int | None = None) -> bool:
        self._check()
        self.data[key] = value
        self.ttls[key] = ex
        return True

    def get(self, key: str) -> str | None:
        self._check()
        return self.data.get(key)

    def delete(self, *keys: str) -> int:
        self._check()
        removed = 0
        for key in keys:
            if self.data.pop(key, None) is not None:
                self.ttls.pop(key, None)
                removed += 1
        return removed

    def exists(self, *keys: str) -> int:
        self._check()
        return sum(1 for key in keys if key in self.data)

    def ping(self) -> bool:
        self._check()
        return True

    def close(self) -> None:
        pass


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------


def make_settings(**overrides) -> Settings:
    values = {
        "debug": True,
        "secret_key": TEST_SECRET,
        "smtp_host": "",
        "oauth_handoff_secret": HANDOFF_SECRET,
    }
    values.update(overrides)
    return Settings(**values)


def make_store(db_suffix: str | None = None) -> AuthStore:
    """Create an isolated named shared-memory SQLite store.

    Args:
        db_suffix: Unique string in the DB name so tests don't share state.
    """
    suffix = db_suffix or uuid.uuid4().hex
    return AuthStore(db_url=f"sqlite:///file:test_auth_{suffix}?mode=memory&cache=shared&uri=true")


# ---------------------------------------------------------------------------
# Unit-level fixtures -- fresh state per test
# ---------------------------------------------------------------------------


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def settings_factory():
    """Build Settings with overrides, e.g. settings_factory(jwt_audience="other")."""
    return make_settings


@pytest.fixture
def store() -> Generator[AuthStore, None, None]:
    s = make_store()
    yield s
    s.close()


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def session_cache(fake_redis: FakeRedis, settings: Settings) -> SessionCache:
    return SessionCache(fake_redis, ttl_seconds=settings.session_cache_ttl_seconds)


@pytest.fixture
def tokens(settings: Settings, store: AuthStore) -> TokenService:
    return TokenService(settings, store)


@pytest.fixture
def service(store: AuthStore, tokens: TokenService, settings: Settings, session_cache: SessionCache) -> AuthService:
    return AuthService(store, tokens, settings, session_cache)


# ---------------------------------------------------------------------------
# HTTP integration fixture
# ---------------------------------------------------------------------------


def _patch_lifespan(settings: Settings, store: AuthStore, session_cache: SessionCache, mailer):
    """Return an async context manager that replaces the real lifespan.

    Wires the test store, a FakeRedis-backed cache and a mock mailer into
    app.state so routes never touch a real database, Redis or SMTP server.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        tokens = TokenService(settings, store)
        app.state.settings = settings
        app.state.store = store
        app.state.tokens = tokens
        app.state.session_cache = session_cache
        app.state.mailer = mailer
        app.state.auth_service = AuthService(store, tokens, settings, session_cache)
        app.state.oauth = MagicMock()
        app.state.oauth_providers = [{"name": "github", "label": "GitHub"}]
        yield

    return test_lifespan


@pytest.fixture(scope="module")
def api_client() -> Generator[tuple[TestClient, MagicMock, FakeRedis], None, None]:
    """Yield (client, mailer_mock, fake_redis) for API integration tests.

    One TestClient per test module for speed. Tests use distinct tenant
    domains and emails so they do not depend on each other's state.
    """
    settings = make_settings()
    store = make_store()
    fake = FakeRedis()
    session_cache = SessionCache(fake, ttl_seconds=settings.session_cache_ttl_seconds)
    mailer = MagicMock(spec=MailSender)

    app.router.lifespan_context = _patch_lifespan(settings, store, session_cache, mailer)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, mailer, fake

    store.close()
