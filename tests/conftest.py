"""
tests/conftest.py -- Shared test fixtures for tokenward.

This module provides:
  - FakeClock / clock: deterministic time source for token expiry tests
  - store: CredentialStore on a per-test SQLite file, with an options tracer
  - make_service / service: AuthService wired with a bcrypt cost of 4
  - api_client: TestClient whose lifespan wires an isolated store into app.state

Per-test SQLite files under tmp_path (not :memory:) are used because store
calls run in worker threads; every thread must see the same database.

The environment must be set before any api/ or core/ import so get_settings()
auto-generates SECRET_KEY in dev mode, accepts TestClient's "testserver" Host
header, and does not rate limit the many logins the suite performs.
"""

from __future__ import annotations

import os
from collections.abc import Generator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

# CRITICAL: Set these before any auth/core/api import.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("ALLOWED_HOSTS", '["*"]')
os.environ.setdefault("LOGIN_RATE_LIMIT", "1000/minute")
os.environ.setdefault("SALT_WORK_FACTOR", "4")

import pytest
from fastapi.testclient import TestClient

from api.main import app, configure_services
from auth.models import PrincipalPolicy, PrincipalRegistry
from auth.passwords import PasswordHasher
from auth.service import AuthService
from auth.store import CredentialStore
from auth.tokens import TokenManager
from core.config import get_settings


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def trace() -> list[tuple[str, dict]]:
    """Every (operation, options) pair the store was called with, in order."""
    return []


@pytest.fixture
def store(tmp_path, trace) -> Generator[CredentialStore, None, None]:
    s = CredentialStore(f"sqlite:///{tmp_path / 'tokenward-test.db'}", tracer=lambda op, opts: trace.append((op, opts)))
    yield s
    s.close()


@pytest.fixture
def make_service(store, clock):
    """Factory: build an AuthService whose policy overrides the given fields."""

    def _make(**policy_fields) -> AuthService:
        policy_fields.setdefault("password_hasher", PasswordHasher(rounds=4))
        policy = PrincipalPolicy(**policy_fields)
        tokens = TokenManager(store, PrincipalRegistry(policy), clock=clock)
        return AuthService(store, tokens, policy)

    return _make


@pytest.fixture
def service(make_service) -> AuthService:
    return make_service()


# ---------------------------------------------------------------------------
# REST fixtures
# ---------------------------------------------------------------------------


def _patch_lifespan(store: CredentialStore):
    """Return an async context manager that replaces the real lifespan.

    Wires the test store into app.state through the same configure_services()
    the real lifespan uses, so routes see an isolated database.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        configure_services(app, store, get_settings())
        yield

    return test_lifespan


@pytest.fixture
def api_client(tmp_path) -> Generator[TestClient, None, None]:
    """Yield a TestClient hitting real route handlers against an isolated store."""
    api_store = CredentialStore(f"sqlite:///{tmp_path / 'tokenward-api.db'}")
    app.router.lifespan_context = _patch_lifespan(api_store)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client

    api_store.close()
