"""
tests/conftest.py -- Shared test fixtures for Keygate.

This module provides:
  - FakeRedis: dict-backed stand-in for redis.Redis with expiry support
  - store / cache: fresh in-memory AdminStore with schema, and a SessionCache
  - make_resolver / make_controller / make_manager: per-"request" factories
  - api_client: TestClient over the real app with isolated stores

Design: unit tests use plain sqlite:///:memory: (SQLAlchemy keeps one
connection per thread, so each test gets an empty DB). The API fixture needs
a named shared-memory URI instead because TestClient runs sync route
handlers in a thread pool; a plain :memory: DB would present a blank schema
to each worker thread.
"""

from __future__ import annotations

import time
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager

import pytest
from fastapi.testclient import TestClient
from redis.exceptions import ConnectionError as RedisConnectionError

from api.limiter import limiter
from api.main import app
from auth.controller import AuthController
from auth.manage import UserManager
from auth.resolver import SessionResolver
from auth.schema import ensure_schema
from auth.store import AdminStore
from cache.store import SessionCache
from core.config import Settings

# ---------------------------------------------------------------------------
# Redis stand-in
# ---------------------------------------------------------------------------


class FakeRedis:
    """In-process replacement for the handful of redis.Redis calls SessionCache makes.

    Keys expire on read once their deadline passes. Set `down = True` to make
    every call raise ConnectionError, as an unreachable server would.
    """

    def __init__(self) -> None:
        self.data: dict[str, bytes] = {}
        self.ttls: dict[str, int] = {}
        self._deadlines: dict[str, float] = {}
        self.down = False

    def _check(self) -> None:
        if self.down:
            raise RedisConnectionError("connection refused")

    def _alive(self, key: str) -> bool:
        deadline = self._deadlines.get(key)
        if deadline is not None and deadline <= time.monotonic():
            self.data.pop(key, None)
            self._deadlines.pop(key, None)
        return key in self.data

    def ping(self) -> bool:
        self._check()
        return True

    def get(self, key: str):
        self._check()
        return self.data[key] if self._alive(key) else None

    def set(self, key: str, value, ex=None) -> bool:
        self._check()
        self.data[key] = value.encode() if isinstance(value, str) else value
        if ex is not None:
            self.ttls[key] = ex
            self._deadlines[key] = time.monotonic() + ex
        return True

    def expire(self, key: str, seconds: int) -> bool:
        self._check()
        if not self._alive(key):
            return False
        self.ttls[key] = seconds
        self._deadlines[key] = time.monotonic() + seconds
        return True

    def delete(self, *keys: str) -> int:
        self._check()
        removed = 0
        for key in keys:
            if self.data.pop(key, None) is not None:
                removed += 1
            self._deadlines.pop(key, None)
        return removed

    def close(self) -> None:
        pass


# ---------------------------------------------------------------------------
# Library fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def store() -> Generator[AdminStore, None, None]:
    """In-memory AdminStore with installed tables and the seeded root account."""
    s = AdminStore("sqlite:///:memory:")
    ensure_schema(s, expiration=7200)
    yield s
    s.close()


@pytest.fixture
def redis_client() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def cache(redis_client: FakeRedis) -> SessionCache:
    return SessionCache(redis_client)


@pytest.fixture
def make_resolver(store: AdminStore, cache: SessionCache):
    """Factory for a fresh resolver, i.e. a new request, optionally carrying a token."""

    def _make(token: str | None = None, use_cache: bool = True, expiration: int = 7200) -> SessionResolver:
        resolver = SessionResolver(store, cache=cache if use_cache else None, expiration=expiration)
        resolver.set_token_value(token)
        return resolver

    return _make


@pytest.fixture
def make_controller(make_resolver):
    def _make(token: str | None = None, **kwargs) -> AuthController:
        return AuthController(make_resolver(token, **kwargs))

    return _make


@pytest.fixture
def make_manager(make_resolver):
    def _make(token: str | None = None, policy=None, **kwargs) -> UserManager:
        return UserManager(make_resolver(token, **kwargs), policy=policy)

    return _make


@pytest.fixture
def root_token(make_controller) -> str:
    """Token of a fresh root session."""
    result = make_controller().login({"uname": "root", "upass": "admin"})
    assert result.ok, result
    return result.data["token"]


# ---------------------------------------------------------------------------
# API fixtures
# ---------------------------------------------------------------------------


def _patch_lifespan(store: AdminStore, cache: SessionCache, settings: Settings):
    """Return an async context manager that replaces the real lifespan.

    Wires the test store, cache and settings into app.state so routes never
    touch the on-disk database or a real Redis.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.settings = settings
        app.state.store = store
        app.state.cache = cache
        app.state.policy = None
        yield

    return test_lifespan


@pytest.fixture
def api_client() -> Generator[TestClient, None, None]:
    """TestClient over the real app with an isolated shared-memory store.

    Each test gets its own database name so sessions and users never leak
    between tests. Rate-limit counters are cleared so earlier tests do not
    eat into the login budget.
    """
    url = f"sqlite:///file:test_auth_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"
    store = AdminStore(url)
    ensure_schema(store, expiration=7200)
    cache = SessionCache(FakeRedis())
    settings = Settings(
        _env_file=None,
        database_url=url,
        token_name="keygate",
        token_expire_seconds=7200,
        byway_enabled=True,
    )

    app.router.lifespan_context = _patch_lifespan(store, cache, settings)
    limiter.reset()
    with TestClient(app, raise_server_exceptions=True) as client:
        yield client
    store.close()
