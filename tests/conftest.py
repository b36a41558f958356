"""
tests/conftest.py -- Shared test fixtures for hubgate tests.

This module provides:
  - FakeUpstream: scripted stand-in for core.upstream.GitHubClient (same
    interface, records every call, never touches the network)
  - ok() / failure(): helpers for scripting upstream results
  - _patch_lifespan(): wires a fresh CacheStore, Gateway and CredentialGate
    around a FakeUpstream into app.state, bypassing real startup
  - client: TestClient on the real app (routing, dependencies, handlers)
  - logged_in: the same client after a successful POST /api/login

ENVIRONMENT and SECRET_COOKIE_PASSWORD must be set before any api/auth/core
import: api.main loads settings at import time and refuses to start without
a key outside development.
"""

from __future__ import annotations

import os
import threading
from collections.abc import Generator
from contextlib import asynccontextmanager
from typing import Any, Optional, Union

# CRITICAL: set before importing the app so get_settings() sees a test config.
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("SECRET_COOKIE_PASSWORD", "test-cookie-password-0123456789abcdef")

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import app
from auth.gate import CredentialGate
from auth.session import SessionStore
from cache.store import CacheStore
from core.config import get_settings
from core.errors import FailureKind, UpstreamFailure, UpstreamFailureError
from core.gateway import Gateway
from core.models import Identity, UpstreamResponse

TEST_TOKEN = "ghp_test_token"
TEST_LOGIN = "octocat"

Scripted = Union[UpstreamResponse, UpstreamFailure]


def ok(data: Any, etag: Optional[str] = None, last_modified: Optional[str] = None, status: int = 200) -> UpstreamResponse:
    return UpstreamResponse(status=status, data=data, etag=etag, last_modified=last_modified)


def failure(status: Optional[int], kind: Optional[FailureKind] = None) -> UpstreamFailure:
    if kind is not None:
        return UpstreamFailure(kind, status)
    return UpstreamFailure.from_status(status)


# ---------------------------------------------------------------------------
# Fake upstream
# ---------------------------------------------------------------------------


class FakeUpstream:
    """In-memory GitHub double.

    Credentials registered with add_user() are accepted; any other credential
    gets a 401 on every call, including whoami(). Results are scripted per
    (method, path): each call consumes the next scripted result and the last
    one repeats. An unscripted path answers 404.

    Set `gate` to a threading.Event to hold every resource call until the
    test releases it.
    """

    def __init__(self) -> None:
        self.users: dict[str, Identity] = {}
        self.calls: list[dict[str, Any]] = []
        self.gate: Optional[threading.Event] = None
        self.down = False
        self._scripts: dict[tuple[str, str], list[Scripted]] = {}
        self._lock = threading.Lock()

    def add_user(self, credential: str, login: str, **fields: Any) -> Identity:
        identity = Identity(login=login, **fields)
        self.users[credential] = identity
        return identity

    def revoke(self, credential: str) -> None:
        self.users.pop(credential, None)

    def script(self, method: str, path: str, *results: Scripted) -> None:
        self._scripts[(method, path)] = list(results)

    def calls_to(self, path: str, method: str = "GET") -> list[dict[str, Any]]:
        return [c for c in self.calls if c["path"] == path and c["method"] == method]

    def _record(self, **call: Any) -> None:
        with self._lock:
            self.calls.append(call)

    def _check(self, credential: str, path: str) -> None:
        if self.down:
            raise UpstreamFailureError(UpstreamFailure(FailureKind.UPSTREAM_ERROR, 503), path)
        if credential not in self.users:
            raise UpstreamFailureError(UpstreamFailure.from_status(401), path)

    def whoami(self, credential: str, timeout: Optional[float] = None) -> Identity:
        self._record(method="GET", path="/user", params=None, json=None, headers=None)
        self._check(credential, "/user")
        return self.users[credential]

    def authenticated_request(
        self,
        credential: str,
        method: str,
        path: str,
        params: Optional[dict[str, Any]] = None,
        *,
        json: Any = None,
        headers: Optional[dict[str, str]] = None,
        timeout: Optional[float] = None,
    ) -> UpstreamResponse:
        self._record(method=method, path=path, params=params, json=json, headers=headers)
        if self.gate is not None:
            self.gate.wait(timeout=5)
        self._check(credential, path)
        with self._lock:
            queue = self._scripts.get((method, path))
            if not queue:
                result: Scripted = UpstreamFailure.from_status(404)
            elif len(queue) > 1:
                result = queue.pop(0)
            else:
                result = queue[0]
        if isinstance(result, UpstreamFailure):
            raise UpstreamFailureError(result, path)
        return result


# ---------------------------------------------------------------------------
# App wiring
# ---------------------------------------------------------------------------


def _patch_lifespan(upstream: FakeUpstream, store: CacheStore):
    """Return an async context manager that replaces the real lifespan.

    Same collaborators as production, except the upstream client.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        settings = get_settings()
        session_store = SessionStore(settings)
        gateway = Gateway(store, upstream, flight_wait_timeout=2.0, refresh_workers=2)
        app.state.session_store = session_store
        app.state.upstream = upstream
        app.state.cache = store
        app.state.gateway = gateway
        app.state.gate = CredentialGate(session_store, upstream)
        yield
        gateway.shutdown()

    return test_lifespan


@pytest.fixture
def upstream() -> FakeUpstream:
    fake = FakeUpstream()
    fake.add_user(TEST_TOKEN, TEST_LOGIN, id=1, name="The Octocat", avatar_url="https://avatars.example/1")
    return fake


@pytest.fixture
def store() -> CacheStore:
    return CacheStore(stripes=8)


@pytest.fixture
def client(upstream: FakeUpstream, store: CacheStore) -> Generator[TestClient, None, None]:
    """TestClient on the real app with a fresh cache and a FakeUpstream."""
    limiter.reset()
    app.router.lifespan_context = _patch_lifespan(upstream, store)
    with TestClient(app, raise_server_exceptions=True) as c:
        yield c


@pytest.fixture
def logged_in(client: TestClient) -> TestClient:
    """The client after POST /api/login with TEST_TOKEN; the cookie jar holds the session."""
    resp = client.post("/api/login", json={"token": TEST_TOKEN})
    assert resp.status_code == 200, resp.text
    return client
