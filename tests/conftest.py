"""
tests/conftest.py -- Shared test fixtures for Thalexa tests.

This module provides:
  - user_store: an isolated in-memory UserStore per test
  - _patch_lifespan(): wires test stores into app.state, bypassing real startup
  - web_client: TestClient with follow_redirects=False for route tests
  - make_google_client: factory for a mocked authlib Google client

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs sync route handlers in a thread pool. Plain :memory:
DBs are per-connection and would present a blank schema to each worker thread.

The DEBUG and GOOGLE_* env vars must be set before any app import so
get_settings() can build a valid Settings without a .env file.
"""

from __future__ import annotations

import asyncio
import os
import uuid
from collections.abc import Callable, Generator
from contextlib import asynccontextmanager
from typing import Optional
from unittest.mock import AsyncMock, MagicMock

# CRITICAL: Set these before any auth/core/api import.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("GOOGLE_CLIENT_ID", "test-client-id.apps.googleusercontent.com")
os.environ.setdefault("GOOGLE_CLIENT_SECRET", "test-client-secret")

import pytest
from fastapi.responses import RedirectResponse
from fastapi.testclient import TestClient

from asgi import app
from auth.models import Profile
from auth.resolver import IdentityResolver
from auth.sessions import InMemorySessionStore, SessionCodec
from auth.store import UserStore
from core.limiter import limiter


def _memory_db_url() -> str:
    return f"sqlite:///file:test_auth_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"


# ---------------------------------------------------------------------------
# Store fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def ana() -> Profile:
    return Profile(external_id="g-123", email="a@x.com", display_name="Ana", avatar_url="http://img.example/a.png")


@pytest.fixture
def user_store() -> Generator[UserStore, None, None]:
    store = UserStore(_memory_db_url())
    yield store
    store.close()


@pytest.fixture
def codec(user_store: UserStore) -> SessionCodec:
    return SessionCodec(InMemorySessionStore(), user_store, ttl_seconds=3600)


# ---------------------------------------------------------------------------
# OAuth client mock
# ---------------------------------------------------------------------------


@pytest.fixture
def make_google_client() -> Callable[..., MagicMock]:
    """Return a factory for a mocked authlib client.

    userinfo:       claims placed under token["userinfo"] on a successful exchange.
    exchange_error: exception raised by authorize_access_token instead.
    """

    def _make(userinfo: Optional[dict] = None, exchange_error: Optional[Exception] = None) -> MagicMock:
        client = MagicMock()
        if exchange_error is not None:
            client.authorize_access_token = AsyncMock(side_effect=exchange_error)
        else:
            client.authorize_access_token = AsyncMock(return_value={"access_token": "at", "userinfo": userinfo})
        client.userinfo = AsyncMock(return_value=userinfo)
        client.authorize_redirect = AsyncMock(
            return_value=RedirectResponse("https://accounts.google.com/o/oauth2/v2/auth?state=xyz", status_code=302)
        )
        return client

    return _make


# ---------------------------------------------------------------------------
# App fixtures
# ---------------------------------------------------------------------------


def _patch_lifespan(user_store: UserStore):
    """Return an async context manager that replaces the real lifespan.

    Wires the test store into app.state and mocks the OAuth registry so no
    test reaches Google. The purge_task is a long-sleeping coroutine (a real
    asyncio.Task is required; MagicMock would fail on .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.user_store = user_store
        app.state.sessions = SessionCodec(InMemorySessionStore(), user_store, ttl_seconds=3600)
        app.state.resolver = IdentityResolver(user_store)
        app.state.oauth = MagicMock()
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


@pytest.fixture
def web_client(user_store: UserStore) -> Generator[TestClient, None, None]:
    """Yield a TestClient over the full app with isolated stores.

    follow_redirects=False is essential: tests assert on redirect locations,
    which are invisible once the client follows the redirect.
    """
    app.router.lifespan_context = _patch_lifespan(user_store)
    limiter.reset()
    with TestClient(app, follow_redirects=False, raise_server_exceptions=True) as client:
        yield client
