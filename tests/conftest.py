"""
tests/conftest.py -- Shared fixtures for authcore unit and integration tests.

This module provides:
  - make_settings(): Settings with an explicit strong secret, no .env file
  - engine / credential_store / revocations: stores on a per-test SQLite file
  - credential_id: one active credential whose password is KNOWN_PASSWORD
  - api_client: TestClient over the real app with a patched lifespan
  - csrf_headers: fetches a CSRF pair through the API and returns the header

Design: every test gets its own SQLite *file* under tmp_path. Plain :memory:
gives each pooled connection a blank database, and shared-cache memory
databases return "database table is locked" immediately instead of honouring
the busy timeout, which breaks the concurrent lockout tests.

ALLOWED_HOSTS and LOGIN_RATE_LIMIT must be set before api.main is imported:
the middleware stack and the limiter read get_settings() at import time.
"""

from __future__ import annotations

import asyncio
import os
from collections.abc import Callable, Generator
from contextlib import asynccontextmanager
from pathlib import Path

# CRITICAL: set before any api/ import so the cached Settings accept the
# TestClient host and never rate-limit the login tests.
os.environ.setdefault("ALLOWED_HOSTS", '["testserver", "localhost"]')
os.environ.setdefault("LOGIN_RATE_LIMIT", "1000/minute")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.engine import Engine

from api.main import app, build_components
from auth.models import Credential
from auth.passwords import hash_password
from auth.revocation import RevocationStore
from auth.store import CredentialStore, create_store_engine
from core.config import Settings

TEST_SECRET = "k7R2vX9qLm4TzP8wNc3YbH6sJd1FgA5e"
ADMIN_KEY = "adm1n-Key-for-tests-9Qz"
KNOWN_USERNAME = "coach"
KNOWN_PASSWORD = "Str0ng!Passw0rd"
# bcrypt is deliberately slow; hash once per session.
KNOWN_HASH = hash_password(KNOWN_PASSWORD)
TOKEN_TTL = 7 * 24 * 60 * 60


def make_settings(tmp_path: Path, **overrides) -> Settings:
    values = {
        "secret_key": TEST_SECRET,
        "database_url": f"sqlite:///{tmp_path / 'auth.db'}",
        "admin_api_key": ADMIN_KEY,
        "environment": "development",
        "_env_file": None,
    }
    values.update(overrides)
    return Settings(**values)


# ---------------------------------------------------------------------------
# Store fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def engine(tmp_path: Path) -> Generator[Engine, None, None]:
    eng = create_store_engine(f"sqlite:///{tmp_path / 'auth.db'}", timeout=10.0)
    yield eng
    eng.dispose()


@pytest.fixture
def credential_store(engine: Engine) -> CredentialStore:
    return CredentialStore(engine)


@pytest.fixture
def revocations(engine: Engine) -> RevocationStore:
    return RevocationStore(engine, token_ttl_seconds=TOKEN_TTL)


@pytest.fixture
def credential_id(credential_store: CredentialStore) -> int:
    return credential_store.create_credential(Credential(username=KNOWN_USERNAME, password_hash=KNOWN_HASH))


# ---------------------------------------------------------------------------
# API fixtures
# ---------------------------------------------------------------------------


def _patch_lifespan(settings: Settings):
    """Return an async context manager that replaces the real lifespan.

    Builds the real components from test settings. The purge_task is a
    long-sleeping coroutine so shutdown can cancel it like the real one.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        build_components(app, settings)
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()
        app.state.engine.dispose()

    return test_lifespan


@pytest.fixture
def api_client(tmp_path: Path) -> Generator[tuple[TestClient, int], None, None]:
    """Yield (client, credential_id) with one credential KNOWN_USERNAME / KNOWN_PASSWORD."""
    app.router.lifespan_context = _patch_lifespan(make_settings(tmp_path))
    with TestClient(app, raise_server_exceptions=True) as client:
        cid = app.state.credential_store.create_credential(
            Credential(username=KNOWN_USERNAME, password_hash=KNOWN_HASH)
        )
        yield client, cid


@pytest.fixture
def csrf_headers() -> Callable[[TestClient], dict[str, str]]:
    """Return a helper that fetches a CSRF pair; the cookie half stays in the client jar."""

    def _fetch(client: TestClient) -> dict[str, str]:
        resp = client.get("/api/v1/auth/csrf-token")
        assert resp.status_code == 200, resp.text
        body = resp.json()
        return {body["header_name"]: body["csrf_token"]}

    return _fetch
