"""
tests/conftest.py -- Shared test fixtures for devicegate integration tests.

This module provides:
  - _make_test_stores(): creates isolated in-memory DBs for sessions, the
    access directory and verification codes
  - _patch_lifespan(): wires test stores into app.state, bypassing real startup
  - api_client: TestClient plus direct handles on the stores it serves from
  - make_user(): creates a user straight in the directory (verified by default)

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares
one in-memory instance across all connections in the same process.

The DEBUG env var must be set before any devicegate import so get_settings()
auto-generates the token secrets in dev mode rather than raising ValueError.
The rate-limit env vars are raised for the same reason: the limits are read
once, when api/routes/v1/auth.py is imported.
"""

from __future__ import annotations

import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import timedelta

# CRITICAL: Set these before any api/auth/core import.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("LOGIN_RATE_LIMIT", "1000/minute")
os.environ.setdefault("REFRESH_RATE_LIMIT", "1000/minute")

import pytest
from fastapi.testclient import TestClient

from api.main import app, build_orchestrator
from auth.directory import AccessDirectory
from auth.models import DEFAULT_ROLE, Role, UserRecord
from auth.passwords import BcryptPasswordHasher
from auth.service import AuthOrchestrator
from auth.store import SessionStore
from auth.tokens import TokenConfig, TokenIssuer
from auth.verification import VerificationCodeStore

DEVICE = "device-aaa"
PASSWORD = "correct-horse-battery"

# Minimum bcrypt cost keeps the suite fast; production uses 12.
HASHER = BcryptPasswordHasher(rounds=4)

TEST_TOKEN_CONFIG = TokenConfig(
    access_secret="a" * 64,
    refresh_secret="r" * 64,
    access_ttl=timedelta(minutes=15),
    refresh_ttl=timedelta(days=30),
)


class Outbox:
    """Verification dispatcher that records (email, code) instead of mailing it."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, str]] = []
        self.fail = False

    def __call__(self, email: str, code: str) -> None:
        if self.fail:
            raise ConnectionError("mail relay unavailable")
        self.sent.append((email, code))

    def last_code_for(self, email: str) -> str:
        return [code for to, code in self.sent if to == email][-1]


@dataclass
class Stores:
    sessions: SessionStore
    directory: AccessDirectory
    verification: VerificationCodeStore
    outbox: Outbox
    orchestrator: AuthOrchestrator
    tokens: TokenIssuer = field(default_factory=lambda: TokenIssuer(TEST_TOKEN_CONFIG))

    def close(self) -> None:
        self.sessions.close()
        self.directory.close()
        self.verification.close()


# ---------------------------------------------------------------------------
# Store helpers
# ---------------------------------------------------------------------------


def _make_test_stores(db_suffix: str) -> Stores:
    """Create isolated named shared-memory SQLite stores for test isolation.

    Args:
        db_suffix: Unique string appended to the DB names so test modules
                   don't share state (the module name is used).
    """
    sessions = SessionStore(f"sqlite:///file:test_sessions_{db_suffix}?mode=memory&cache=shared&uri=true")
    directory = AccessDirectory(f"sqlite:///file:test_directory_{db_suffix}?mode=memory&cache=shared&uri=true")
    directory.ensure_builtin_roles()
    outbox = Outbox()
    verification = VerificationCodeStore(
        f"sqlite:///file:test_codes_{db_suffix}?mode=memory&cache=shared&uri=true",
        dispatch=outbox,
    )
    orchestrator = build_orchestrator(sessions, directory, verification, TEST_TOKEN_CONFIG, hasher=HASHER)
    return Stores(
        sessions=sessions,
        directory=directory,
        verification=verification,
        outbox=outbox,
        orchestrator=orchestrator,
    )


def _patch_lifespan(stores: Stores):
    """Return an async context manager that replaces the real lifespan.

    Wires pre-created test stores into app.state so TestClient routes see
    isolated test DBs rather than the configured database.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.sessions = stores.sessions
        app.state.directory = stores.directory
        app.state.verification = stores.verification
        app.state.auth = stores.orchestrator
        yield

    return test_lifespan


def make_user(
    directory: AccessDirectory,
    email: str,
    *,
    roles: tuple[str, ...] = (DEFAULT_ROLE,),
    verified: bool = True,
    active: bool = True,
    password: str = PASSWORD,
) -> UserRecord:
    """Create a user with the given role slugs, creating missing roles on the way."""
    role_ids = []
    for slug in roles:
        role = directory.find_by_slug(slug) or directory.create_role(Role(slug=slug))
        role_ids.append(role.id)
    return directory.create(
        UserRecord(
            email=email,
            password_hash=HASHER.hash(password),
            email_verified=verified,
            active=active,
            role_ids=role_ids,
        )
    )


def device_headers(device_id: str = DEVICE, token: str | None = None) -> dict[str, str]:
    headers = {"Device-Uuid": device_id}
    if token is not None:
        headers["Authorization"] = f"Bearer {token}"
    return headers


def refresh_cookie(token: str) -> dict[str, str]:
    """Cookie header for the refresh token.

    The jwt cookie is Secure, so the TestClient (plain http://testserver) never
    replays it from its jar; tests send it explicitly.
    """
    return {"Cookie": f"jwt={token}"}


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def stores() -> Generator[Stores, None, None]:
    """Fresh in-memory stores per test, for orchestrator-level tests."""
    s = _make_test_stores(uuid.uuid4().hex)
    yield s
    s.close()


@pytest.fixture(scope="module")
def api_client(request) -> Generator[tuple[TestClient, Stores], None, None]:
    """Yield (client, stores) for API integration tests.

    The TestClient uses the real FastAPI app with a patched lifespan so
    tests hit real route handlers but use isolated in-memory stores. One
    client per test module; tests use distinct emails and device ids.
    """
    stores = _make_test_stores(request.module.__name__.rsplit(".", 1)[-1])
    app.router.lifespan_context = _patch_lifespan(stores)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, stores

    stores.close()
