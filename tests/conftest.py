"""
tests/conftest.py -- Shared test fixtures for ExamPort.

This module provides:
  - FakeClock: injectable clock so expiry tests move time instead of sleeping
  - RecordingNotifier: captures verification/reset links instead of emailing
  - engine / stores / lifecycle fixtures: a file-backed SQLite DB per test
  - api: TestClient over the real app with a patched lifespan

Design: a temp-file SQLite DB (not :memory:) is used because TestClient runs
sync route handlers in a thread pool and the concurrency tests open several
connections at once. A file DB gives every connection the same schema and
real locking semantics.

DEBUG must be set before any api/ or core/ import so get_settings()
auto-generates SECRET_KEY instead of raising ValueError. BCRYPT_ROUNDS=4
keeps hashing fast.
"""

from __future__ import annotations

import asyncio
import os
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

# CRITICAL: set before any api/core import.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("BCRYPT_ROUNDS", "4")

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import app, init_app_state
from auth.lifecycle import TokenLifecycleManager
from auth.models import Account, Role
from auth.passwords import PasswordHasher
from auth.store import AccountStore, TokenStore, create_store_engine
from auth.tokens import SessionTokenService
from core.config import get_settings

# ---------------------------------------------------------------------------
# Test doubles
# ---------------------------------------------------------------------------


class FakeClock:
    """Callable clock. Starts at the real current time; only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime.now(timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@dataclass
class RecordingNotifier:
    """Notifier that remembers what it was asked to send.

    Set fail=True to simulate an undeliverable message (returns False),
    or explode=True to simulate a misbehaving implementation that raises.
    """

    enabled: bool = True
    is_configured: bool = False
    fail: bool = False
    explode: bool = False
    sent: list[tuple[str, str, str]] = field(default_factory=list)

    def _record(self, kind: str, email: str, token: str) -> bool:
        if self.explode:
            raise ConnectionError("smtp down")
        self.sent.append((kind, email, token))
        return not self.fail

    def send_verification_link(self, email: str, token: str) -> bool:
        return self._record("verify", email, token)

    def send_password_reset_link(self, email: str, token: str) -> bool:
        return self._record("reset", email, token)

    def send_test_email(self, email: str) -> bool:
        return self._record("test", email, "")

    def last(self, kind: str) -> tuple[str, str]:
        """Return (email, token) of the most recent message of this kind."""
        matches = [(email, token) for k, email, token in self.sent if k == kind]
        assert matches, f"no '{kind}' message was sent"
        return matches[-1]


# ---------------------------------------------------------------------------
# Store-level fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def hasher() -> PasswordHasher:
    return PasswordHasher(rounds=4)


@pytest.fixture
def engine(tmp_path):
    eng = create_store_engine(f"sqlite:///{tmp_path / 'auth.db'}")
    yield eng
    eng.dispose()


@pytest.fixture
def accounts(engine) -> AccountStore:
    return AccountStore(engine)


@pytest.fixture
def tokens(engine) -> TokenStore:
    return TokenStore(engine)


@pytest.fixture
def lifecycle(accounts, tokens, hasher, clock) -> TokenLifecycleManager:
    return TokenLifecycleManager(accounts, tokens, hasher, clock=clock)


@pytest.fixture
def sessions(clock) -> SessionTokenService:
    return SessionTokenService("s" * 32 + "-unit-test-secret", expire_seconds=3600, clock=clock)


@pytest.fixture
def alice(accounts, hasher) -> Account:
    """A saved, unverified student account with password 'alicepass1'."""
    return accounts.save(
        Account(
            username="alice",
            email="alice@x.com",
            hashed_password=hasher.hash("alicepass1"),
            role=Role.STUDENT,
        )
    )


# ---------------------------------------------------------------------------
# API fixtures
# ---------------------------------------------------------------------------


@dataclass
class ApiHarness:
    client: TestClient
    notifier: RecordingNotifier
    clock: FakeClock

    @property
    def accounts(self) -> AccountStore:
        return self.client.app.state.auth_service.accounts

    @property
    def tokens(self) -> TokenStore:
        return TokenStore(self.client.app.state.engine)

    def register(self, username: str, email: str, password: str = "secret123", **extra):
        body = {"username": username, "email": email, "password": password, **extra}
        return self.client.post("/api/v1/auth/register", json=body)

    def login(self, username: str, password: str):
        return self.client.post("/api/v1/auth/login", json={"username": username, "password": password})

    def bearer(self, username: str, password: str) -> dict[str, str]:
        resp = self.login(username, password)
        assert resp.status_code == 200, resp.text
        return {"Authorization": f"Bearer {resp.json()['access_token']}"}

    def session_for(self, username: str, role: Role) -> dict[str, str]:
        """Mint a bearer header directly, without a login round trip."""
        token = self.client.app.state.session_tokens.issue(username, role)
        return {"Authorization": f"Bearer {token}"}


def _patch_lifespan(engine, notifier: RecordingNotifier, clock: FakeClock):
    """Return a lifespan that wires test doubles into app.state.

    The sweep task is a long-sleeping coroutine so shutdown can cancel a real
    asyncio.Task exactly like the production lifespan does.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        init_app_state(app, get_settings(), engine, notifier, clock=clock)
        app.state.sweep_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.sweep_task.cancel()

    return test_lifespan


@pytest.fixture(autouse=True)
def _reset_rate_limits() -> None:
    """Rate-limit counters are process-global; start every test from zero."""
    limiter.reset()


@pytest.fixture
def api(engine, clock, notifier) -> Generator[ApiHarness, None, None]:
    """Yield an ApiHarness over the real FastAPI app with isolated storage."""
    app.router.lifespan_context = _patch_lifespan(engine, notifier, clock)
    with TestClient(app, raise_server_exceptions=True) as client:
        yield ApiHarness(client=client, notifier=notifier, clock=clock)
