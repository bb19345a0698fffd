"""
tests/conftest.py -- Shared test fixtures for Authgate unit and integration tests.

This module provides:
  - settings: a dev-mode Settings with both OAuth providers enabled
  - user_store / cache: in-memory stores for unit tests
  - fake_mailer: records every mail instead of sending it
  - fake_oauth: an OAuth2Session stand-in (no network)
  - service: a fully wired AuthService over the fixtures above
  - make_user: factory for users that already exist in the store
  - api_client: TestClient over the real app with a patched lifespan

Design: the API fixture uses named shared-memory SQLite URIs (not plain
:memory:) because TestClient runs sync route handlers in a thread pool. Plain
:memory: DBs are per-connection and would present a blank schema to each
worker thread. The named URI format (file:name?mode=memory&cache=shared&uri=true)
shares one in-memory instance across all connections in the same process.

DEBUG and ALLOWED_HOSTS must be set before any api/core import so
get_settings() auto-generates secrets and TrustedHostMiddleware accepts the
TestClient's "testserver" host.
"""

from __future__ import annotations

import asyncio
import os
import uuid
from collections.abc import Callable, Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import date
from urllib.parse import urlencode

# CRITICAL: set before any api/core import.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("ALLOWED_HOSTS", '["testserver", "localhost"]')

import pytest
from authlib.integrations.base_client import OAuthError
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import app, build_auth_service
from auth.models import OAuthProvider, User
from auth.oauth import OAuthFlowCoordinator
from auth.passwords import hash_password
from auth.service import AuthService
from auth.store import UserStore, touch
from cache.store import KeyValueCache
from core.config import Settings

PASSWORD = "Str0ng!Passw0rd"
NEW_PASSWORD = "N3w!Passw0rdX"
GOOD_CODE = "provider-code"

GOOGLE_PROFILE = {
    "sub": "1234567890",
    "given_name": "Grace",
    "family_name": "Hopper",
    "email": "Grace.Hopper@gmail.com",
    "birthdate": "1906-12-09",
    "picture": "https://lh3.googleusercontent.com/a/grace",
}

FACEBOOK_PROFILE = {
    "id": "987654321",
    "first_name": "Alan",
    "last_name": "Turing",
    "email": "alan@facebook.example",
    "birthday": "06/23/1912",
    "picture": {"data": {"url": "https://graph.facebook.com/alan/picture"}},
}


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


@dataclass
class SentMail:
    kind: str  # "confirmation" | "access" | "reset"
    email: str
    full_name: str
    payload: str  # token or code


@dataclass
class FakeMailer:
    """Drop-in for auth.mailer.Mailer that records messages."""

    sent: list[SentMail] = field(default_factory=list)
    is_configured: bool = False

    def send_confirmation_email(self, email: str, full_name: str, token: str) -> None:
        self.sent.append(SentMail("confirmation", email, full_name, token))

    def send_access_email(self, email: str, full_name: str, code: str) -> None:
        self.sent.append(SentMail("access", email, full_name, code))

    def send_password_reset_email(self, email: str, full_name: str, token: str) -> None:
        self.sent.append(SentMail("reset", email, full_name, token))

    def last(self, kind: str) -> SentMail:
        matching = [m for m in self.sent if m.kind == kind]
        assert matching, f"no {kind} mail was sent"
        return matching[-1]


class _FakeResponse:
    def __init__(self, payload) -> None:
        self._payload = payload

    def raise_for_status(self) -> None:
        return None

    def json(self):
        return self._payload


class FakeOAuthSession:
    """Mimics the parts of authlib's OAuth2Session the coordinator uses."""

    def __init__(self, registry: FakeOAuth, **kwargs) -> None:
        self._registry = registry
        self.kwargs = kwargs

    def create_authorization_url(self, url: str, state: str, code_verifier: str):
        self._registry.verifiers[state] = code_verifier
        query = urlencode({"client_id": self.kwargs["client_id"], "state": state, "code_challenge_method": "S256"})
        return f"{url}?{query}", state

    def fetch_token(self, url: str, code: str, code_verifier: str):
        self._registry.exchanges.append((url, code, code_verifier))
        if code != GOOD_CODE or code_verifier not in self._registry.verifiers.values():
            raise OAuthError(error="invalid_grant", description="bad code or verifier")
        return {"access_token": "provider-access-token", "token_type": "Bearer"}

    def get(self, url: str, params=None):
        self._registry.userinfo_calls.append((url, params))
        if "google" in url:
            return _FakeResponse(self._registry.google_profile)
        return _FakeResponse(self._registry.facebook_profile)


@dataclass
class FakeOAuth:
    """Session factory passed to OAuthFlowCoordinator(session_factory=...)."""

    google_profile: dict = field(default_factory=lambda: dict(GOOGLE_PROFILE))
    facebook_profile: dict = field(default_factory=lambda: dict(FACEBOOK_PROFILE))
    verifiers: dict[str, str] = field(default_factory=dict)
    exchanges: list = field(default_factory=list)
    userinfo_calls: list = field(default_factory=list)
    sessions: list[FakeOAuthSession] = field(default_factory=list)

    def __call__(self, **kwargs) -> FakeOAuthSession:
        session = FakeOAuthSession(self, **kwargs)
        self.sessions.append(session)
        return session


# ---------------------------------------------------------------------------
# Unit-level fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _reset_rate_limits() -> None:
    """Each test starts with empty slowapi counters."""
    limiter.reset()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        debug=True,
        google_client_id="google-client-id",
        google_client_secret="google-client-secret",
        facebook_client_id="facebook-client-id",
        facebook_client_secret="facebook-client-secret",
    )


@pytest.fixture
def user_store() -> Generator[UserStore, None, None]:
    store = UserStore("sqlite:///:memory:")
    yield store
    store.close()


@pytest.fixture
def cache() -> Generator[KeyValueCache, None, None]:
    kv = KeyValueCache("sqlite:///:memory:")
    yield kv
    kv.close()


@pytest.fixture
def fake_mailer() -> FakeMailer:
    return FakeMailer()


@pytest.fixture
def fake_oauth() -> FakeOAuth:
    return FakeOAuth()


@pytest.fixture
def service(
    settings: Settings,
    user_store: UserStore,
    cache: KeyValueCache,
    fake_mailer: FakeMailer,
    fake_oauth: FakeOAuth,
) -> AuthService:
    oauth = OAuthFlowCoordinator(settings, cache, session_factory=fake_oauth)
    return build_auth_service(settings, user_store, cache, mailer=fake_mailer, oauth=oauth)


@pytest.fixture
def make_user(user_store: UserStore) -> Callable[..., User]:
    """Create a stored local user. Defaults to a confirmed account without two-factor."""

    def _make(
        email: str = "jane.doe@example.com",
        password: str = PASSWORD,
        two_factor: bool = False,
        confirmed: bool = True,
        suspended: bool = False,
    ) -> User:
        user = touch(
            User(
                email=email,
                first_name="Jane",
                last_name="Doe",
                username="",
                date_of_birth=date(1990, 5, 17),
                hashed_password=hash_password(password),
                confirmed=confirmed,
                suspended=suspended,
            )
        )
        return user_store.create_user(user, OAuthProvider.local, two_factor=two_factor)

    return _make


# ---------------------------------------------------------------------------
# API fixture
# ---------------------------------------------------------------------------


@dataclass
class ApiHarness:
    client: TestClient
    mailer: FakeMailer
    oauth: FakeOAuth
    user_store: UserStore
    settings: Settings


def _patch_lifespan(settings: Settings, user_store: UserStore, cache: KeyValueCache, service: AuthService):
    """Return an async context manager that replaces the real lifespan.

    Wires pre-created test stores into app.state so TestClient routes see
    isolated test DBs rather than the production databases.

    The purge_task is a long-sleeping coroutine that keeps asyncio happy
    (a real asyncio.Task is required; MagicMock would fail on .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.settings = settings
        app.state.user_store = user_store
        app.state.cache = cache
        app.state.auth_service = service
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


@pytest.fixture
def api_client(settings: Settings, fake_mailer: FakeMailer, fake_oauth: FakeOAuth) -> Generator[ApiHarness, None, None]:
    """Yield an ApiHarness around a TestClient bound to isolated stores.

    The TestClient uses the real FastAPI app with a patched lifespan, so tests
    hit real route handlers, middleware and exception handlers.
    follow_redirects=False so the OAuth 307 Location can be asserted on.
    """
    suffix = uuid.uuid4().hex
    user_store = UserStore(f"sqlite:///file:test_auth_{suffix}?mode=memory&cache=shared&uri=true")
    cache = KeyValueCache(f"sqlite:///file:test_cache_{suffix}?mode=memory&cache=shared&uri=true")
    oauth = OAuthFlowCoordinator(settings, cache, session_factory=fake_oauth)
    service = build_auth_service(settings, user_store, cache, mailer=fake_mailer, oauth=oauth)

    app.router.lifespan_context = _patch_lifespan(settings, user_store, cache, service)

    with TestClient(app, follow_redirects=False, raise_server_exceptions=False) as client:
        yield ApiHarness(client, fake_mailer, fake_oauth, user_store, settings)

    cache.close()
    user_store.close()
