from __future__ import annotations

"""Pytest fixtures for the authorization server.

Everything runs in-process: the memory backend replaces Supabase, a fake
clock drives expiry, and the identity providers are served by an
``httpx.MockTransport`` so no test touches the network.
"""

import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from urllib.parse import parse_qs, urlsplit

import httpx
import pytest
from fastapi import FastAPI
from starlette.testclient import TestClient

# ---------------------------------------------------------------------------
# Runtime env for the application
# ---------------------------------------------------------------------------

os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("STORE_BACKEND", "memory")
os.environ.setdefault("SESSION_SECRET", "test-session-secret")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("FRONTEND_ORIGIN", "https://dashboard.test")
os.environ.setdefault("PUBLIC_BASE_URL", "http://testserver")

# Ensure project root on PYTHONPATH so `import authserver` works when pytest is run
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

# Boot the app once
from authserver.main import create_app, limiter  # noqa: E402, WPS433
from authserver.models import Principal  # noqa: E402
from authserver.oauth import (  # noqa: E402
    InMemoryClientRegistry,
    InMemoryPrincipalStore,
    InMemoryTokenStore,
    build_client,
    compose_server,
)
from authserver.utils.security_utils import hash_secret  # noqa: E402

app: FastAPI = create_app()

CLIENT_ID = "c1"
CLIENT_SECRET = "s1"
REDIRECT_URI = "http://example.com"

CONSENT_CLIENT_ID = "c2"
CONSENT_CLIENT_SECRET = "s2"
CONSENT_REDIRECT_URI = "http://consent.example.com/cb"

USERNAME = "user"
PASSWORD = "password"


class FakeClock:
    """Callable clock that only moves when a test says so."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FakeProviders:
    """Facebook and Google token / user-info endpoints."""

    def __init__(self):
        self.facebook_user = {"id": "U", "name": "Facebook User", "email": "u@example.com"}
        self.google_user = {"id": "G", "name": "Google User", "email": "g@example.com"}
        self.token_status = 200
        self.token_body: object = None
        self.fail_with: Exception | None = None
        self.requests: list[httpx.Request] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.fail_with is not None:
            raise self.fail_with

        host, path = request.url.host, request.url.path
        if (host, path) in {("graph.facebook.com", "/oauth/access_token"), ("oauth2.googleapis.com", "/token")}:
            if self.token_status != 200:
                return httpx.Response(self.token_status, json={"error": "invalid_code"})
            if self.token_body is not None:
                return httpx.Response(200, json=self.token_body)
            return httpx.Response(200, json={"access_token": f"{host}-token", "token_type": "bearer"})
        if (host, path) == ("graph.facebook.com", "/me"):
            return httpx.Response(200, json=self.facebook_user)
        if (host, path) == ("www.googleapis.com", "/oauth2/v2/userinfo"):
            return httpx.Response(200, json=self.google_user)
        return httpx.Response(404)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


# ---------------------------------------------------------------------------
# Fixtures – components
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _reset_rate_limiter():
    limiter.reset()
    yield
    limiter.reset()


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def user() -> Principal:
    return Principal(
        id="principal-1",
        username=USERNAME,
        display_name="Test User",
        email="user@example.com",
        password_hash=hash_secret(PASSWORD),
    )


@pytest.fixture()
def principals(user) -> InMemoryPrincipalStore:
    return InMemoryPrincipalStore([user])


@pytest.fixture()
def clients() -> InMemoryClientRegistry:
    return InMemoryClientRegistry(
        [
            build_client(
                CLIENT_ID,
                CLIENT_SECRET,
                redirect_uris=[REDIRECT_URI],
                scopes="read write",
                auto_approve=True,
                name="Example App",
            ),
            build_client(
                CONSENT_CLIENT_ID,
                CONSENT_CLIENT_SECRET,
                redirect_uris=[CONSENT_REDIRECT_URI],
                scopes=["read"],
                name="Consent App",
            ),
        ]
    )


@pytest.fixture()
def tokens(clock) -> InMemoryTokenStore:
    return InMemoryTokenStore(clock=clock)


@pytest.fixture()
def providers() -> FakeProviders:
    return FakeProviders()


@pytest.fixture()
def server(principals, clients, tokens, clock, providers):
    return compose_server(
        principals,
        clients,
        tokens,
        providers={"facebook": ("fb-app", "fb-secret"), "google": ("g-app", "g-secret")},
        public_base_url="http://testserver",
        clock=clock,
        transport=providers.transport,
    )


@pytest.fixture()
def issuer(server):
    return server.issuer


# ---------------------------------------------------------------------------
# Fixtures – HTTP
# ---------------------------------------------------------------------------


@pytest.fixture()
def api_client(server) -> TestClient:
    app.state.authorization_server = server
    with TestClient(app, follow_redirects=False) as client:
        yield client


@pytest.fixture()
def logged_in(api_client) -> TestClient:
    resp = api_client.post("/login", data={"username": USERNAME, "password": PASSWORD, "next": "/"})
    assert resp.status_code == 303
    return api_client


def query_of(location: str) -> dict[str, str]:
    """Flatten the query string of a redirect ``Location``."""
    return {k: v[0] for k, v in parse_qs(urlsplit(location).query).items()}
