"""Shared fixtures: settings, a fake identity provider and a TestClient bound to it."""
import asyncio
from typing import Any, Dict, List, Optional
from urllib.parse import parse_qs, urlparse

import httpx
import pytest
from fastapi.testclient import TestClient
from itsdangerous import URLSafeTimedSerializer

from lightning_out_host.config import Settings
from lightning_out_host.main import create_app
from lightning_out_host.session_data import SessionData
from lightning_out_host.session_store import InMemorySessionStore

LOGIN_URL = "https://login.example.com"
INSTANCE_URL = "https://inst.example.com"
APP_URL = "https://app.example.com"


def make_settings(**overrides: Any) -> Settings:
    values = {
        "SESSION_SECRET": "test-session-secret",
        "SF_CLIENT_ID": "client-id",
        "SF_CLIENT_SECRET": "client-secret",
        "APP_URL": APP_URL,
        "SF_LOGIN_URL": LOGIN_URL,
        "ENVIRONMENT": "development",
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


class FakeIdentityProvider:
    """Stands in for the token endpoint and the instance's userinfo endpoint."""

    def __init__(self):
        self.token_requests: List[Dict[str, str]] = []
        self.userinfo_tokens: List[str] = []
        self.token_status = 200
        self.token_payload: Dict[str, Any] = {
            "access_token": "AT1",
            "instance_url": INSTANCE_URL,
            "refresh_token": "RT1",
        }
        self.refresh_status = 200
        self.refresh_payload: Dict[str, Any] = {
            "access_token": "AT2",
            "instance_url": INSTANCE_URL,
        }
        self.valid_tokens = {"AT1", "AT2"}
        self.raise_on_token: Optional[Exception] = None

    def handle(self, request: httpx.Request) -> httpx.Response:
        if request.url.path == "/services/oauth2/token":
            form = {k: v[0] for k, v in parse_qs(request.content.decode()).items()}
            self.token_requests.append(form)
            if self.raise_on_token is not None:
                raise self.raise_on_token
            if form.get("grant_type") == "refresh_token":
                return httpx.Response(self.refresh_status, json=self.refresh_payload)
            return httpx.Response(self.token_status, json=self.token_payload)
        if request.url.path == "/services/oauth2/userinfo":
            token = request.headers.get("Authorization", "").removeprefix("Bearer ")
            self.userinfo_tokens.append(token)
            if token not in self.valid_tokens:
                return httpx.Response(401, json=[{"errorCode": "INVALID_SESSION_ID"}])
            return httpx.Response(200, json={"user_id": "005xx", "name": "Test User"})
        return httpx.Response(404)

    def client_factory(self):
        return lambda: httpx.AsyncClient(transport=httpx.MockTransport(self.handle))

    @property
    def grant_types(self) -> List[str]:
        return [r.get("grant_type") for r in self.token_requests]


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def idp() -> FakeIdentityProvider:
    return FakeIdentityProvider()


@pytest.fixture
def store(settings) -> InMemorySessionStore:
    return InMemorySessionStore(settings.SESSION_TTL_SECONDS)


@pytest.fixture
def app(settings, store, idp):
    return create_app(settings, session_store=store, http_client_factory=idp.client_factory())


@pytest.fixture
def client(app) -> TestClient:
    return TestClient(app, base_url="https://testserver", follow_redirects=False)


def session_id_from(client: TestClient, settings: Settings) -> Optional[str]:
    raw = client.cookies.get(settings.SESSION_COOKIE_NAME)
    if raw is None:
        return None
    return URLSafeTimedSerializer(settings.SESSION_SECRET, salt="lightning-out-session").loads(raw)


def stored_session(client: TestClient, settings: Settings, store: InMemorySessionStore) -> Optional[SessionData]:
    session_id = session_id_from(client, settings)
    if session_id is None:
        return None
    return asyncio.run(store.get(session_id))


def start_login(client: TestClient) -> str:
    """Runs GET /login and returns the state sent to the identity provider."""
    response = client.get("/login")
    assert response.status_code == 302
    return parse_qs(urlparse(response.headers["location"]).query)["state"][0]


def log_in(client: TestClient) -> None:
    state = start_login(client)
    response = client.get("/oauth/callback", params={"code": "X", "state": state})
    assert response.status_code == 302, response.text
    assert response.headers["location"] == "/app"


