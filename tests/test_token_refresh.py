"""Tests for the refresh agent, the /refresh-token route and the one-retry policy."""
from urllib.parse import parse_qs

import httpx
import pytest
from fastapi.testclient import TestClient

from lightning_out_host.errors import TokenEndpointError
from lightning_out_host.main import create_app
from lightning_out_host.token_refresh import refresh_access_token

from conftest import INSTANCE_URL, log_in, make_settings, stored_session


class TestRefreshAccessToken:
    @pytest.mark.asyncio
    async def test_keeps_previous_refresh_token_when_not_rotated(self):
        seen = {}

        def handler(request):
            seen["form"] = {k: v[0] for k, v in parse_qs(request.content.decode()).items()}
            return httpx.Response(200, json={"access_token": "AT2", "instance_url": INSTANCE_URL})

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            token_set = await refresh_access_token(make_settings(), client, "RT1")

        assert seen["form"] == {
            "grant_type": "refresh_token",
            "refresh_token": "RT1",
            "client_id": "client-id",
            "client_secret": "client-secret",
        }
        assert token_set.access_token == "AT2"
        assert token_set.refresh_token == "RT1"

    @pytest.mark.asyncio
    async def test_uses_rotated_refresh_token(self):
        def handler(request):
            return httpx.Response(200, json={
                "access_token": "AT2", "instance_url": INSTANCE_URL, "refresh_token": "RT2"})

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            token_set = await refresh_access_token(make_settings(), client, "RT1")

        assert token_set.refresh_token == "RT2"

    @pytest.mark.asyncio
    async def test_failure_raises(self):
        def handler(request):
            return httpx.Response(400, json={"error": "invalid_grant", "error_description": "expired"})

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            with pytest.raises(TokenEndpointError) as excinfo:
                await refresh_access_token(make_settings(), client, "RT1")

        assert excinfo.value.error == "invalid_grant"


class TestRefreshTokenRoute:
    def test_success_updates_session_and_redirects(self, client, settings, store, idp):
        idp.refresh_payload = {"access_token": "AT2", "instance_url": "https://inst2.example.com"}
        log_in(client)

        response = client.get("/refresh-token")

        assert response.status_code == 302
        assert response.headers["location"] == "/app"
        session = stored_session(client, settings, store)
        assert session.access_token == "AT2"
        assert session.instance_url == "https://inst2.example.com"
        assert session.refresh_token == "RT1"

    def test_redirect_parameter_is_honoured(self, client):
        log_in(client)
        response = client.get("/refresh-token", params={"redirect": "/session-info"})
        assert response.headers["location"] == "/session-info"

    @pytest.mark.parametrize("target", ["https://evil.example.com/", "//evil.example.com", "/\\evil"])
    def test_offsite_redirect_falls_back_to_app(self, client, target):
        log_in(client)
        response = client.get("/refresh-token", params={"redirect": target})
        assert response.headers["location"] == "/app"

    def test_without_refresh_token_redirects_to_login(self, client):
        response = client.get("/refresh-token")
        assert response.status_code == 302
        assert response.headers["location"] == "/login"

    def test_failure_destroys_session(self, client, settings, store, idp):
        idp.refresh_status = 400
        idp.refresh_payload = {"error": "invalid_grant"}
        log_in(client)

        response = client.get("/refresh-token")

        assert response.status_code == 302
        assert response.headers["location"] == "/login?error=session_expired"
        assert stored_session(client, settings, store) is None
        assert len(store) == 0
        assert client.get("/app").headers["location"] == "/login"


class TestRetryPolicy:
    def test_valid_token_needs_no_refresh(self, client, idp):
        log_in(client)

        response = client.get("/api/userinfo")

        assert response.status_code == 200
        assert response.json()["user"]["name"] == "Test User"
        assert idp.grant_types == ["authorization_code"]

    def test_rejected_token_is_refreshed_once(self, client, settings, store, idp):
        idp.valid_tokens = {"AT2"}
        log_in(client)

        response = client.get("/api/userinfo")

        assert response.status_code == 200
        assert idp.userinfo_tokens == ["AT1", "AT2"]
        assert idp.grant_types == ["authorization_code", "refresh_token"]
        assert stored_session(client, settings, store).access_token == "AT2"

    def test_second_rejection_destroys_session(self, client, settings, store, idp):
        idp.valid_tokens = set()
        log_in(client)

        response = client.get("/api/userinfo")

        assert response.status_code == 302
        assert response.headers["location"] == "/login?error=session_expired"
        assert idp.userinfo_tokens == ["AT1", "AT2"]
        assert idp.grant_types == ["authorization_code", "refresh_token"]
        assert stored_session(client, settings, store) is None

    def test_refresh_failure_destroys_session(self, client, settings, store, idp):
        idp.valid_tokens = set()
        idp.refresh_status = 400
        idp.refresh_payload = {"error": "invalid_grant"}
        log_in(client)

        response = client.get("/api/userinfo")

        assert response.headers["location"] == "/login?error=session_expired"
        assert idp.userinfo_tokens == ["AT1"]
        assert len(store) == 0

    def test_refresh_timeout_counts_as_the_only_attempt(self, client, store, idp):
        idp.valid_tokens = set()
        log_in(client)
        idp.raise_on_token = httpx.ReadTimeout("slow")

        response = client.get("/api/userinfo")

        assert response.headers["location"] == "/login?error=session_expired"
        assert idp.grant_types == ["authorization_code", "refresh_token"]
        assert len(store) == 0

    def test_retry_can_be_disabled(self, store, idp):
        idp.valid_tokens = set()
        app = create_app(make_settings(REFRESH_RETRY_ENABLED=False), session_store=store,
                         http_client_factory=idp.client_factory())
        client = TestClient(app, base_url="https://testserver", follow_redirects=False)
        log_in(client)

        response = client.get("/api/userinfo")

        assert response.headers["location"] == "/login?error=session_expired"
        assert idp.grant_types == ["authorization_code"]
        assert len(store) == 0

    def test_missing_refresh_token_destroys_session(self, client, store, idp):
        idp.valid_tokens = set()
        idp.token_payload = {"access_token": "AT1", "instance_url": INSTANCE_URL}
        log_in(client)

        response = client.get("/api/userinfo")

        assert response.headers["location"] == "/login?error=session_expired"
        assert idp.grant_types == ["authorization_code"]
        assert len(store) == 0

    def test_unauthenticated_api_call_is_401(self, client):
        assert client.get("/api/userinfo").status_code == 401
