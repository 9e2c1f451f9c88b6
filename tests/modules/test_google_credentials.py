"""Tests for Google OAuth credential loading and token refresh."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta

import httpx
import pytest

from concierge.google_credentials import (
    GOOGLE_OAUTH_TOKEN_URL,
    GoogleCredentialError,
    GoogleCredentials,
    GoogleOAuthClient,
    GoogleTokenRefreshError,
    redact_credential_values,
    safe_google_error_message,
    validate_env_var_name,
)

pytestmark = pytest.mark.unit

ENV_NAMES = {
    "client_id_env": "TEST_GOOGLE_CLIENT_ID",
    "client_secret_env": "TEST_GOOGLE_CLIENT_SECRET",
    "refresh_token_env": "TEST_GOOGLE_REFRESH_TOKEN",
}


def _credentials() -> GoogleCredentials:
    return GoogleCredentials(client_id="cid", client_secret="secret", refresh_token="rtok")


class TestCredentials:
    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("TEST_GOOGLE_CLIENT_ID", "cid")
        monkeypatch.setenv("TEST_GOOGLE_CLIENT_SECRET", " secret ")
        monkeypatch.setenv("TEST_GOOGLE_REFRESH_TOKEN", "rtok")
        creds = GoogleCredentials.from_env(**ENV_NAMES)
        assert creds.client_secret == "secret"

    def test_missing_variables_are_named(self, monkeypatch):
        monkeypatch.setenv("TEST_GOOGLE_CLIENT_ID", "cid")
        monkeypatch.delenv("TEST_GOOGLE_CLIENT_SECRET", raising=False)
        monkeypatch.delenv("TEST_GOOGLE_REFRESH_TOKEN", raising=False)
        with pytest.raises(GoogleCredentialError) as exc_info:
            GoogleCredentials.from_env(**ENV_NAMES)
        message = str(exc_info.value)
        assert "TEST_GOOGLE_CLIENT_SECRET" in message
        assert "TEST_GOOGLE_REFRESH_TOKEN" in message

    def test_repr_hides_secrets(self):
        text = repr(_credentials())
        assert "secret" not in text.replace("client_secret", "")
        assert "rtok" not in text

    @pytest.mark.parametrize("value", ["", "1ABC", "HAS-DASH"])
    def test_invalid_env_var_names(self, value):
        with pytest.raises(ValueError):
            validate_env_var_name(value, "field")


class TestOAuthClient:
    async def test_token_is_cached_until_forced(self):
        refreshes = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal refreshes
            assert str(request.url) == GOOGLE_OAUTH_TOKEN_URL
            refreshes += 1
            payload = {"access_token": f"tok-{refreshes}", "expires_in": 3600}
            return httpx.Response(200, json=payload)

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        oauth = GoogleOAuthClient(_credentials(), client)

        assert await oauth.get_access_token() == "tok-1"
        assert await oauth.get_access_token() == "tok-1"
        assert await oauth.get_access_token(force_refresh=True) == "tok-2"

    async def test_concurrent_callers_share_one_refresh(self):
        refreshes = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal refreshes
            refreshes += 1
            return httpx.Response(200, json={"access_token": " tok ", "expires_in": 3600})

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        oauth = GoogleOAuthClient(_credentials(), client)

        tokens = await asyncio.gather(*(oauth.get_access_token() for _ in range(5)))

        assert tokens == ["tok"] * 5
        assert refreshes == 1

    async def test_expired_token_is_refreshed(self):
        refreshes = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal refreshes
            refreshes += 1
            payload = {"access_token": f"tok-{refreshes}", "expires_in": 3600}
            return httpx.Response(200, json=payload)

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        oauth = GoogleOAuthClient(_credentials(), client)

        assert await oauth.get_access_token() == "tok-1"
        oauth._access_token_expires_at = datetime.now(UTC) - timedelta(seconds=1)
        assert await oauth.get_access_token() == "tok-2"

    async def test_refresh_failure(self):
        client = httpx.AsyncClient(
            transport=httpx.MockTransport(
                lambda request: httpx.Response(400, json={"error": "invalid_grant"})
            )
        )
        oauth = GoogleOAuthClient(_credentials(), client)
        with pytest.raises(GoogleTokenRefreshError, match="invalid_grant"):
            await oauth.get_access_token()

    async def test_missing_access_token(self):
        client = httpx.AsyncClient(
            transport=httpx.MockTransport(lambda request: httpx.Response(200, json={}))
        )
        oauth = GoogleOAuthClient(_credentials(), client)
        with pytest.raises(GoogleTokenRefreshError, match="access_token"):
            await oauth.get_access_token()


class TestErrorText:
    def test_safe_message_prefers_error_message(self):
        response = httpx.Response(403, json={"error": {"message": "Insufficient   permissions"}})
        assert safe_google_error_message(response) == "Insufficient permissions"

    def test_safe_message_falls_back_to_text(self):
        assert safe_google_error_message(httpx.Response(502, text="Bad gateway")) == "Bad gateway"

    def test_redaction(self):
        redacted = redact_credential_values("refresh_token=abc123 failed; Bearer access.token-1")
        assert "abc123" not in redacted
        assert "access.token-1" not in redacted
