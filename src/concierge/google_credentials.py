"""Shared Google OAuth credentials for the calendar provider and the Gmail notifier.

Credentials are never stored in config or code. Config names the environment
variables that hold them, and :meth:`GoogleCredentials.from_env` reads those
variables at module startup. Secret material is never logged.

Usage::

    creds = GoogleCredentials.from_env(
        client_id_env="GOOGLE_OAUTH_CLIENT_ID",
        client_secret_env="GOOGLE_OAUTH_CLIENT_SECRET",
        refresh_token_env="GOOGLE_REFRESH_TOKEN",
    )
    tokens = GoogleOAuthClient(creds, http_client)
    access_token = await tokens.get_access_token()
"""

from __future__ import annotations

import abc
import asyncio
import logging
import os
import re
from datetime import UTC, datetime, timedelta
from typing import Any

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

logger = logging.getLogger(__name__)

GOOGLE_OAUTH_TOKEN_URL = "https://oauth2.googleapis.com/token"

_ENV_VAR_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class GoogleAuthError(RuntimeError):
    """Base error for Google credential and token failures."""


class GoogleCredentialError(GoogleAuthError):
    """Raised when credentials are missing or malformed."""


class GoogleTokenRefreshError(GoogleAuthError):
    """Raised when the refresh-token exchange fails."""


def validate_env_var_name(value: str, field_name: str) -> str:
    normalized = value.strip()
    if not normalized:
        raise ValueError(f"{field_name} must be a non-empty environment variable name")
    if _ENV_VAR_NAME_RE.fullmatch(normalized) is None:
        raise ValueError(f"{field_name} must be a valid environment variable name")
    return normalized


class GoogleCredentials(BaseModel):
    """OAuth client credentials required for refresh-token exchange."""

    model_config = ConfigDict(extra="forbid")

    client_id: str = Field(min_length=1)
    client_secret: str = Field(min_length=1)
    refresh_token: str = Field(min_length=1)

    @field_validator("client_id", "client_secret", "refresh_token")
    @classmethod
    def _normalize_non_empty(cls, value: str, info: ValidationInfo) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError(f"{info.field_name} must be a non-empty string")
        return normalized

    def __repr__(self) -> str:
        return (
            f"GoogleCredentials(client_id={self.client_id!r}, "
            "client_secret=***, refresh_token=***)"
        )

    @classmethod
    def from_env(
        cls,
        *,
        client_id_env: str,
        client_secret_env: str,
        refresh_token_env: str,
    ) -> GoogleCredentials:
        values = {
            "client_id": os.environ.get(client_id_env, "").strip(),
            "client_secret": os.environ.get(client_secret_env, "").strip(),
            "refresh_token": os.environ.get(refresh_token_env, "").strip(),
        }
        env_names = {
            "client_id": client_id_env,
            "client_secret": client_secret_env,
            "refresh_token": refresh_token_env,
        }
        missing = sorted(env_names[key] for key, value in values.items() if not value)
        if missing:
            raise GoogleCredentialError(
                "Google OAuth credentials are not configured; set environment variable(s): "
                + ", ".join(missing)
            )
        return cls(**values)


class AccessTokenSource(abc.ABC):
    """Anything that can hand out a bearer token for Google APIs."""

    @abc.abstractmethod
    async def get_access_token(self, *, force_refresh: bool = False) -> str: ...


class GoogleOAuthClient(AccessTokenSource):
    """Refresh-token OAuth helper with lightweight access-token caching."""

    def __init__(
        self,
        credentials: GoogleCredentials,
        http_client: httpx.AsyncClient,
    ) -> None:
        self._credentials = credentials
        self._http_client = http_client
        self._access_token: str | None = None
        self._access_token_expires_at: datetime | None = None
        self._refresh_lock = asyncio.Lock()

    async def get_access_token(self, *, force_refresh: bool = False) -> str:
        cached = None if force_refresh else self._fresh_token()
        if cached is not None:
            return cached

        async with self._refresh_lock:
            cached = None if force_refresh else self._fresh_token()
            if cached is not None:
                return cached
            return await self._refresh_access_token()

    def _fresh_token(self) -> str | None:
        """The cached token, or ``None`` when absent or past its refresh time."""
        expires_at = self._access_token_expires_at
        if expires_at is None or datetime.now(UTC) >= expires_at:
            return None
        return self._access_token

    async def _refresh_access_token(self) -> str:
        try:
            response = await self._http_client.post(
                GOOGLE_OAUTH_TOKEN_URL,
                data={
                    "client_id": self._credentials.client_id,
                    "client_secret": self._credentials.client_secret,
                    "refresh_token": self._credentials.refresh_token,
                    "grant_type": "refresh_token",
                },
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            raise GoogleTokenRefreshError(
                f"Google OAuth token refresh request failed: {exc}"
            ) from exc

        if response.status_code < 200 or response.status_code >= 300:
            raise GoogleTokenRefreshError(
                "Google OAuth token refresh failed "
                f"({response.status_code}): {safe_google_error_message(response)}"
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise GoogleTokenRefreshError(
                "Google OAuth token endpoint returned invalid JSON"
            ) from exc

        access_token = payload.get("access_token") if isinstance(payload, dict) else None
        if not isinstance(access_token, str) or not access_token.strip():
            raise GoogleTokenRefreshError(
                "Google OAuth token response is missing a non-empty access_token"
            )

        expires_in_raw = payload.get("expires_in") if isinstance(payload, dict) else None
        # Refresh early to avoid edge-of-expiration failures.
        refresh_ttl_seconds = max(_coerce_expires_in_seconds(expires_in_raw) - 60, 30)

        token = access_token.strip()
        self._access_token = token
        self._access_token_expires_at = datetime.now(UTC) + timedelta(seconds=refresh_ttl_seconds)
        logger.debug("Google access token refreshed (ttl=%ds)", refresh_ttl_seconds)
        return token


def _coerce_expires_in_seconds(value: Any) -> int:
    if isinstance(value, bool):
        return 3600
    if isinstance(value, int | float):
        return int(value) if value > 0 else 3600
    return 3600


def safe_google_error_message(response: httpx.Response) -> str:
    """Short, whitespace-normalized error text from a Google API response."""
    try:
        payload = response.json()
    except ValueError:
        payload = None

    if isinstance(payload, dict):
        error_payload = payload.get("error")
        if isinstance(error_payload, dict):
            message = error_payload.get("message")
            if isinstance(message, str) and message.strip():
                return " ".join(message.split())[:200]
        if isinstance(error_payload, str) and error_payload.strip():
            return " ".join(error_payload.split())[:200]

    raw_text = response.text.strip()
    if raw_text:
        return " ".join(raw_text.split())[:200]
    return "Request failed without an error payload"


def redact_credential_values(message: str) -> str:
    """Redact token-like values from an error message."""
    redacted = re.sub(
        r"(?i)\b(client_secret|refresh_token|access_token|token|bearer)\s*[=:]\s*([^\s,;]+)",
        r"\1=[REDACTED]",
        message,
    )
    return re.sub(r"(?i)\bBearer\s+[A-Za-z0-9._\-]+", "Bearer [REDACTED]", redacted)
