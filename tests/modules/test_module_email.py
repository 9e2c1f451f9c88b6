"""Tests for the Email module and its notifiers."""

from __future__ import annotations

import base64
import email
import json
import smtplib
from unittest.mock import MagicMock, patch

import httpx
import pytest
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from concierge.google_credentials import AccessTokenSource
from concierge.modules.base import Module
from concierge.modules.email import (
    GMAIL_API_BASE_URL,
    EmailConfig,
    EmailDeliveryError,
    EmailModule,
    GmailNotifier,
    LogNotifier,
    SmtpNotifier,
)

pytestmark = pytest.mark.unit


@pytest.fixture
def smtp_env(monkeypatch):
    monkeypatch.setenv("CONCIERGE_EMAIL_ADDRESS", "desk@clinic.test")
    monkeypatch.setenv("CONCIERGE_EMAIL_PASSWORD", "app-password")


class StaticTokens(AccessTokenSource):
    def __init__(self) -> None:
        self.calls: list[bool] = []

    async def get_access_token(self, *, force_refresh: bool = False) -> str:
        self.calls.append(force_refresh)
        return f"token-{len(self.calls)}"


# ---------------------------------------------------------------------------
# Module ABC compliance
# ---------------------------------------------------------------------------


class TestModuleABC:
    def test_is_subclass_of_module(self):
        assert issubclass(EmailModule, Module)

    def test_name(self):
        assert EmailModule().name == "email"

    def test_config_schema(self):
        mod = EmailModule()
        assert mod.config_schema is EmailConfig
        assert issubclass(mod.config_schema, BaseModel)

    def test_dependencies_empty(self):
        assert EmailModule().dependencies == []


# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------


class TestEmailConfig:
    def test_defaults(self):
        config = EmailConfig()
        assert config.transport == "smtp"
        assert config.smtp_host == "smtp.gmail.com"
        assert config.smtp_port == 587
        assert config.branding.signature == "Appointment Management Team"

    def test_invalid_env_name(self):
        with pytest.raises(PydanticValidationError):
            EmailConfig(address_env="not valid")

    def test_unknown_transport(self):
        with pytest.raises(PydanticValidationError):
            EmailConfig(transport="carrier-pigeon")

    def test_extra_fields_forbidden(self):
        with pytest.raises(PydanticValidationError):
            EmailConfig(password="hunter2")


# ---------------------------------------------------------------------------
# SMTP
# ---------------------------------------------------------------------------


class TestSmtpNotifier:
    async def test_send(self, smtp_env):
        mock_smtp = MagicMock()
        mock_cls = MagicMock(return_value=mock_smtp)

        with patch("concierge.modules.email.smtplib.SMTP", mock_cls):
            result = await SmtpNotifier(EmailConfig()).send(
                "alice@example.com", "Hello", "Body text"
            )

        mock_cls.assert_called_once_with("smtp.gmail.com", 587)
        mock_smtp.starttls.assert_called_once()
        mock_smtp.login.assert_called_once_with("desk@clinic.test", "app-password")
        args = mock_smtp.sendmail.call_args[0]
        assert args[0] == "desk@clinic.test"
        assert args[1] == ["alice@example.com"]
        message = email.message_from_string(args[2])
        assert message["Subject"] == "Hello"
        assert message["To"] == "alice@example.com"
        mock_smtp.quit.assert_called_once()
        assert result == {
            "status": "sent",
            "to": "alice@example.com",
            "subject": "Hello",
            "transport": "smtp",
        }

    async def test_tls_can_be_disabled(self, smtp_env):
        mock_smtp = MagicMock()
        with patch("concierge.modules.email.smtplib.SMTP", MagicMock(return_value=mock_smtp)):
            await SmtpNotifier(EmailConfig(use_tls=False)).send("a@example.com", "S", "B")
        mock_smtp.starttls.assert_not_called()

    async def test_missing_credentials(self, monkeypatch):
        monkeypatch.delenv("CONCIERGE_EMAIL_ADDRESS", raising=False)
        monkeypatch.delenv("CONCIERGE_EMAIL_PASSWORD", raising=False)
        with pytest.raises(EmailDeliveryError, match="CONCIERGE_EMAIL_ADDRESS"):
            await SmtpNotifier(EmailConfig()).send("a@example.com", "S", "B")

    async def test_smtp_failure_still_quits(self, smtp_env):
        mock_smtp = MagicMock()
        mock_smtp.login.side_effect = smtplib.SMTPAuthenticationError(535, b"bad credentials")
        with patch("concierge.modules.email.smtplib.SMTP", MagicMock(return_value=mock_smtp)):
            with pytest.raises(EmailDeliveryError, match="SMTP delivery failed"):
                await SmtpNotifier(EmailConfig()).send("a@example.com", "S", "B")
        mock_smtp.quit.assert_called_once()

    async def test_connection_failure(self, smtp_env):
        failing = MagicMock(side_effect=ConnectionRefusedError("refused"))
        with patch("concierge.modules.email.smtplib.SMTP", failing):
            with pytest.raises(EmailDeliveryError, match="Could not connect"):
                await SmtpNotifier(EmailConfig()).send("a@example.com", "S", "B")


# ---------------------------------------------------------------------------
# Gmail API
# ---------------------------------------------------------------------------


class TestGmailNotifier:
    async def test_send_posts_raw_message(self):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"id": "msg-1"})

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        notifier = GmailNotifier(StaticTokens(), http_client=client, sender="desk@clinic.test")

        result = await notifier.send("alice@example.com", "Hello", "Body text")

        assert result["message_id"] == "msg-1"
        assert result["transport"] == "gmail"
        request = seen[0]
        assert str(request.url) == f"{GMAIL_API_BASE_URL}/users/me/messages/send"
        assert request.headers["Authorization"] == "Bearer token-1"
        raw = json.loads(request.content)["raw"]
        decoded = base64.urlsafe_b64decode(raw + "=" * (-len(raw) % 4))
        message = email.message_from_bytes(decoded)
        assert message["To"] == "alice@example.com"
        assert message["From"] == "desk@clinic.test"
        assert message.get_payload(decode=True).decode() == "Body text"

    async def test_unauthorized_retries_with_refresh(self):
        tokens = StaticTokens()
        statuses = iter([401, 200])
        client = httpx.AsyncClient(
            transport=httpx.MockTransport(
                lambda request: httpx.Response(next(statuses), json={"id": "m"})
            )
        )
        await GmailNotifier(tokens, http_client=client).send("a@example.com", "S", "B")
        assert tokens.calls == [False, True]

    async def test_failure_raises(self):
        client = httpx.AsyncClient(
            transport=httpx.MockTransport(
                lambda request: httpx.Response(400, json={"error": {"message": "Invalid To"}})
            )
        )
        with pytest.raises(EmailDeliveryError, match="Invalid To"):
            await GmailNotifier(StaticTokens(), http_client=client).send("a@example.com", "S", "B")

    def test_requires_tokens_or_credentials(self):
        with pytest.raises(EmailDeliveryError):
            GmailNotifier()


# ---------------------------------------------------------------------------
# Lifecycle and tool
# ---------------------------------------------------------------------------


class TestStartup:
    async def test_log_transport(self):
        mod = EmailModule()
        await mod.on_startup({"transport": "log"}, None)
        assert isinstance(mod.notifier, LogNotifier)
        await mod.on_shutdown()
        assert mod.notifier is None

    async def test_gmail_without_credentials_fails(self, monkeypatch):
        names = ("GOOGLE_OAUTH_CLIENT_ID", "GOOGLE_OAUTH_CLIENT_SECRET", "GOOGLE_REFRESH_TOKEN")
        for name in names:
            monkeypatch.delenv(name, raising=False)
        with pytest.raises(EmailDeliveryError, match="GOOGLE_OAUTH_CLIENT_ID"):
            await EmailModule().on_startup({"transport": "gmail"}, None)

    async def test_branding_from_config(self):
        mod = EmailModule()
        await mod.on_startup(
            {"transport": "log", "signature": "Riverside Clinic", "contact_email": "d@c.test"},
            None,
        )
        assert mod.branding.signature == "Riverside Clinic"
        assert mod.branding.contact_email == "d@c.test"


class TestSendCustomTool:
    @pytest.fixture
    async def tool(self, stub_mcp, notifier):
        mod = EmailModule()
        await mod.register_tools(stub_mcp, {"signature": "Riverside Clinic"}, None)
        mod._notifier = notifier
        return stub_mcp.tools["email_send_custom"]

    async def test_sends_with_signature(self, tool, notifier):
        result = await tool(to="alice@example.com", subject="Directions", message="Use gate 2.")
        assert result["status"] == "sent"
        assert notifier.sent == [
            ("alice@example.com", "Directions", "Use gate 2.\n\nBest regards,\nRiverside Clinic")
        ]

    async def test_without_signature(self, tool, notifier):
        await tool(
            to="alice@example.com", subject="Directions", message="Gate 2", include_signature=False
        )
        assert notifier.sent[0][2] == "Gate 2"

    async def test_invalid_recipient(self, tool, notifier):
        result = await tool(to="alice", subject="S", message="M")
        assert result["status"] == "validation_error"
        assert notifier.sent == []

    async def test_empty_message(self, tool):
        result = await tool(to="alice@example.com", subject="S", message="  ")
        assert result["status"] == "validation_error"

    async def test_delivery_failure_is_reported(self, tool, notifier):
        notifier.fail_for.add("alice@example.com")
        result = await tool(to="alice@example.com", subject="S", message="M")
        assert result["status"] == "error"
        assert "refused" in result["error"]
