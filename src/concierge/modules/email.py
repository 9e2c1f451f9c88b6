"""Email module: outbound client notifications.

Three transports are available through ``[modules.email].transport``:

- ``smtp``: blocking smtplib run via ``asyncio.to_thread``; the sender
  address and password come from the environment variables named in config.
- ``gmail``: Gmail API ``users/me/messages/send`` over httpx, authorized with
  the shared Google OAuth refresh-token flow.
- ``log``: writes the message to the log instead of sending (development).

Other modules never see the transport; they receive a :class:`Notifier`.
"""

from __future__ import annotations

import abc
import asyncio
import base64
import logging
import os
import smtplib
from email.mime.text import MIMEText
from typing import Any, Literal

import httpx
from pydantic import BaseModel, ConfigDict, ValidationInfo, field_validator

from concierge.booking.errors import ValidationError
from concierge.booking.notifications import Branding
from concierge.booking.profile import validate_email
from concierge.google_credentials import (
    AccessTokenSource,
    GoogleAuthError,
    GoogleCredentials,
    GoogleOAuthClient,
    safe_google_error_message,
    validate_env_var_name,
)
from concierge.modules.base import Module

logger = logging.getLogger(__name__)

GMAIL_API_BASE_URL = "https://gmail.googleapis.com/gmail/v1"


class EmailDeliveryError(RuntimeError):
    """Raised when a message could not be handed to the transport."""


class EmailConfig(BaseModel):
    """Configuration for the Email module."""

    model_config = ConfigDict(extra="forbid")

    transport: Literal["smtp", "gmail", "log"] = "smtp"
    smtp_host: str = "smtp.gmail.com"
    smtp_port: int = 587
    use_tls: bool = True
    address_env: str = "CONCIERGE_EMAIL_ADDRESS"
    password_env: str = "CONCIERGE_EMAIL_PASSWORD"
    client_id_env: str = "GOOGLE_OAUTH_CLIENT_ID"
    client_secret_env: str = "GOOGLE_OAUTH_CLIENT_SECRET"
    refresh_token_env: str = "GOOGLE_REFRESH_TOKEN"
    signature: str = "Appointment Management Team"
    contact_email: str | None = None

    @field_validator(
        "address_env", "password_env", "client_id_env", "client_secret_env", "refresh_token_env"
    )
    @classmethod
    def _validate_env_names(cls, value: str, info: ValidationInfo) -> str:
        return validate_env_var_name(value, f"modules.email.{info.field_name}")

    @property
    def branding(self) -> Branding:
        return Branding(signature=self.signature, contact_email=self.contact_email)


class Notifier(abc.ABC):
    """Sends one plain-text message to one recipient."""

    @property
    @abc.abstractmethod
    def name(self) -> str: ...

    @abc.abstractmethod
    async def send(self, recipient: str, subject: str, body: str) -> dict[str, Any]:
        """Deliver the message or raise :class:`EmailDeliveryError`."""

    async def shutdown(self) -> None:
        return None


class SmtpNotifier(Notifier):
    def __init__(self, config: EmailConfig) -> None:
        self._config = config

    @property
    def name(self) -> str:
        return "smtp"

    def _get_credentials(self) -> tuple[str, str]:
        """Return ``(address, password)`` from the configured env vars."""
        address = os.environ.get(self._config.address_env)
        password = os.environ.get(self._config.password_env)
        if not address or not password:
            raise EmailDeliveryError(
                "Missing email credentials: set "
                f"{self._config.address_env} and {self._config.password_env}"
            )
        return address, password

    def _smtp_send(self, to: str, subject: str, body: str) -> dict[str, Any]:
        """Blocking SMTP send, intended to be run via ``asyncio.to_thread``."""
        address, password = self._get_credentials()

        msg = MIMEText(body)
        msg["Subject"] = subject
        msg["From"] = address
        msg["To"] = to

        try:
            server = smtplib.SMTP(self._config.smtp_host, self._config.smtp_port)
        except OSError as exc:
            raise EmailDeliveryError(f"Could not connect to SMTP server: {exc}") from exc
        try:
            if self._config.use_tls:
                server.starttls()
            server.login(address, password)
            server.sendmail(address, [to], msg.as_string())
        except smtplib.SMTPException as exc:
            raise EmailDeliveryError(f"SMTP delivery failed: {exc}") from exc
        finally:
            server.quit()

        logger.info("Email sent to %s: %s", to, subject)
        return {"status": "sent", "to": to, "subject": subject, "transport": self.name}

    async def send(self, recipient: str, subject: str, body: str) -> dict[str, Any]:
        return await asyncio.to_thread(self._smtp_send, recipient, subject, body)


class GmailNotifier(Notifier):
    """Gmail API sender authorized with a bearer token from *token_source*."""

    def __init__(
        self,
        token_source: AccessTokenSource | None = None,
        *,
        credentials: GoogleCredentials | None = None,
        http_client: httpx.AsyncClient | None = None,
        sender: str | None = None,
    ) -> None:
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=30.0)
        if token_source is None:
            if credentials is None:
                raise EmailDeliveryError("Either token_source or credentials is required")
            token_source = GoogleOAuthClient(credentials, self._http_client)
        self._tokens = token_source
        self._sender = sender

    @property
    def name(self) -> str:
        return "gmail"

    def _encode(self, recipient: str, subject: str, body: str) -> str:
        msg = MIMEText(body, "plain", "utf-8")
        msg["To"] = recipient
        msg["Subject"] = subject
        if self._sender:
            msg["From"] = self._sender
        return base64.urlsafe_b64encode(msg.as_bytes()).decode("ascii").rstrip("=")

    async def _post(self, raw: str, *, force_refresh: bool) -> httpx.Response:
        try:
            token = await self._tokens.get_access_token(force_refresh=force_refresh)
        except GoogleAuthError as exc:
            raise EmailDeliveryError(str(exc)) from exc
        try:
            return await self._http_client.post(
                f"{GMAIL_API_BASE_URL}/users/me/messages/send",
                json={"raw": raw},
                headers={"Authorization": f"Bearer {token}"},
            )
        except httpx.HTTPError as exc:
            raise EmailDeliveryError(f"Gmail request failed: {exc}") from exc

    async def send(self, recipient: str, subject: str, body: str) -> dict[str, Any]:
        raw = self._encode(recipient, subject, body)
        response = await self._post(raw, force_refresh=False)
        if response.status_code == 401:
            response = await self._post(raw, force_refresh=True)
        if response.status_code < 200 or response.status_code >= 300:
            raise EmailDeliveryError(
                f"Gmail send failed ({response.status_code}): "
                f"{safe_google_error_message(response)}"
            )
        payload = response.json() if response.content else {}
        logger.info("Email sent to %s via Gmail: %s", recipient, subject)
        return {
            "status": "sent",
            "to": recipient,
            "subject": subject,
            "transport": self.name,
            "message_id": payload.get("id") if isinstance(payload, dict) else None,
        }

    async def shutdown(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()


class LogNotifier(Notifier):
    """Logs messages instead of sending them."""

    @property
    def name(self) -> str:
        return "log"

    async def send(self, recipient: str, subject: str, body: str) -> dict[str, Any]:
        logger.info("Email (not sent) to %s: %s\n%s", recipient, subject, body)
        return {"status": "logged", "to": recipient, "subject": subject, "transport": self.name}


class EmailModule(Module):
    """Owns the notifier and provides the ``email_send_custom`` tool."""

    def __init__(self) -> None:
        self._config: EmailConfig = EmailConfig()
        self._notifier: Notifier | None = None

    @property
    def name(self) -> str:
        return "email"

    @property
    def config_schema(self) -> type[BaseModel]:
        return EmailConfig

    @property
    def dependencies(self) -> list[str]:
        return []

    @property
    def notifier(self) -> Notifier | None:
        return self._notifier

    @property
    def branding(self) -> Branding:
        return self._config.branding

    @staticmethod
    def _coerce_config(config: Any) -> EmailConfig:
        return config if isinstance(config, EmailConfig) else EmailConfig(**(config or {}))

    def _build_notifier(self) -> Notifier:
        if self._config.transport == "log":
            return LogNotifier()
        if self._config.transport == "gmail":
            credentials = GoogleCredentials.from_env(
                client_id_env=self._config.client_id_env,
                client_secret_env=self._config.client_secret_env,
                refresh_token_env=self._config.refresh_token_env,
            )
            return GmailNotifier(
                credentials=credentials, sender=os.environ.get(self._config.address_env)
            )
        return SmtpNotifier(self._config)

    async def register_tools(self, mcp: Any, config: Any, db: Any) -> None:
        self._config = self._coerce_config(config)
        module = self  # capture for closures

        @mcp.tool()
        async def email_send_custom(
            to: str,
            subject: str,
            message: str,
            include_signature: bool = True,
        ) -> dict[str, Any]:
            """Send a custom plain-text email to an appointment attendee."""
            return await module._send_custom(to, subject, message, include_signature)

    async def _send_custom(
        self, to: str, subject: str, message: str, include_signature: bool
    ) -> dict[str, Any]:
        notifier = self._require_notifier()
        try:
            recipient = validate_email(to)
        except ValidationError as exc:
            return {"status": exc.status, "error": exc.message, "guidance": exc.guidance}
        if not subject.strip() or not message.strip():
            return {"status": "validation_error", "error": "subject and message are required"}
        body = message
        if include_signature:
            body += f"\n\nBest regards,\n{self._config.signature}"
        try:
            return await notifier.send(recipient, subject, body)
        except EmailDeliveryError as exc:
            logger.warning("Custom email to %s failed: %s", recipient, exc)
            return {"status": "error", "error": str(exc), "to": recipient}

    def _require_notifier(self) -> Notifier:
        if self._notifier is None:
            raise RuntimeError("Email notifier is not initialized")
        return self._notifier

    async def on_startup(self, config: Any, db: Any) -> None:
        self._config = self._coerce_config(config)
        try:
            self._notifier = self._build_notifier()
        except GoogleAuthError as exc:
            raise EmailDeliveryError(str(exc)) from exc
        logger.info("Email notifier ready (transport=%s)", self._notifier.name)

    async def on_shutdown(self) -> None:
        if self._notifier is not None:
            await self._notifier.shutdown()
        self._notifier = None
