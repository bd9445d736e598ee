"""Outbound message dispatch (email via Resend, SMS via Twilio).

Jobs receive a MessageDispatcher instead of reaching for module-level
clients, so tests and dry runs can swap the transport.
"""

from __future__ import annotations

import html as html_module
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Callable

import httpx

from navi.core.config import Settings, settings as app_settings
from navi.core.structured_logging import mask_email, mask_phone
from navi.db.enums import Channel
from navi.services.http_service import DEFAULT_RETRY_STATUSES, request_with_retries

logger = logging.getLogger(__name__)

RESEND_SEND_URL = "https://api.resend.com/emails"
TWILIO_MESSAGES_URL = "https://api.twilio.com/2010-04-01/Accounts/{sid}/Messages.json"
DISPATCH_MAX_ATTEMPTS = 3
DISPATCH_RETRY_BASE_DELAY = 0.5
DISPATCH_RETRY_MAX_DELAY = 4.0
DISPATCH_TIMEOUT_SECONDS = 20.0

# Provider rejected the recipient itself; retrying cannot help
PERMANENT_FAILURE_STATUSES = frozenset({400, 404, 422})

ClientFactory = Callable[[], httpx.AsyncClient]


@dataclass(frozen=True)
class OutboundMessage:
    """Rendered content for a single recipient."""

    body: str
    subject: str = ""
    idempotency_key: str | None = None
    unsubscribe_url: str | None = None


@dataclass(frozen=True)
class DispatchResult:
    success: bool
    error: str | None = None
    message_id: str | None = None
    permanent: bool = False  # Recipient-level failure, do not retry

    @classmethod
    def ok(cls, message_id: str | None = None) -> "DispatchResult":
        return cls(success=True, message_id=message_id)

    @classmethod
    def failed(cls, error: str, *, permanent: bool = False) -> "DispatchResult":
        return cls(success=False, error=error, permanent=permanent)


class MessageDispatcher(ABC):
    """Sends one message to one address on a channel."""

    @abstractmethod
    async def dispatch(
        self, channel: Channel | str, address: str, message: OutboundMessage
    ) -> DispatchResult:
        """Deliver the message; failures are returned, not raised."""


def _html_to_text(content: str) -> str:
    """Plain-text alternative for email clients that skip HTML."""
    text = re.sub(r"<(script|style)[^>]*>.*?</\1>", "", content, flags=re.DOTALL | re.I)
    text = re.sub(r"<[^>]+>", " ", text)
    text = re.sub(r"\s+", " ", text).strip()
    return html_module.unescape(text)


def _failure_from_response(provider: str, response: httpx.Response) -> DispatchResult:
    try:
        detail = response.json().get("message") or response.text
    except ValueError:
        detail = response.text
    error = f"{provider} error {response.status_code}: {detail[:300]}"
    return DispatchResult.failed(
        error, permanent=response.status_code in PERMANENT_FAILURE_STATUSES
    )


class ProviderDispatcher(MessageDispatcher):
    """Production dispatcher: Resend for email, Twilio for SMS."""

    def __init__(
        self,
        settings: Settings | None = None,
        client_factory: ClientFactory | None = None,
    ):
        self.settings = settings or app_settings
        self.client_factory = client_factory or (
            lambda: httpx.AsyncClient(timeout=DISPATCH_TIMEOUT_SECONDS)
        )

    async def dispatch(
        self, channel: Channel | str, address: str, message: OutboundMessage
    ) -> DispatchResult:
        channel = Channel(channel)
        try:
            if channel == Channel.EMAIL:
                return await self._send_email(address, message)
            return await self._send_sms(address, message)
        except httpx.TimeoutException:
            logger.warning("%s dispatch timed out", channel.value)
            return DispatchResult.failed("Connection timeout")
        except httpx.RequestError as exc:
            logger.warning("%s dispatch failed: %s", channel.value, exc.__class__.__name__)
            return DispatchResult.failed(f"Request error: {exc.__class__.__name__}")

    async def _send_email(self, address: str, message: OutboundMessage) -> DispatchResult:
        if not self.settings.RESEND_API_KEY or not self.settings.EMAIL_FROM:
            return DispatchResult.failed("Email provider not configured")

        payload: dict[str, object] = {
            "from": self.settings.EMAIL_FROM,
            "to": [address],
            "subject": message.subject,
            "html": message.body,
        }
        text = _html_to_text(message.body)
        if text:
            payload["text"] = text
        if self.settings.EMAIL_REPLY_TO:
            payload["reply_to"] = self.settings.EMAIL_REPLY_TO
        if message.unsubscribe_url:
            payload["headers"] = {
                "List-Unsubscribe": f"<{message.unsubscribe_url}>",
                "List-Unsubscribe-Post": "List-Unsubscribe=One-Click",
            }

        headers = {
            "Authorization": f"Bearer {self.settings.RESEND_API_KEY}",
            "Content-Type": "application/json",
        }
        if message.idempotency_key:
            headers["Idempotency-Key"] = message.idempotency_key

        async with self.client_factory() as client:

            async def request_fn() -> httpx.Response:
                return await client.post(RESEND_SEND_URL, headers=headers, json=payload)

            response = await request_with_retries(
                request_fn,
                max_attempts=DISPATCH_MAX_ATTEMPTS,
                base_delay=DISPATCH_RETRY_BASE_DELAY,
                max_delay=DISPATCH_RETRY_MAX_DELAY,
                retry_statuses=DEFAULT_RETRY_STATUSES,
            )

        if response.status_code >= 400:
            logger.warning("Resend rejected email to %s: %s", mask_email(address), response.status_code)
            return _failure_from_response("Resend", response)

        data = response.json() if response.content else {}
        return DispatchResult.ok(data.get("id"))

    async def _send_sms(self, address: str, message: OutboundMessage) -> DispatchResult:
        sid = self.settings.TWILIO_ACCOUNT_SID
        token = self.settings.TWILIO_AUTH_TOKEN
        if not sid or not token or not self.settings.TWILIO_FROM_NUMBER:
            return DispatchResult.failed("SMS provider not configured")

        url = TWILIO_MESSAGES_URL.format(sid=sid)
        form = {
            "To": address,
            "From": self.settings.TWILIO_FROM_NUMBER,
            "Body": message.body,
        }

        async with self.client_factory() as client:

            async def request_fn() -> httpx.Response:
                return await client.post(url, data=form, auth=(sid, token))

            response = await request_with_retries(
                request_fn,
                max_attempts=DISPATCH_MAX_ATTEMPTS,
                base_delay=DISPATCH_RETRY_BASE_DELAY,
                max_delay=DISPATCH_RETRY_MAX_DELAY,
                retry_statuses=DEFAULT_RETRY_STATUSES,
            )

        if response.status_code >= 400:
            logger.warning("Twilio rejected SMS to %s: %s", mask_phone(address), response.status_code)
            return _failure_from_response("Twilio", response)

        data = response.json() if response.content else {}
        return DispatchResult.ok(data.get("sid"))


@dataclass
class LoggingDispatcher(MessageDispatcher):
    """Dry-run dispatcher: logs and records instead of sending."""

    sent: list[tuple[str, str, OutboundMessage]] = field(default_factory=list)

    async def dispatch(
        self, channel: Channel | str, address: str, message: OutboundMessage
    ) -> DispatchResult:
        channel = Channel(channel)
        masked = mask_email(address) if channel == Channel.EMAIL else mask_phone(address)
        logger.info("Dry-run %s dispatch to %s", channel.value, masked)
        self.sent.append((channel.value, address, message))
        return DispatchResult.ok(f"dry-run-{len(self.sent)}")


def build_dispatcher(settings: Settings | None = None) -> MessageDispatcher:
    """Dispatcher for the current configuration."""
    settings = settings or app_settings
    if not settings.DISPATCH_ENABLED:
        return LoggingDispatcher()
    return ProviderDispatcher(settings)
