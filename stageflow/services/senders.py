"""Outbound senders for email, SMS and document sends.

The dispatcher only talks to the Sender protocol. Failures are reported by
raising TransientSendError (timeouts, 5xx, rate limits: retried with
backoff) or PermanentSendError (rejected recipient or payload: never
retried). Default adapters call Resend and Twilio over httpx; when no
provider credentials are configured a logging dry-run sender is used.
"""

from __future__ import annotations

import html
import logging
import re
import uuid
from dataclasses import dataclass
from typing import Protocol

import httpx

from stageflow.core.config import settings
from stageflow.core.errors import PermanentSendError, TransientSendError
from stageflow.core.structured_logging import hash_recipient, mask_email, mask_phone

logger = logging.getLogger(__name__)

RESEND_SEND_URL = "https://api.resend.com/emails"
TWILIO_BASE_URL = "https://api.twilio.com/2010-04-01/Accounts"
TRANSIENT_STATUSES = {408, 425, 429, 500, 502, 503, 504}


@dataclass(frozen=True)
class Recipient:
    name: str = ""
    email: str | None = None
    phone: str | None = None


@dataclass(frozen=True)
class EmailMessage:
    subject: str
    html: str
    from_name: str | None = None
    reply_to: str | None = None


@dataclass(frozen=True)
class SendResult:
    message_id: str | None = None


class Sender(Protocol):
    async def send_email(
        self, recipient: Recipient, message: EmailMessage, idempotency_key: str
    ) -> SendResult:
        """Send an email or raise a SendError."""

    async def send_sms(self, recipient: Recipient, text: str, idempotency_key: str) -> SendResult:
        """Send a text message or raise a SendError."""

    async def send_document(
        self,
        recipient: Recipient,
        document_ref: str,
        message: EmailMessage,
        idempotency_key: str,
    ) -> SendResult:
        """Deliver a document link or raise a SendError."""


def html_to_text(content: str) -> str:
    """Plain-text alternative for an HTML body."""
    text = re.sub(r"<(script|style)[^>]*>.*?</\1>", "", content, flags=re.DOTALL | re.I)
    text = re.sub(r"<[^>]+>", " ", text)
    text = re.sub(r"\s+", " ", text).strip()
    return html.unescape(text)


def document_email(message: EmailMessage, document_ref: str) -> EmailMessage:
    """Email carrying a document link below the rendered body."""
    link = f'<p><a href="{document_ref}">View document</a></p>'
    return EmailMessage(
        subject=message.subject,
        html=f"{message.html}{link}" if message.html else link,
        from_name=message.from_name,
        reply_to=message.reply_to,
    )


def _error_detail(response: httpx.Response) -> str | None:
    try:
        data = response.json()
    except ValueError:
        return None
    if isinstance(data, dict):
        return data.get("message") or data.get("error")
    return None


def raise_for_provider_status(provider: str, response: httpx.Response) -> None:
    """Map a non-2xx provider response onto the send error taxonomy."""
    error_msg = f"{provider} API error: {response.status_code}"
    detail = _error_detail(response)
    if detail:
        error_msg = f"{error_msg} ({detail})"
    if response.status_code in TRANSIENT_STATUSES or response.status_code >= 500:
        raise TransientSendError(error_msg)
    raise PermanentSendError(error_msg)


class ResendEmailClient:
    """Email delivery through the Resend HTTP API."""

    def __init__(self, api_key: str, from_email: str, timeout: float | None = None):
        self.api_key = api_key
        self.from_email = from_email
        self.timeout = timeout or settings.SEND_TIMEOUT_SECONDS

    async def send(self, to_email: str, message: EmailMessage, idempotency_key: str) -> SendResult:
        from_address = (
            f"{message.from_name} <{self.from_email}>" if message.from_name else self.from_email
        )
        payload: dict[str, object] = {
            "from": from_address,
            "to": [to_email],
            "subject": message.subject,
            "html": message.html,
        }
        text = html_to_text(message.html)
        if text:
            payload["text"] = text
        if message.reply_to:
            payload["reply_to"] = message.reply_to

        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            # Stable across retries of the same execution
            "Idempotency-Key": idempotency_key,
        }

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(RESEND_SEND_URL, headers=headers, json=payload)
        except httpx.TimeoutException as exc:
            raise TransientSendError("Connection timeout") from exc
        except httpx.RequestError as exc:
            raise TransientSendError(f"Connection error: {exc.__class__.__name__}") from exc

        if 200 <= response.status_code < 300:
            return SendResult(message_id=response.json().get("id"))
        if response.status_code == 409:
            # Idempotency conflict = already sent
            message_id = None
            try:
                data = response.json()
                if isinstance(data, dict) and isinstance(data.get("id"), str):
                    message_id = data["id"]
            except ValueError:
                pass
            logger.info("Email already sent (409) for key %s", idempotency_key)
            return SendResult(message_id=message_id)
        raise_for_provider_status("Resend", response)


class TwilioSmsClient:
    """SMS delivery through the Twilio Messages REST API."""

    def __init__(
        self,
        account_sid: str,
        auth_token: str,
        from_number: str,
        timeout: float | None = None,
    ):
        self.account_sid = account_sid
        self.auth_token = auth_token
        self.from_number = from_number
        self.base_url = f"{TWILIO_BASE_URL}/{account_sid}"
        self.timeout = timeout or settings.SEND_TIMEOUT_SECONDS

    async def send(self, to_number: str, text: str) -> SendResult:
        data = {"To": to_number, "From": self.from_number, "Body": text}
        try:
            async with httpx.AsyncClient(
                auth=(self.account_sid, self.auth_token),
                timeout=self.timeout,
            ) as client:
                response = await client.post(f"{self.base_url}/Messages.json", data=data)
        except httpx.TimeoutException as exc:
            raise TransientSendError("Connection timeout") from exc
        except httpx.RequestError as exc:
            raise TransientSendError(f"Connection error: {exc.__class__.__name__}") from exc

        if 200 <= response.status_code < 300:
            return SendResult(message_id=response.json().get("sid"))
        raise_for_provider_status("Twilio", response)


class ProviderSender:
    """
    Default Sender: Resend for email and documents, Twilio for SMS.

    A channel without credentials logs the message instead of sending it.
    """

    def __init__(
        self,
        email_client: ResendEmailClient | None = None,
        sms_client: TwilioSmsClient | None = None,
    ):
        self.email_client = email_client
        self.sms_client = sms_client

    async def send_email(
        self, recipient: Recipient, message: EmailMessage, idempotency_key: str
    ) -> SendResult:
        if not recipient.email:
            raise PermanentSendError("Recipient has no email address")
        if self.email_client is None:
            logger.info(
                "[dry-run] email to %s subject=%r",
                mask_email(recipient.email),
                message.subject,
            )
            return SendResult(message_id=f"dry-run-{uuid.uuid4().hex[:12]}")
        result = await self.email_client.send(recipient.email, message, idempotency_key)
        logger.info(
            "Email sent to %s, message_id=%s",
            hash_recipient(recipient.email),
            result.message_id,
        )
        return result

    async def send_sms(self, recipient: Recipient, text: str, idempotency_key: str) -> SendResult:
        if not recipient.phone:
            raise PermanentSendError("Recipient has no phone number")
        if self.sms_client is None:
            logger.info("[dry-run] sms to %s (%s chars)", mask_phone(recipient.phone), len(text))
            return SendResult(message_id=f"dry-run-{uuid.uuid4().hex[:12]}")
        result = await self.sms_client.send(recipient.phone, text)
        logger.info("SMS sent to %s, sid=%s", hash_recipient(recipient.phone), result.message_id)
        return result

    async def send_document(
        self,
        recipient: Recipient,
        document_ref: str,
        message: EmailMessage,
        idempotency_key: str,
    ) -> SendResult:
        return await self.send_email(recipient, document_email(message, document_ref), idempotency_key)


def get_default_sender() -> ProviderSender:
    """Sender built from settings; unconfigured channels run dry."""
    email_client = None
    if not settings.email_dry_run:
        email_client = ResendEmailClient(settings.RESEND_API_KEY, settings.EMAIL_FROM)
    sms_client = None
    if not settings.sms_dry_run:
        sms_client = TwilioSmsClient(
            settings.TWILIO_ACCOUNT_SID,
            settings.TWILIO_AUTH_TOKEN,
            settings.TWILIO_FROM_NUMBER,
        )
    if email_client is None or sms_client is None:
        logger.warning(
            "Provider credentials missing, dry-run for: %s",
            ", ".join(
                name
                for name, client in (("email", email_client), ("sms", sms_client))
                if client is None
            ),
        )
    return ProviderSender(email_client=email_client, sms_client=sms_client)
