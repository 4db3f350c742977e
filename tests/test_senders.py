"""Tests for provider senders and response classification."""
import httpx
import pytest

from stageflow.core.errors import PermanentSendError, TransientSendError
from stageflow.services import senders
from stageflow.services.senders import (
    EmailMessage,
    ProviderSender,
    Recipient,
    ResendEmailClient,
    TwilioSmsClient,
    raise_for_provider_status,
)


class TestProviderStatus:
    @pytest.mark.parametrize("status", [408, 425, 429, 500, 502, 503, 504, 599])
    def test_transient_statuses(self, status):
        with pytest.raises(TransientSendError):
            raise_for_provider_status("Resend", httpx.Response(status))

    @pytest.mark.parametrize("status", [400, 401, 403, 404, 422])
    def test_permanent_statuses(self, status):
        with pytest.raises(PermanentSendError):
            raise_for_provider_status("Resend", httpx.Response(status))

    def test_error_detail_included(self):
        with pytest.raises(PermanentSendError) as exc_info:
            raise_for_provider_status(
                "Twilio", httpx.Response(400, json={"message": "The 'To' number is not valid"})
            )
        assert str(exc_info.value) == "Twilio API error: 400 (The 'To' number is not valid)"


class TestResendClient:
    @pytest.mark.asyncio
    async def test_send_posts_payload_with_idempotency_key(self, monkeypatch):
        captured = {}

        async def capture_post(self, url, **kwargs):
            captured["url"] = url
            captured.update(kwargs)
            return httpx.Response(200, json={"id": "msg_123"})

        monkeypatch.setattr(httpx.AsyncClient, "post", capture_post)

        client = ResendEmailClient(api_key="re_test", from_email="hello@acme.test")
        result = await client.send(
            "dana@example.com",
            EmailMessage(subject="Hi", html="<p>Hello <b>Dana</b></p>", from_name="Acme", reply_to="team@acme.test"),
            "execution/abc",
        )

        assert result.message_id == "msg_123"
        assert captured["url"] == senders.RESEND_SEND_URL
        assert captured["headers"]["Idempotency-Key"] == "execution/abc"
        assert captured["json"]["from"] == "Acme <hello@acme.test>"
        assert captured["json"]["reply_to"] == "team@acme.test"
        assert captured["json"]["text"] == "Hello Dana"

    @pytest.mark.asyncio
    async def test_idempotency_conflict_counts_as_sent(self, monkeypatch):
        async def conflict(self, url, **kwargs):
            return httpx.Response(409, json={"id": "msg_prev"})

        monkeypatch.setattr(httpx.AsyncClient, "post", conflict)

        client = ResendEmailClient(api_key="re_test", from_email="hello@acme.test")
        result = await client.send("dana@example.com", EmailMessage(subject="Hi", html="x"), "k")

        assert result.message_id == "msg_prev"

    @pytest.mark.asyncio
    async def test_network_timeout_is_transient(self, monkeypatch):
        async def timeout(self, url, **kwargs):
            raise httpx.ReadTimeout("slow")

        monkeypatch.setattr(httpx.AsyncClient, "post", timeout)

        client = ResendEmailClient(api_key="re_test", from_email="hello@acme.test")
        with pytest.raises(TransientSendError):
            await client.send("dana@example.com", EmailMessage(subject="Hi", html="x"), "k")


class TestTwilioClient:
    @pytest.mark.asyncio
    async def test_send_posts_form_data(self, monkeypatch):
        captured = {}

        async def capture_post(self, url, **kwargs):
            captured["url"] = url
            captured.update(kwargs)
            return httpx.Response(201, json={"sid": "SM123"})

        monkeypatch.setattr(httpx.AsyncClient, "post", capture_post)

        client = TwilioSmsClient("AC123", "token", "+15550009999")
        result = await client.send("+15550101000", "Hi Dana")

        assert result.message_id == "SM123"
        assert captured["url"].endswith("/Accounts/AC123/Messages.json")
        assert captured["data"] == {"To": "+15550101000", "From": "+15550009999", "Body": "Hi Dana"}

    @pytest.mark.asyncio
    async def test_rate_limit_is_transient(self, monkeypatch):
        async def limited(self, url, **kwargs):
            return httpx.Response(429, json={"message": "Too Many Requests"})

        monkeypatch.setattr(httpx.AsyncClient, "post", limited)

        with pytest.raises(TransientSendError):
            await TwilioSmsClient("AC123", "token", "+15550009999").send("+15550101000", "Hi")


class TestProviderSender:
    @pytest.mark.asyncio
    async def test_dry_run_without_clients(self):
        sender = ProviderSender()

        email = await sender.send_email(Recipient(email="dana@example.com"), EmailMessage(subject="s", html="b"), "k")
        sms = await sender.send_sms(Recipient(phone="+15550101000"), "hi", "k")

        assert email.message_id.startswith("dry-run-")
        assert sms.message_id.startswith("dry-run-")

    @pytest.mark.asyncio
    async def test_missing_address_is_permanent(self):
        sender = ProviderSender()

        with pytest.raises(PermanentSendError):
            await sender.send_email(Recipient(name="No email"), EmailMessage(subject="s", html="b"), "k")
        with pytest.raises(PermanentSendError):
            await sender.send_sms(Recipient(name="No phone"), "hi", "k")

    def test_document_email_appends_link(self):
        message = senders.document_email(EmailMessage(subject="Contract", html="<p>Attached</p>"), "https://d/1")

        assert message.html == '<p>Attached</p><p><a href="https://d/1">View document</a></p>'

    def test_default_sender_runs_dry_without_credentials(self):
        sender = senders.get_default_sender()

        assert sender.email_client is None
        assert sender.sms_client is None
