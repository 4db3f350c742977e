"""Send handlers, one per action kind."""

from __future__ import annotations

from stageflow.core.errors import PermanentSendError
from stageflow.services.content_service import RenderedContent
from stageflow.services.senders import EmailMessage, Recipient, Sender, SendResult


def _email_message(content: RenderedContent, from_name: str | None, reply_to: str | None) -> EmailMessage:
    return EmailMessage(
        subject=content.subject or "",
        html=content.body,
        from_name=from_name,
        reply_to=reply_to,
    )


async def process_email(sender: Sender, recipient: Recipient, content: RenderedContent, context) -> SendResult:
    return await sender.send_email(
        recipient,
        _email_message(content, context.from_name, context.reply_to),
        context.idempotency_key,
    )


async def process_sms(sender: Sender, recipient: Recipient, content: RenderedContent, context) -> SendResult:
    return await sender.send_sms(recipient, content.body, context.idempotency_key)


async def process_document_send(
    sender: Sender, recipient: Recipient, content: RenderedContent, context
) -> SendResult:
    if not content.document_ref:
        raise PermanentSendError("Document send has no document reference")
    return await sender.send_document(
        recipient,
        content.document_ref,
        _email_message(content, context.from_name, context.reply_to),
        context.idempotency_key,
    )
