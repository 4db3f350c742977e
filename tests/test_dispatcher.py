"""Tests for sweeping due executions and recording delivery outcomes."""
import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import update

from stageflow.core.errors import PermanentSendError, TransientSendError
from stageflow.db.enums import (
    ActionKind,
    CancelReason,
    EnrollmentStatus,
    ExecutionStatus,
    RecipientKind,
    TemplateChannel,
)
from stageflow.db.models import AutomationRule, DripEnrollment, ScheduledExecution
from stageflow.db.session import SessionLocal
from stageflow.schemas.automation import (
    AutomationRuleCreate,
    AutomationRuleUpdate,
    AutomationStepCreate,
    AutomationStepUpdate,
)
from stageflow.schemas.drip import DripCampaignCreate, DripStepCreate
from stageflow.services import (
    automation_service,
    cadence_generator,
    content_service,
    drip_service,
    entity_service,
    schedule_store,
)
from stageflow.services.dispatcher import Dispatcher
from stageflow.services.rule_matcher import handle_stage_change
from stageflow.services.senders import SendResult
from stageflow.services.trigger_detector import StageChangeEvent


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


T = utc(2026, 6, 1, 15)


def _schedule(db, org, entity, stages, **step_kwargs):
    """One immediate step fired by entering Inquiry at T."""
    step_kwargs.setdefault("subject", "Hello {{first_name}}")
    step_kwargs.setdefault("body", "<p>Welcome {{first_name}}</p>")
    rule = automation_service.create_rule(
        db,
        org.id,
        AutomationRuleCreate(name="Welcome", steps=[AutomationStepCreate(**step_kwargs)]),
    )
    handle_stage_change(
        db,
        StageChangeEvent(
            org_id=org.id,
            entity_id=entity.id,
            from_stage_id=None,
            to_stage_id=stages["Inquiry"].id,
            occurred_at=T,
        ),
    )
    return rule


def _only_execution(db) -> ScheduledExecution:
    db.expire_all()
    return db.query(ScheduledExecution).one()


@pytest.mark.asyncio
async def test_due_email_is_sent(db, test_org, stages, test_entity, fake_sender):
    _schedule(db, test_org, test_entity, stages)

    result = await Dispatcher(sender=fake_sender).run_sweep(db, now=T + timedelta(seconds=5))

    execution = _only_execution(db)
    assert (result.claimed, result.sent) == (1, 1)
    assert execution.status == ExecutionStatus.SENT.value
    assert execution.attempt_count == 1
    assert execution.provider_message_id == "fake-1"

    call = fake_sender.calls[0]
    assert call["kind"] == "email"
    assert call["recipient"].email == "dana@example.com"
    assert call["message"].subject == "Hello Dana"
    assert call["key"] == f"execution/{execution.id}"


@pytest.mark.asyncio
async def test_future_execution_not_claimed(db, test_org, stages, test_entity, fake_sender):
    _schedule(db, test_org, test_entity, stages)

    result = await Dispatcher(sender=fake_sender).run_sweep(db, now=T - timedelta(seconds=1))

    assert result.claimed == 0
    assert fake_sender.calls == []


@pytest.mark.asyncio
async def test_transient_failures_retry_with_backoff(db, test_org, stages, test_entity, fake_sender):
    _schedule(db, test_org, test_entity, stages)
    fake_sender.script(TransientSendError("Resend API error: 503"), TransientSendError("Connection timeout"))
    dispatcher = Dispatcher(sender=fake_sender)

    first = await dispatcher.run_sweep(db, now=T)
    execution = _only_execution(db)
    assert first.retried == 1
    assert execution.status == ExecutionStatus.PENDING.value
    assert execution.due_at == T + timedelta(seconds=60)
    assert execution.last_error == "Resend API error: 503"

    idle = await dispatcher.run_sweep(db, now=T + timedelta(seconds=30))
    assert idle.claimed == 0

    await dispatcher.run_sweep(db, now=T + timedelta(seconds=60))
    assert _only_execution(db).due_at == T + timedelta(seconds=180)

    last = await dispatcher.run_sweep(db, now=T + timedelta(seconds=180))
    execution = _only_execution(db)
    assert last.sent == 1
    assert execution.status == ExecutionStatus.SENT.value
    assert execution.attempt_count == 3
    assert execution.last_error is None
    # Same key on every attempt so providers can deduplicate
    assert {c["key"] for c in fake_sender.calls} == {f"execution/{execution.id}"}


@pytest.mark.asyncio
async def test_exhausted_attempts_fail(db, test_org, stages, test_entity, fake_sender):
    _schedule(db, test_org, test_entity, stages)
    fake_sender.script(*(TransientSendError("Twilio API error: 500") for _ in range(3)))
    dispatcher = Dispatcher(sender=fake_sender)

    for offset in (0, 60, 180):
        await dispatcher.run_sweep(db, now=T + timedelta(seconds=offset))

    execution = _only_execution(db)
    assert execution.status == ExecutionStatus.FAILED.value
    assert execution.attempt_count == 3
    assert "500" in execution.last_error


@pytest.mark.asyncio
async def test_permanent_failure_not_retried(db, test_org, stages, test_entity, fake_sender):
    _schedule(db, test_org, test_entity, stages)
    fake_sender.script(PermanentSendError("Resend API error: 422 (invalid to address)"))

    result = await Dispatcher(sender=fake_sender).run_sweep(db, now=T)

    execution = _only_execution(db)
    assert result.failed == 1
    assert execution.status == ExecutionStatus.FAILED.value
    assert execution.attempt_count == 1


@pytest.mark.asyncio
async def test_missing_consent_fails_without_sending(db, test_org, stages, test_entity, fake_sender):
    entity_service.upsert_entity(db, test_org.id, test_entity.id, sms_opt_in=False)
    _schedule(db, test_org, test_entity, stages, action_kind=ActionKind.SMS, subject=None, body="Hi {{first_name}}")

    await Dispatcher(sender=fake_sender).run_sweep(db, now=T)

    execution = _only_execution(db)
    assert execution.status == ExecutionStatus.FAILED.value
    assert "opted in" in execution.last_error
    assert fake_sender.calls == []


@pytest.mark.asyncio
async def test_inactive_entity_fails(db, test_org, stages, test_entity, fake_sender):
    _schedule(db, test_org, test_entity, stages)
    entity_service.upsert_entity(db, test_org.id, test_entity.id, is_active=False)

    await Dispatcher(sender=fake_sender).run_sweep(db, now=T)

    assert _only_execution(db).status == ExecutionStatus.FAILED.value
    assert fake_sender.calls == []


@pytest.mark.asyncio
async def test_owner_sms_goes_to_owning_user(db, test_org, stages, test_entity, fake_sender):
    entity_service.upsert_entity(db, test_org.id, test_entity.id, sms_opt_in=False)
    _schedule(
        db,
        test_org,
        test_entity,
        stages,
        action_kind=ActionKind.SMS,
        recipient_kind=RecipientKind.OWNING_USER,
        subject=None,
        body="{{full_name}} entered {{stage_name}}",
    )

    await Dispatcher(sender=fake_sender).run_sweep(db, now=T)

    call = fake_sender.calls[0]
    assert call["kind"] == "sms"
    assert call["recipient"].phone == "+15550102000"
    assert call["text"] == "Dana Reyes entered Inquiry"


@pytest.mark.asyncio
async def test_document_send(db, test_org, stages, test_entity, fake_sender):
    _schedule(
        db,
        test_org,
        test_entity,
        stages,
        action_kind=ActionKind.DOCUMENT_SEND,
        subject="Your contract",
        body=None,
        document_ref="https://docs.example.com/contract.pdf",
    )

    await Dispatcher(sender=fake_sender).run_sweep(db, now=T)

    call = fake_sender.calls[0]
    assert call["kind"] == "document"
    assert call["document_ref"] == "https://docs.example.com/contract.pdf"
    assert call["message"].subject == "Your contract"


@pytest.mark.asyncio
async def test_template_edits_apply_to_pending_sends(db, test_org, stages, test_entity, fake_sender):
    template = content_service.create_template(
        db, test_org.id, name="Welcome", channel=TemplateChannel.EMAIL, subject="Old", body="Old body"
    )
    _schedule(db, test_org, test_entity, stages, template_id=template.id, subject=None, body=None)
    content_service.update_template(db, template, subject="New for {{first_name}}")

    await Dispatcher(sender=fake_sender).run_sweep(db, now=T)

    assert fake_sender.calls[0]["message"].subject == "New for Dana"


@pytest.mark.asyncio
async def test_canceled_execution_never_sent(db, test_org, stages, test_entity, fake_sender):
    rule = _schedule(db, test_org, test_entity, stages)
    automation_service.update_rule(db, rule, AutomationRuleUpdate(is_enabled=False))

    result = await Dispatcher(sender=fake_sender).run_sweep(db, now=T)

    assert result.claimed == 0
    assert fake_sender.calls == []
    assert _only_execution(db).status == ExecutionStatus.CANCELED.value


@pytest.mark.asyncio
async def test_stale_claim_reclaimed_for_retry(db, test_org, stages, test_entity, fake_sender):
    _schedule(db, test_org, test_entity, stages)
    execution = _only_execution(db)
    # Worker claimed it an hour ago and died
    schedule_store.claim_execution(db, execution.id, T - timedelta(hours=1))

    result = await Dispatcher(sender=fake_sender).run_sweep(db, now=T)

    execution = _only_execution(db)
    assert (result.reclaimed, result.retried, result.claimed) == (1, 1, 0)
    assert execution.status == ExecutionStatus.PENDING.value
    assert execution.due_at == T + timedelta(seconds=60)
    assert "never completed" in execution.last_error


class SlowSender:
    async def send_email(self, recipient, message, idempotency_key):
        await asyncio.sleep(5)
        return SendResult(message_id="late")


@pytest.mark.asyncio
async def test_send_timeout_is_transient(db, test_org, stages, test_entity):
    _schedule(db, test_org, test_entity, stages)

    result = await Dispatcher(sender=SlowSender(), send_timeout=0.05).run_sweep(db, now=T)

    execution = _only_execution(db)
    assert result.retried == 1
    assert execution.status == ExecutionStatus.PENDING.value
    assert "timed out" in execution.last_error


@pytest.mark.asyncio
async def test_unexpected_sender_error_is_transient(db, test_org, stages, test_entity, fake_sender):
    _schedule(db, test_org, test_entity, stages)
    fake_sender.script(RuntimeError("boom"))

    result = await Dispatcher(sender=fake_sender).run_sweep(db, now=T)

    assert result.retried == 1
    assert _only_execution(db).last_error == "Sender error: RuntimeError"


@pytest.mark.asyncio
async def test_batch_size_limits_claims(db, test_org, stages, test_entity, fake_sender):
    automation_service.create_rule(
        db,
        test_org.id,
        AutomationRuleCreate(
            name="Many",
            steps=[AutomationStepCreate(subject="s", body="b") for _ in range(3)],
        ),
    )
    handle_stage_change(
        db,
        StageChangeEvent(
            org_id=test_org.id,
            entity_id=test_entity.id,
            from_stage_id=None,
            to_stage_id=stages["Inquiry"].id,
            occurred_at=T,
        ),
    )

    result = await Dispatcher(sender=fake_sender, batch_size=2).run_sweep(db, now=T)

    assert result.sent == 2


@pytest.mark.asyncio
async def test_drip_enrollment_completes_after_last_send(db, test_org, test_entity, fake_sender):
    campaign = drip_service.create_campaign(
        db,
        test_org.id,
        DripCampaignCreate(
            name="Short",
            steps=[DripStepCreate(days_after_start=0, action_kind=ActionKind.SMS, body="Hi {{first_name}}")],
        ),
    )
    enrollment = drip_service.enroll_entity(db, campaign, test_entity.id, T)

    await Dispatcher(sender=fake_sender).run_sweep(db, now=T)

    db.refresh(enrollment)
    assert fake_sender.calls[0]["text"] == "Hi Dana"
    assert enrollment.status == EnrollmentStatus.COMPLETED.value


# =============================================================================
# Sources that go away while a row is claimed
# =============================================================================

class ConfigChangingSender:
    """Applies a configuration change from another session, then fails transiently."""

    def __init__(self, change):
        self.change = change
        self.calls = 0

    async def _send(self) -> SendResult:
        self.calls += 1
        if self.calls == 1:
            other = SessionLocal()
            try:
                self.change(other)
            finally:
                other.close()
            raise TransientSendError("Resend API error: 503")
        return SendResult(message_id=f"late-{self.calls}")

    async def send_email(self, recipient, message, idempotency_key):
        return await self._send()

    async def send_sms(self, recipient, text, idempotency_key):
        return await self._send()


@pytest.mark.asyncio
async def test_rule_disabled_during_send_is_not_retried(db, test_org, stages, test_entity):
    rule = _schedule(db, test_org, test_entity, stages)

    def disable_rule(other):
        automation_service.update_rule(
            other, other.get(AutomationRule, rule.id), AutomationRuleUpdate(is_enabled=False)
        )

    sender = ConfigChangingSender(disable_rule)
    dispatcher = Dispatcher(sender=sender)

    first = await dispatcher.run_sweep(db, now=T)
    later = await dispatcher.run_sweep(db, now=T + timedelta(seconds=120))

    execution = _only_execution(db)
    assert (first.canceled, first.retried) == (1, 0)
    assert later.claimed == 0
    assert sender.calls == 1
    assert execution.status == ExecutionStatus.CANCELED.value
    assert execution.cancel_reason == CancelReason.RULE_DISABLED.value


@pytest.mark.asyncio
async def test_unenrolled_during_send_is_not_retried(db, test_org, test_entity):
    campaign = drip_service.create_campaign(
        db,
        test_org.id,
        DripCampaignCreate(
            name="Short",
            steps=[DripStepCreate(days_after_start=0, action_kind=ActionKind.SMS, body="Hi {{first_name}}")],
        ),
    )
    enrollment = drip_service.enroll_entity(db, campaign, test_entity.id, T)

    def unenroll(other):
        cadence_generator.unenroll(other, other.get(DripEnrollment, enrollment.id))

    sender = ConfigChangingSender(unenroll)
    dispatcher = Dispatcher(sender=sender)

    await dispatcher.run_sweep(db, now=T)
    later = await dispatcher.run_sweep(db, now=T + timedelta(seconds=120))

    execution = _only_execution(db)
    assert later.claimed == 0
    assert sender.calls == 1
    assert execution.status == ExecutionStatus.CANCELED.value
    assert execution.cancel_reason == CancelReason.UNENROLLED.value


@pytest.mark.asyncio
async def test_claimed_row_of_disabled_rule_is_canceled_unsent(db, test_org, stages, test_entity, fake_sender):
    rule = _schedule(db, test_org, test_entity, stages)
    # Disabled without going through the service, so the row is still pending
    db.execute(update(AutomationRule).where(AutomationRule.id == rule.id).values(is_enabled=False))
    db.commit()

    result = await Dispatcher(sender=fake_sender).run_sweep(db, now=T)

    execution = _only_execution(db)
    assert (result.claimed, result.canceled, result.sent) == (1, 1, 0)
    assert fake_sender.calls == []
    assert execution.cancel_reason == CancelReason.RULE_DISABLED.value


@pytest.mark.asyncio
async def test_stale_claim_of_disabled_step_is_canceled(db, test_org, stages, test_entity, fake_sender):
    rule = _schedule(db, test_org, test_entity, stages)
    execution = _only_execution(db)
    schedule_store.claim_execution(db, execution.id, T - timedelta(hours=1))
    automation_service.update_step(db, rule, rule.steps[0], AutomationStepUpdate(is_enabled=False))

    result = await Dispatcher(sender=fake_sender).run_sweep(db, now=T)

    execution = _only_execution(db)
    assert (result.reclaimed, result.canceled, result.retried) == (1, 1, 0)
    assert execution.status == ExecutionStatus.CANCELED.value
    assert execution.cancel_reason == CancelReason.STEP_DISABLED.value
    assert fake_sender.calls == []


# =============================================================================
# Retries and quiet hours
# =============================================================================

@pytest.mark.asyncio
async def test_retry_landing_in_quiet_hours_is_deferred(db, test_org, stages, test_entity, fake_sender):
    automation_service.create_rule(
        db,
        test_org.id,
        AutomationRuleCreate(
            name="Evening",
            steps=[AutomationStepCreate(subject="s", body="b", quiet_hours_start=22, quiet_hours_end=6)],
        ),
    )
    # 21:59:30 EDT, just before the window opens
    occurred_at = utc(2026, 6, 2, 1, 59, 30)
    handle_stage_change(
        db,
        StageChangeEvent(
            org_id=test_org.id,
            entity_id=test_entity.id,
            from_stage_id=None,
            to_stage_id=stages["Inquiry"].id,
            occurred_at=occurred_at,
        ),
    )
    fake_sender.script(TransientSendError("Resend API error: 503"))

    await Dispatcher(sender=fake_sender).run_sweep(db, now=occurred_at)

    execution = _only_execution(db)
    assert execution.status == ExecutionStatus.PENDING.value
    # now + 60s is 22:00:30 local, inside the window; released at 07:00 EDT
    assert execution.due_at == utc(2026, 6, 2, 11, 0)


# =============================================================================
# Concurrent workers
# =============================================================================

class YieldingSender:
    def __init__(self):
        self.keys: list[str] = []

    async def send_email(self, recipient, message, idempotency_key):
        self.keys.append(idempotency_key)
        await asyncio.sleep(0.01)
        return SendResult(message_id=f"yield-{len(self.keys)}")


@pytest.mark.asyncio
async def test_concurrent_sweeps_send_once(db, test_org, stages, test_entity):
    _schedule(db, test_org, test_entity, stages)
    sender = YieldingSender()
    first_session, second_session = SessionLocal(), SessionLocal()

    try:
        results = await asyncio.gather(
            Dispatcher(sender=sender).run_sweep(first_session, now=T),
            Dispatcher(sender=sender).run_sweep(second_session, now=T),
        )
    finally:
        first_session.close()
        second_session.close()

    execution = _only_execution(db)
    assert len(sender.keys) == 1
    assert sum(r.claimed for r in results) == 1
    assert sum(r.sent for r in results) == 1
    assert execution.status == ExecutionStatus.SENT.value
    assert execution.attempt_count == 1
