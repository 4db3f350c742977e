"""Dispatcher - claims due executions and hands them to a sender.

One sweep:
1. Reclaim in_progress rows whose worker never finished (stale claims).
2. Select pending rows due at or before now, oldest first.
3. Claim each with a conditional update; a lost race is skipped.
4. Cancel the claim if its rule, step, campaign or enrollment is no longer
   live; otherwise resolve recipient and content and call the sender.
5. Record sent, retry-with-backoff, or failed. A retry whose source went
   away during the attempt is canceled instead.

Send errors are recorded on the row. Database errors propagate and abort
the sweep.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from stageflow.core.config import settings
from stageflow.core.errors import PermanentSendError, SendError, StaleClaimError, TransientSendError
from stageflow.core.structured_logging import build_log_context
from stageflow.db.enums import (
    ActionKind,
    AutomationTriggerKind,
    CancelReason,
    EnrollmentStatus,
    ExecutionSource,
    ExecutionStatus,
    RecipientKind,
)
from stageflow.db.models import (
    AutomationRule,
    AutomationStep,
    DripCampaign,
    DripCampaignStep,
    DripEnrollment,
    Organization,
    ScheduledExecution,
    TrackedEntity,
)
from stageflow.jobs.registry import resolve_action_handler
from stageflow.services import cadence_generator, content_service, entity_service, schedule_store
from stageflow.services.delay_resolver import defer_for_quiet_hours
from stageflow.services.senders import Recipient, Sender, SendResult, get_default_sender
from stageflow.utils.time import utcnow

logger = logging.getLogger(__name__)


@dataclass
class SweepResult:
    reclaimed: int = 0
    claimed: int = 0
    skipped: int = 0
    sent: int = 0
    retried: int = 0
    failed: int = 0
    canceled: int = 0


@dataclass(frozen=True)
class SendContext:
    idempotency_key: str
    from_name: str | None = None
    reply_to: str | None = None


def resolve_recipient(db: Session, execution: ScheduledExecution, entity: TrackedEntity) -> Recipient:
    """
    Recipient for an execution, enforcing channel consent for entity contacts.

    Raises:
        PermanentSendError: inactive entity, no owner, or missing opt-in
    """
    if not entity.is_active:
        raise PermanentSendError("Entity is inactive")

    recipient_kind = RecipientKind.ENTITY_CONTACT
    if execution.step_id:
        step = db.get(AutomationStep, execution.step_id)
        if step is not None:
            recipient_kind = RecipientKind(step.recipient_kind)

    if recipient_kind == RecipientKind.OWNING_USER:
        owner = entity.owner
        if owner is None:
            raise PermanentSendError("Entity has no owning user")
        return Recipient(name=owner.display_name, email=owner.email, phone=owner.phone)

    action_kind = ActionKind(execution.action_kind)
    if action_kind == ActionKind.SMS and not entity.sms_opt_in:
        raise PermanentSendError("Recipient has not opted in to SMS")
    if action_kind in (ActionKind.EMAIL, ActionKind.DOCUMENT_SEND) and not entity.email_opt_in:
        raise PermanentSendError("Recipient has not opted in to email")
    return Recipient(name=entity.full_name, email=entity.email, phone=entity.phone)


def _automation_cancel_reason(db: Session, execution: ScheduledExecution) -> CancelReason | None:
    rule = None
    if execution.rule_id:
        rule = db.execute(
            select(
                AutomationRule.is_enabled,
                AutomationRule.trigger_kind,
                AutomationRule.cancel_on_stage_exit,
            ).where(AutomationRule.id == execution.rule_id)
        ).one_or_none()
    if rule is None:
        return CancelReason.RULE_DELETED
    if not rule.is_enabled:
        return CancelReason.RULE_DISABLED

    step_enabled = None
    if execution.step_id:
        step_enabled = db.execute(
            select(AutomationStep.is_enabled).where(AutomationStep.id == execution.step_id)
        ).scalar_one_or_none()
    if step_enabled is None:
        return CancelReason.STEP_DELETED
    if not step_enabled:
        return CancelReason.STEP_DISABLED

    if rule.cancel_on_stage_exit and rule.trigger_kind == AutomationTriggerKind.SPECIFIC_STAGE.value:
        current_stage_id = db.execute(
            select(TrackedEntity.stage_id).where(TrackedEntity.id == execution.entity_id)
        ).scalar_one_or_none()
        if current_stage_id != execution.trigger_stage_id:
            return CancelReason.STAGE_EXIT
    return None


def _drip_cancel_reason(db: Session, execution: ScheduledExecution) -> CancelReason | None:
    campaign_enabled = None
    if execution.campaign_id:
        campaign_enabled = db.execute(
            select(DripCampaign.is_enabled).where(DripCampaign.id == execution.campaign_id)
        ).scalar_one_or_none()
    if campaign_enabled is None:
        return CancelReason.CAMPAIGN_DELETED
    if not campaign_enabled:
        return CancelReason.CAMPAIGN_DISABLED

    step_id = None
    if execution.drip_step_id:
        step_id = db.execute(
            select(DripCampaignStep.id).where(DripCampaignStep.id == execution.drip_step_id)
        ).scalar_one_or_none()
    if step_id is None:
        return CancelReason.CAMPAIGN_STEP_DELETED

    enrollment_status = None
    if execution.enrollment_id:
        enrollment_status = db.execute(
            select(DripEnrollment.status).where(DripEnrollment.id == execution.enrollment_id)
        ).scalar_one_or_none()
    if enrollment_status != EnrollmentStatus.ACTIVE.value:
        return CancelReason.UNENROLLED
    return None


def source_cancel_reason(db: Session, execution: ScheduledExecution) -> CancelReason | None:
    """
    Why a claimed execution must not be sent, or None while its source is live.

    Reads the rule, step, campaign and enrollment straight from the database
    so configuration committed by other sessions mid-attempt is seen.
    """
    if execution.source_type == ExecutionSource.DRIP.value:
        return _drip_cancel_reason(db, execution)
    return _automation_cancel_reason(db, execution)


class Dispatcher:
    """Sweeps the schedule store and delivers due executions."""

    def __init__(
        self,
        sender: Sender | None = None,
        batch_size: int | None = None,
        send_timeout: float | None = None,
        stale_claim_seconds: int | None = None,
    ):
        self.sender = sender or get_default_sender()
        self.batch_size = batch_size or settings.WORKER_BATCH_SIZE
        self.send_timeout = send_timeout or settings.SEND_TIMEOUT_SECONDS
        self.stale_claim_seconds = stale_claim_seconds or settings.STALE_CLAIM_SECONDS

    async def run_sweep(self, db: Session, now: datetime | None = None) -> SweepResult:
        now = now or utcnow()
        result = SweepResult()

        for execution_id in schedule_store.select_stale_ids(db, now, self.stale_claim_seconds):
            self._reclaim(db, execution_id, now, result)

        due_ids = schedule_store.select_due_ids(db, now, self.batch_size)
        # Release SKIP LOCKED row locks; the conditional claim is authoritative
        db.commit()

        for execution_id in due_ids:
            if not schedule_store.claim_execution(db, execution_id, now):
                result.skipped += 1
                continue
            result.claimed += 1
            await self.process_execution(db, execution_id, now, result)

        if result.claimed or result.reclaimed:
            logger.info(
                "Sweep done: claimed=%s sent=%s retried=%s failed=%s canceled=%s skipped=%s reclaimed=%s",
                result.claimed,
                result.sent,
                result.retried,
                result.failed,
                result.canceled,
                result.skipped,
                result.reclaimed,
            )
        return result

    def _reclaim(self, db: Session, execution_id: UUID, now: datetime, result: SweepResult) -> None:
        execution = db.get(ScheduledExecution, execution_id)
        if execution is None:
            return
        error = StaleClaimError(f"Claim from {execution.claimed_at} never completed")
        status = self._record_failure(db, execution, error, now, result)
        result.reclaimed += 1
        logger.warning(
            "Reclaimed stale execution %s -> %s",
            execution_id,
            status,
            extra=build_log_context(execution_id=str(execution_id)),
        )
        if execution.enrollment_id and status != ExecutionStatus.PENDING.value:
            cadence_generator.complete_if_finished(db, execution.enrollment_id, now)

    def _retry_due_at(self, db: Session, execution: ScheduledExecution, now: datetime) -> datetime:
        """Backed-off retry time, moved out of the step's quiet window if it has one."""
        retry_at = now + schedule_store.backoff_delay(execution.attempt_count)
        if not execution.step_id:
            return retry_at
        window = db.execute(
            select(AutomationStep.quiet_hours_start, AutomationStep.quiet_hours_end).where(
                AutomationStep.id == execution.step_id
            )
        ).one_or_none()
        if window is None or window.quiet_hours_start is None:
            return retry_at
        tz = entity_service.get_org_zone(db, execution.organization_id)
        return defer_for_quiet_hours(retry_at, tz, window.quiet_hours_start, window.quiet_hours_end)

    def _cancel_claim(
        self,
        db: Session,
        execution: ScheduledExecution,
        reason: CancelReason,
        now: datetime,
        result: SweepResult,
    ) -> str:
        schedule_store.cancel_claimed(db, execution.id, reason, now)
        result.canceled += 1
        logger.info(
            "Execution %s canceled (%s)",
            execution.id,
            reason.value,
            extra=build_log_context(execution_id=str(execution.id)),
        )
        return ExecutionStatus.CANCELED.value

    def _record_failure(
        self,
        db: Session,
        execution: ScheduledExecution,
        error: SendError,
        now: datetime,
        result: SweepResult,
    ) -> str:
        retry_at = None
        if error.retryable and execution.attempt_count < execution.max_attempts:
            reason = source_cancel_reason(db, execution)
            if reason is not None:
                return self._cancel_claim(db, execution, reason, now, result)
            retry_at = self._retry_due_at(db, execution, now)

        status = schedule_store.mark_failed_attempt(
            db, execution, str(error), now, error.retryable, retry_at=retry_at
        )
        if status == ExecutionStatus.PENDING.value:
            result.retried += 1
        else:
            result.failed += 1
        return status

    async def process_execution(
        self,
        db: Session,
        execution_id: UUID,
        now: datetime,
        result: SweepResult,
    ) -> None:
        """Deliver one claimed execution and record the outcome."""
        execution = db.get(ScheduledExecution, execution_id)
        log_ctx = build_log_context(
            org_id=str(execution.organization_id),
            entity_id=str(execution.entity_id),
            execution_id=str(execution.id),
        )

        reason = source_cancel_reason(db, execution)
        if reason is not None:
            self._cancel_claim(db, execution, reason, now, result)
        else:
            try:
                send_result = await self._deliver(db, execution)
            except SendError as exc:
                status = self._record_failure(db, execution, exc, now, result)
                logger.warning(
                    "Execution %s attempt %s failed (%s) -> %s",
                    execution.id,
                    execution.attempt_count,
                    type(exc).__name__,
                    status,
                    extra=log_ctx,
                )
            else:
                schedule_store.mark_sent(db, execution.id, now, send_result.message_id)
                result.sent += 1
                logger.info("Execution %s sent", execution.id, extra=log_ctx)

        if execution.enrollment_id:
            cadence_generator.complete_if_finished(db, execution.enrollment_id, now)

    async def _deliver(self, db: Session, execution: ScheduledExecution) -> SendResult:
        entity = db.get(TrackedEntity, execution.entity_id)
        if entity is None:
            raise PermanentSendError("Entity no longer exists")

        recipient = resolve_recipient(db, execution, entity)
        content = content_service.render_for_execution(db, execution, entity)
        org = db.get(Organization, execution.organization_id)
        context = SendContext(
            idempotency_key=f"execution/{execution.id}",
            from_name=org.email_from_name if org else None,
            reply_to=org.email_reply_to if org else None,
        )

        try:
            handler = resolve_action_handler(execution.action_kind)
        except ValueError as exc:
            raise PermanentSendError(str(exc)) from exc

        try:
            return await asyncio.wait_for(
                handler(self.sender, recipient, content, context),
                timeout=self.send_timeout,
            )
        except asyncio.TimeoutError as exc:
            raise TransientSendError(f"Send timed out after {self.send_timeout}s") from exc
        except SendError:
            raise
        except SQLAlchemyError:
            raise
        except Exception as exc:
            logger.exception("Unexpected sender error for execution %s", execution.id)
            raise TransientSendError(f"Sender error: {type(exc).__name__}") from exc
