"""Automation rule matcher - schedules rule steps for a trigger occurrence.

Request-path entry point is handle_stage_change(): record the occurrence,
cancel opted-in work for the stage that was left, schedule every matching
rule's steps, and enroll the entity in campaigns targeting the new stage.
Sending never happens here; the dispatcher picks rows up when due.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from uuid import UUID
from zoneinfo import ZoneInfo

from sqlalchemy import or_
from sqlalchemy.orm import Session, selectinload

from stageflow.core.errors import DedupSkip
from stageflow.core.structured_logging import build_log_context
from stageflow.db.enums import AutomationTriggerKind, ExecutionSource
from stageflow.db.models import AutomationRule, DripEnrollment, ScheduledExecution
from stageflow.services import (
    cadence_generator,
    entity_service,
    reconciliation,
    schedule_store,
    trigger_detector,
)
from stageflow.services.delay_resolver import (
    defer_for_quiet_hours,
    delay_spec_from_columns,
    resolve_due_at,
)
from stageflow.services.trigger_detector import StageChangeEvent, TriggerEvent

logger = logging.getLogger(__name__)


@dataclass
class ScheduleResult:
    """Outcome of scheduling one trigger occurrence."""

    trigger: TriggerEvent | None = None
    rules_matched: list[UUID] = field(default_factory=list)
    scheduled: list[ScheduledExecution] = field(default_factory=list)
    skipped: int = 0
    canceled: int = 0
    enrollments: list[DripEnrollment] = field(default_factory=list)


def match_rules(db: Session, trigger: TriggerEvent) -> list[AutomationRule]:
    """Enabled rules of the tenant that fire for this transition."""
    stage_match = AutomationRule.trigger_kind == AutomationTriggerKind.STAGE_CHANGE.value
    if trigger.to_stage_id is not None:
        stage_match = or_(
            stage_match,
            (AutomationRule.trigger_kind == AutomationTriggerKind.SPECIFIC_STAGE.value)
            & (AutomationRule.target_stage_id == trigger.to_stage_id),
        )

    query = (
        db.query(AutomationRule)
        .options(selectinload(AutomationRule.steps))
        .filter(
            AutomationRule.organization_id == trigger.org_id,
            AutomationRule.is_enabled.is_(True),
            stage_match,
        )
    )
    if trigger.project_type:
        query = query.filter(
            or_(
                AutomationRule.project_type.is_(None),
                AutomationRule.project_type == trigger.project_type,
            )
        )
    else:
        query = query.filter(AutomationRule.project_type.is_(None))
    return query.order_by(AutomationRule.created_at, AutomationRule.name).all()


def schedule_rule_steps(
    db: Session,
    rule: AutomationRule,
    trigger: TriggerEvent,
    tz: ZoneInfo,
    result: ScheduleResult,
) -> None:
    """Insert one pending execution per enabled step of the rule."""
    for step in rule.steps:
        if not step.is_enabled:
            continue
        due_at = resolve_due_at(trigger.occurred_at, delay_spec_from_columns(step), tz)
        due_at = defer_for_quiet_hours(due_at, tz, step.quiet_hours_start, step.quiet_hours_end)
        try:
            execution = schedule_store.insert_execution(
                db,
                organization_id=trigger.org_id,
                entity_id=trigger.entity_id,
                source_type=ExecutionSource.AUTOMATION.value,
                rule_id=rule.id,
                step_id=step.id,
                trigger_stage_id=trigger.to_stage_id,
                occurrence_key=trigger.occurrence_key,
                dedupe_key=schedule_store.automation_dedupe_key(
                    trigger.entity_id, rule.id, step.id, trigger.occurrence_key
                ),
                action_kind=step.action_kind,
                due_at=due_at,
            )
        except DedupSkip as exc:
            logger.debug("Step already scheduled: %s", exc.dedupe_key)
            result.skipped += 1
            continue
        result.scheduled.append(execution)


def schedule_for_trigger(db: Session, trigger: TriggerEvent) -> ScheduleResult:
    """
    Schedule all matching rule steps and campaign enrollments for a trigger.

    Safe to repeat for the same occurrence: dedupe keys turn repeats into
    skips. Flushes but does not commit.
    """
    result = ScheduleResult(trigger=trigger)
    tz = entity_service.get_org_zone(db, trigger.org_id)

    for rule in match_rules(db, trigger):
        result.rules_matched.append(rule.id)
        schedule_rule_steps(db, rule, trigger, tz, result)

    result.enrollments = cadence_generator.enroll_for_stage(db, trigger)

    logger.info(
        "Trigger %s matched %s rules: %s scheduled, %s skipped, %s enrollments",
        trigger.occurrence_key,
        len(result.rules_matched),
        len(result.scheduled),
        result.skipped,
        len(result.enrollments),
        extra=build_log_context(org_id=str(trigger.org_id), entity_id=str(trigger.entity_id)),
    )
    return result


def handle_stage_change(db: Session, event: StageChangeEvent) -> ScheduleResult:
    """
    Process one stage-change notification end to end and commit.

    A no-op or redelivered event returns an empty result.
    """
    trigger = trigger_detector.record_stage_change(db, event)
    if trigger is None:
        db.commit()
        return ScheduleResult()

    canceled = 0
    if trigger.from_stage_id is not None:
        canceled = reconciliation.cancel_on_stage_exit(
            db, trigger.org_id, trigger.entity_id, trigger.from_stage_id
        )

    result = schedule_for_trigger(db, trigger)
    result.canceled = canceled
    db.commit()
    return result
