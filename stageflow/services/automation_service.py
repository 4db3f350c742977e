"""Automation service - CRUD for automation rules and their steps.

Configuration is validated on write: delay shapes, trigger targets and
content references are rejected with ConfigurationError before anything
is stored. Disabling or deleting a rule or step cancels the pending
executions it produced.
"""

from __future__ import annotations

import logging
from uuid import UUID

from sqlalchemy.orm import Session, selectinload

from stageflow.core.errors import ConfigurationError
from stageflow.db.enums import ActionKind, AutomationTriggerKind
from stageflow.db.models import AutomationRule, AutomationStep
from stageflow.schemas.automation import (
    AutomationRuleCreate,
    AutomationRuleUpdate,
    AutomationStepCreate,
    AutomationStepUpdate,
    DelayInput,
)
from stageflow.services import content_service, entity_service
from stageflow.services.delay_resolver import delay_spec_from_fields, delay_spec_to_columns
from stageflow.services.ordering import renumber
from stageflow.services.reconciliation import ConfigChange, ConfigChangeKind, apply_config_change

logger = logging.getLogger(__name__)


def _delay_columns(delay: DelayInput) -> dict:
    spec = delay_spec_from_fields(
        days=delay.days,
        hours=delay.hours,
        minutes=delay.minutes,
        send_at_hour=delay.send_at_hour,
        send_at_minute=delay.send_at_minute,
    )
    return delay_spec_to_columns(spec)


def _validate_step_content(
    db: Session,
    org_id: UUID,
    action_kind: ActionKind,
    template_id: UUID | None,
    subject: str | None,
    body: str | None,
    document_ref: str | None,
) -> None:
    content_service.require_template(db, org_id, template_id, action_kind)
    if action_kind == ActionKind.DOCUMENT_SEND:
        if not document_ref:
            raise ConfigurationError("document_send steps require a document_ref")
        return
    if template_id:
        return
    if not body or not body.strip():
        raise ConfigurationError("Step needs a template or inline body")
    if action_kind == ActionKind.EMAIL and not (subject and subject.strip()):
        raise ConfigurationError("Email steps need a template or inline subject")


def _build_step(db: Session, org_id: UUID, data: AutomationStepCreate) -> AutomationStep:
    _validate_step_content(
        db,
        org_id,
        data.action_kind,
        data.template_id,
        data.subject,
        data.body,
        data.document_ref,
    )
    return AutomationStep(
        action_kind=data.action_kind.value,
        recipient_kind=data.recipient_kind.value,
        quiet_hours_start=data.quiet_hours_start,
        quiet_hours_end=data.quiet_hours_end,
        template_id=data.template_id,
        subject=data.subject,
        body=data.body,
        document_ref=data.document_ref,
        is_enabled=data.is_enabled,
        **_delay_columns(data.delay),
    )


# =============================================================================
# Rules
# =============================================================================


def list_rules(
    db: Session,
    org_id: UUID,
    enabled_only: bool = False,
    trigger_kind: AutomationTriggerKind | None = None,
) -> list[AutomationRule]:
    """List rules for an organization."""
    query = db.query(AutomationRule).filter(AutomationRule.organization_id == org_id)
    if enabled_only:
        query = query.filter(AutomationRule.is_enabled.is_(True))
    if trigger_kind:
        query = query.filter(AutomationRule.trigger_kind == trigger_kind.value)
    return query.order_by(AutomationRule.created_at.desc()).all()


def get_rule(db: Session, org_id: UUID, rule_id: UUID) -> AutomationRule | None:
    """Get a rule by ID, scoped to org."""
    return (
        db.query(AutomationRule)
        .options(selectinload(AutomationRule.steps))
        .filter(AutomationRule.id == rule_id, AutomationRule.organization_id == org_id)
        .first()
    )


def _name_taken(db: Session, org_id: UUID, name: str, exclude_id: UUID | None = None) -> bool:
    query = db.query(AutomationRule.id).filter(
        AutomationRule.organization_id == org_id,
        AutomationRule.name == name,
    )
    if exclude_id:
        query = query.filter(AutomationRule.id != exclude_id)
    return query.first() is not None


def create_rule(db: Session, org_id: UUID, data: AutomationRuleCreate) -> AutomationRule:
    """
    Create a rule with its steps.

    Raises:
        ConfigurationError: invalid trigger target, delay or content
    """
    if _name_taken(db, org_id, data.name):
        raise ConfigurationError(f"An automation named {data.name!r} already exists")
    if data.trigger_kind == AutomationTriggerKind.SPECIFIC_STAGE:
        entity_service.require_stage(db, org_id, data.target_stage_id)

    rule = AutomationRule(
        organization_id=org_id,
        name=data.name,
        description=data.description,
        trigger_kind=data.trigger_kind.value,
        target_stage_id=data.target_stage_id,
        project_type=data.project_type,
        is_enabled=data.is_enabled,
        cancel_on_stage_exit=data.cancel_on_stage_exit,
    )
    for index, step_data in enumerate(data.steps):
        step = _build_step(db, org_id, step_data)
        step.order_index = index
        rule.steps.append(step)

    db.add(rule)
    db.commit()
    db.refresh(rule)
    logger.info("Created automation rule %s with %s steps", rule.id, len(rule.steps))
    return rule


def update_rule(db: Session, rule: AutomationRule, data: AutomationRuleUpdate) -> AutomationRule:
    """
    Apply a partial update.

    Raises:
        ConfigurationError: invalid trigger target or duplicate name
    """
    fields = data.model_fields_set

    if "name" in fields and data.name is not None:
        if _name_taken(db, rule.organization_id, data.name, exclude_id=rule.id):
            raise ConfigurationError(f"An automation named {data.name!r} already exists")
        rule.name = data.name
    if "description" in fields:
        rule.description = data.description
    if "project_type" in fields:
        rule.project_type = data.project_type
    if "cancel_on_stage_exit" in fields and data.cancel_on_stage_exit is not None:
        rule.cancel_on_stage_exit = data.cancel_on_stage_exit

    trigger_kind = AutomationTriggerKind(rule.trigger_kind)
    target_stage_id = rule.target_stage_id
    if "trigger_kind" in fields and data.trigger_kind is not None:
        trigger_kind = data.trigger_kind
    if "target_stage_id" in fields:
        target_stage_id = data.target_stage_id
    if trigger_kind == AutomationTriggerKind.SPECIFIC_STAGE:
        if not target_stage_id:
            raise ConfigurationError("target_stage_id is required for specific_stage rules")
        entity_service.require_stage(db, rule.organization_id, target_stage_id)
    else:
        target_stage_id = None
    rule.trigger_kind = trigger_kind.value
    rule.target_stage_id = target_stage_id

    if "is_enabled" in fields and data.is_enabled is not None:
        if rule.is_enabled and not data.is_enabled:
            apply_config_change(
                db,
                ConfigChange(ConfigChangeKind.RULE_DISABLED, rule.organization_id, rule.id),
            )
        rule.is_enabled = data.is_enabled

    db.commit()
    db.refresh(rule)
    return rule


def set_rule_enabled(db: Session, rule: AutomationRule, enabled: bool) -> AutomationRule:
    return update_rule(db, rule, AutomationRuleUpdate(is_enabled=enabled))


def delete_rule(db: Session, rule: AutomationRule) -> int:
    """Delete a rule and cancel its pending executions. Returns rows canceled."""
    canceled = apply_config_change(
        db,
        ConfigChange(ConfigChangeKind.RULE_DELETED, rule.organization_id, rule.id),
    )
    db.delete(rule)
    db.commit()
    logger.info("Deleted automation rule %s", rule.id)
    return canceled


# =============================================================================
# Steps
# =============================================================================


def get_step(db: Session, rule: AutomationRule, step_id: UUID) -> AutomationStep | None:
    return (
        db.query(AutomationStep)
        .filter(AutomationStep.id == step_id, AutomationStep.rule_id == rule.id)
        .first()
    )


def add_step(db: Session, rule: AutomationRule, data: AutomationStepCreate) -> AutomationStep:
    """
    Add a step at data.position (default: end).

    Raises:
        ConfigurationError: invalid delay or content
    """
    step = _build_step(db, rule.organization_id, data)
    steps = list(rule.steps)
    position = len(steps) if data.position is None else min(data.position, len(steps))
    step.order_index = -(len(steps) + 1)
    rule.steps.append(step)
    db.flush()

    steps.insert(position, step)
    renumber(db, steps)
    db.commit()
    db.refresh(step)
    return step


def update_step(
    db: Session,
    rule: AutomationRule,
    step: AutomationStep,
    data: AutomationStepUpdate,
) -> AutomationStep:
    """
    Apply a partial step update.

    Pending executions keep their due time; new occurrences use the new
    delay. Disabling the step cancels its pending executions.

    Raises:
        ConfigurationError: invalid delay or content
    """
    fields = data.model_fields_set

    if "delay" in fields and data.delay is not None:
        for column, value in _delay_columns(data.delay).items():
            setattr(step, column, value)
    if "action_kind" in fields and data.action_kind is not None:
        step.action_kind = data.action_kind.value
    if "recipient_kind" in fields and data.recipient_kind is not None:
        step.recipient_kind = data.recipient_kind.value
    for column in ("template_id", "subject", "body", "document_ref", "quiet_hours_start", "quiet_hours_end"):
        if column in fields:
            setattr(step, column, getattr(data, column))
    if (step.quiet_hours_start is None) != (step.quiet_hours_end is None):
        raise ConfigurationError("quiet_hours_start and quiet_hours_end must be set together")

    _validate_step_content(
        db,
        rule.organization_id,
        ActionKind(step.action_kind),
        step.template_id,
        step.subject,
        step.body,
        step.document_ref,
    )

    if "is_enabled" in fields and data.is_enabled is not None:
        if step.is_enabled and not data.is_enabled:
            apply_config_change(
                db,
                ConfigChange(ConfigChangeKind.STEP_DISABLED, rule.organization_id, step.id),
            )
        step.is_enabled = data.is_enabled

    db.commit()
    db.refresh(step)
    return step


def delete_step(db: Session, rule: AutomationRule, step: AutomationStep) -> int:
    """Delete a step, cancel its pending executions and close the index gap."""
    canceled = apply_config_change(
        db,
        ConfigChange(ConfigChangeKind.STEP_DELETED, rule.organization_id, step.id),
    )
    rule.steps.remove(step)
    db.flush()
    renumber(db, list(rule.steps))
    db.commit()
    return canceled


def reorder_steps(db: Session, rule: AutomationRule, step_ids: list[UUID]) -> AutomationRule:
    """
    Raises:
        ConfigurationError: step_ids is not a permutation of the rule's steps
    """
    by_id = {step.id: step for step in rule.steps}
    if len(step_ids) != len(by_id) or set(step_ids) != set(by_id):
        raise ConfigurationError("step_ids must list every step of the rule exactly once")
    renumber(db, [by_id[step_id] for step_id in step_ids])
    db.commit()
    db.refresh(rule)
    return rule
