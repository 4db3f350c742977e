"""Cancellation and reconciliation of pending executions.

Configuration mutations announce themselves with an explicit ConfigChange
and apply_config_change() cancels the affected pending rows in the same
transaction. Rows already in flight, sent, failed or canceled are never
touched, so every cancellation is safe to repeat.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from stageflow.db.enums import AutomationTriggerKind, CancelReason
from stageflow.db.models import AutomationRule, ScheduledExecution
from stageflow.services import schedule_store

logger = logging.getLogger(__name__)


class ConfigChangeKind(str, Enum):
    RULE_DISABLED = "rule_disabled"
    RULE_DELETED = "rule_deleted"
    STEP_DISABLED = "step_disabled"
    STEP_DELETED = "step_deleted"
    CAMPAIGN_DISABLED = "campaign_disabled"
    CAMPAIGN_DELETED = "campaign_deleted"
    CAMPAIGN_STEP_DELETED = "campaign_step_deleted"


_REASONS = {
    ConfigChangeKind.RULE_DISABLED: CancelReason.RULE_DISABLED,
    ConfigChangeKind.RULE_DELETED: CancelReason.RULE_DELETED,
    ConfigChangeKind.STEP_DISABLED: CancelReason.STEP_DISABLED,
    ConfigChangeKind.STEP_DELETED: CancelReason.STEP_DELETED,
    ConfigChangeKind.CAMPAIGN_DISABLED: CancelReason.CAMPAIGN_DISABLED,
    ConfigChangeKind.CAMPAIGN_DELETED: CancelReason.CAMPAIGN_DELETED,
    ConfigChangeKind.CAMPAIGN_STEP_DELETED: CancelReason.CAMPAIGN_STEP_DELETED,
}


@dataclass(frozen=True)
class ConfigChange:
    """A configuration mutation that invalidates pending work."""

    kind: ConfigChangeKind
    org_id: UUID
    target_id: UUID  # rule, step, campaign or campaign step id


def apply_config_change(db: Session, change: ConfigChange, now: datetime | None = None) -> int:
    """
    Cancel pending executions invalidated by a configuration change.

    Must run before the configuration row is deleted (deletion nulls the
    execution's foreign keys). Does not commit. Returns rows canceled.
    """
    org_filter = ScheduledExecution.organization_id == change.org_id
    if change.kind in (ConfigChangeKind.RULE_DISABLED, ConfigChangeKind.RULE_DELETED):
        criterion = ScheduledExecution.rule_id == change.target_id
    elif change.kind in (ConfigChangeKind.STEP_DISABLED, ConfigChangeKind.STEP_DELETED):
        criterion = ScheduledExecution.step_id == change.target_id
    elif change.kind in (ConfigChangeKind.CAMPAIGN_DISABLED, ConfigChangeKind.CAMPAIGN_DELETED):
        criterion = ScheduledExecution.campaign_id == change.target_id
    elif change.kind == ConfigChangeKind.CAMPAIGN_STEP_DELETED:
        criterion = ScheduledExecution.drip_step_id == change.target_id
    else:
        raise ValueError(f"Unknown config change: {change.kind}")

    canceled = schedule_store.cancel_pending(
        db, org_filter, criterion, reason=_REASONS[change.kind], now=now
    )
    logger.info("%s %s: canceled %s pending executions", change.kind.value, change.target_id, canceled)
    return canceled


def cancel_on_stage_exit(
    db: Session,
    org_id: UUID,
    entity_id: UUID,
    left_stage_id: UUID,
    now: datetime | None = None,
) -> int:
    """
    Cancel an entity's pending steps from specific-stage rules for the stage it left.

    Only rules that opted in with cancel_on_stage_exit are affected. Does
    not commit. Returns rows canceled.
    """
    opted_in_rules = select(AutomationRule.id).where(
        AutomationRule.organization_id == org_id,
        AutomationRule.trigger_kind == AutomationTriggerKind.SPECIFIC_STAGE.value,
        AutomationRule.target_stage_id == left_stage_id,
        AutomationRule.cancel_on_stage_exit.is_(True),
    )
    return schedule_store.cancel_pending(
        db,
        ScheduledExecution.organization_id == org_id,
        ScheduledExecution.entity_id == entity_id,
        ScheduledExecution.trigger_stage_id == left_stage_id,
        ScheduledExecution.rule_id.in_(opted_in_rules),
        reason=CancelReason.STAGE_EXIT,
        now=now,
    )


def cancel_for_enrollment(
    db: Session,
    enrollment_id: UUID,
    reason: CancelReason = CancelReason.UNENROLLED,
    now: datetime | None = None,
) -> int:
    """Cancel every pending send of a drip enrollment. Does not commit."""
    return schedule_store.cancel_pending(
        db,
        ScheduledExecution.enrollment_id == enrollment_id,
        reason=reason,
        now=now,
    )
