"""Enum definitions for application constants."""

from stageflow.db.enums.automations import (
    ActionKind,
    AutomationTriggerKind,
    DelayKind,
    RecipientKind,
    TemplateChannel,
)
from stageflow.db.enums.drip import EnrollmentStatus
from stageflow.db.enums.entities import EntityKind
from stageflow.db.enums.executions import CancelReason, ExecutionSource, ExecutionStatus

DEFAULT_EXECUTION_STATUS = ExecutionStatus.PENDING
DEFAULT_ENROLLMENT_STATUS = EnrollmentStatus.ACTIVE

__all__ = [
    "ActionKind",
    "AutomationTriggerKind",
    "CancelReason",
    "DEFAULT_ENROLLMENT_STATUS",
    "DEFAULT_EXECUTION_STATUS",
    "DelayKind",
    "EnrollmentStatus",
    "EntityKind",
    "ExecutionSource",
    "ExecutionStatus",
    "RecipientKind",
    "TemplateChannel",
]
