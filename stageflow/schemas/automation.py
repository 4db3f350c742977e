"""Pydantic schemas for automation rules and steps."""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, model_validator

from stageflow.db.enums import ActionKind, AutomationTriggerKind, RecipientKind


class DelayInput(BaseModel):
    """
    Step delay as configured by the user.

    days >= 1 selects "N days later at send_at_hour:send_at_minute"
    (09:00 when omitted) and cannot be combined with hours/minutes.
    """

    days: int = Field(default=0, ge=0)
    hours: int = Field(default=0, ge=0)
    minutes: int = Field(default=0, ge=0)
    send_at_hour: int | None = None
    send_at_minute: int | None = None


class QuietHoursMixin(BaseModel):
    quiet_hours_start: int | None = Field(default=None, ge=0, le=23)
    quiet_hours_end: int | None = Field(default=None, ge=0, le=23)

    @model_validator(mode="after")
    def validate_quiet_hours(self):
        if (self.quiet_hours_start is None) != (self.quiet_hours_end is None):
            raise ValueError("quiet_hours_start and quiet_hours_end must be set together")
        return self


class AutomationStepCreate(QuietHoursMixin):
    """Create a step; order follows list position or explicit position."""

    action_kind: ActionKind = ActionKind.EMAIL
    recipient_kind: RecipientKind = RecipientKind.ENTITY_CONTACT
    delay: DelayInput = Field(default_factory=DelayInput)
    template_id: UUID | None = None
    subject: str | None = Field(default=None, max_length=255)
    body: str | None = None
    document_ref: str | None = Field(default=None, max_length=500)
    is_enabled: bool = True
    position: int | None = Field(default=None, ge=0)


class AutomationStepUpdate(QuietHoursMixin):
    """
    Partial step update.

    Delay changes apply to occurrences scheduled afterwards; pending
    executions keep their due time.
    """

    action_kind: ActionKind | None = None
    recipient_kind: RecipientKind | None = None
    delay: DelayInput | None = None
    template_id: UUID | None = None
    subject: str | None = Field(default=None, max_length=255)
    body: str | None = None
    document_ref: str | None = Field(default=None, max_length=500)
    is_enabled: bool | None = None


class AutomationStepRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    rule_id: UUID
    order_index: int
    action_kind: str
    recipient_kind: str
    delay_kind: str
    delay_days: int
    delay_hours: int
    delay_minutes: int
    send_at_hour: int | None
    send_at_minute: int | None
    quiet_hours_start: int | None
    quiet_hours_end: int | None
    template_id: UUID | None
    subject: str | None
    body: str | None
    document_ref: str | None
    is_enabled: bool
    created_at: datetime


class StepReorder(BaseModel):
    step_ids: list[UUID] = Field(min_length=1)


class AutomationRuleBase(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    description: str | None = None


class AutomationRuleCreate(AutomationRuleBase):
    trigger_kind: AutomationTriggerKind = AutomationTriggerKind.STAGE_CHANGE
    target_stage_id: UUID | None = None
    project_type: str | None = Field(default=None, max_length=50)
    is_enabled: bool = True
    cancel_on_stage_exit: bool = False
    steps: list[AutomationStepCreate] = Field(default_factory=list)

    @model_validator(mode="after")
    def validate_trigger(self):
        if self.trigger_kind == AutomationTriggerKind.SPECIFIC_STAGE and not self.target_stage_id:
            raise ValueError("target_stage_id is required for specific_stage rules")
        if self.trigger_kind == AutomationTriggerKind.STAGE_CHANGE:
            self.target_stage_id = None
        return self


class AutomationRuleUpdate(BaseModel):
    """
    Partial rule update.

    Trigger changes affect future stage changes only. Disabling cancels
    the rule's pending executions.
    """

    name: str | None = Field(default=None, min_length=1, max_length=100)
    description: str | None = None
    trigger_kind: AutomationTriggerKind | None = None
    target_stage_id: UUID | None = None
    project_type: str | None = Field(default=None, max_length=50)
    is_enabled: bool | None = None
    cancel_on_stage_exit: bool | None = None


class AutomationRuleRead(AutomationRuleBase):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    organization_id: UUID
    trigger_kind: str
    target_stage_id: UUID | None
    project_type: str | None
    is_enabled: bool
    cancel_on_stage_exit: bool
    steps: list[AutomationStepRead]
    created_at: datetime
    updated_at: datetime


class AutomationRuleListItem(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    trigger_kind: str
    target_stage_id: UUID | None
    project_type: str | None
    is_enabled: bool
    created_at: datetime


class CancellationResult(BaseModel):
    canceled: int
