"""Pydantic schemas for drip campaigns and enrollments."""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from stageflow.core.constants import (
    DEFAULT_CAMPAIGN_SEND_HOUR,
    DEFAULT_CAMPAIGN_SEND_MINUTE,
    MAX_CAMPAIGN_DAYS,
)
from stageflow.db.enums import ActionKind, EnrollmentStatus


class DripStepCreate(BaseModel):
    days_after_start: int = Field(ge=0, le=MAX_CAMPAIGN_DAYS)
    action_kind: ActionKind = ActionKind.EMAIL
    template_id: UUID | None = None
    subject: str | None = Field(default=None, max_length=255)
    body: str | None = None
    position: int | None = Field(default=None, ge=0)


class DripStepUpdate(BaseModel):
    """Changes apply to enrollments created afterwards."""

    days_after_start: int | None = Field(default=None, ge=0, le=MAX_CAMPAIGN_DAYS)
    action_kind: ActionKind | None = None
    template_id: UUID | None = None
    subject: str | None = Field(default=None, max_length=255)
    body: str | None = None


class DripStepRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    campaign_id: UUID
    order_index: int
    days_after_start: int
    action_kind: str
    template_id: UUID | None
    subject: str | None
    body: str | None
    created_at: datetime


class DripCampaignCreate(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    project_type: str | None = Field(default=None, max_length=50)
    target_stage_id: UUID | None = None
    send_at_hour: int = Field(default=DEFAULT_CAMPAIGN_SEND_HOUR, ge=0, le=23)
    send_at_minute: int = Field(default=DEFAULT_CAMPAIGN_SEND_MINUTE, ge=0, le=59)
    max_duration_days: int | None = Field(default=None, ge=0, le=MAX_CAMPAIGN_DAYS)
    is_enabled: bool = True
    steps: list[DripStepCreate] = Field(default_factory=list)


class DripCampaignUpdate(BaseModel):
    """
    Partial campaign update.

    Send time and duration changes apply to new enrollments. Disabling
    cancels every pending send of the campaign.
    """

    name: str | None = Field(default=None, min_length=1, max_length=100)
    project_type: str | None = Field(default=None, max_length=50)
    target_stage_id: UUID | None = None
    send_at_hour: int | None = Field(default=None, ge=0, le=23)
    send_at_minute: int | None = Field(default=None, ge=0, le=59)
    max_duration_days: int | None = Field(default=None, ge=0, le=MAX_CAMPAIGN_DAYS)
    is_enabled: bool | None = None


class DripCampaignRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    organization_id: UUID
    name: str
    project_type: str | None
    target_stage_id: UUID | None
    send_at_hour: int
    send_at_minute: int
    max_duration_days: int | None
    is_enabled: bool
    steps: list[DripStepRead]
    created_at: datetime
    updated_at: datetime


class EnrollmentCreate(BaseModel):
    entity_id: UUID
    enrolled_at: datetime | None = None


class EnrollmentRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    campaign_id: UUID
    entity_id: UUID
    enrolled_at: datetime
    status: EnrollmentStatus
    completed_at: datetime | None
    unenrolled_at: datetime | None
    created_at: datetime
