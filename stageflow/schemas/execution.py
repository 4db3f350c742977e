"""Pydantic schemas for scheduled executions (read-only)."""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict


class ExecutionRead(BaseModel):
    """Scheduled execution response schema."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    organization_id: UUID
    entity_id: UUID
    source_type: str
    rule_id: UUID | None
    step_id: UUID | None
    campaign_id: UUID | None
    drip_step_id: UUID | None
    enrollment_id: UUID | None
    trigger_stage_id: UUID | None
    occurrence_key: str
    action_kind: str
    status: str
    due_at: datetime
    attempt_count: int
    max_attempts: int
    last_error: str | None
    claimed_at: datetime | None
    sent_at: datetime | None
    canceled_at: datetime | None
    cancel_reason: str | None
    provider_message_id: str | None
    created_at: datetime
    updated_at: datetime


class ExecutionListResponse(BaseModel):
    items: list[ExecutionRead]
    total: int
    page: int
    per_page: int
    pages: int
