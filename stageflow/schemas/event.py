"""Pydantic schemas for inbound entity-store events."""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, Field


class StageChangedEvent(BaseModel):
    """Stage-change notification; delivery may be repeated."""

    entity_id: UUID
    from_stage_id: UUID | None = None
    to_stage_id: UUID | None = None
    occurred_at: datetime
    project_type: str | None = Field(default=None, max_length=50)
    transition_id: str | None = Field(default=None, min_length=1, max_length=100)


class StageChangedResult(BaseModel):
    recorded: bool
    occurrence_key: str | None = None
    sequence: int | None = None
    scheduled_execution_ids: list[UUID] = Field(default_factory=list)
    skipped: int = 0
    canceled: int = 0
    enrollment_ids: list[UUID] = Field(default_factory=list)
