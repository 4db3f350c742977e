"""Pydantic schemas for the tracked entity mirror."""

from datetime import date, datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from stageflow.db.enums import EntityKind
from stageflow.utils.normalization import normalize_phone


class StageUpsert(BaseModel):
    id: UUID | None = None
    name: str = Field(min_length=1, max_length=100)
    order_index: int = Field(default=0, ge=0)


class StageRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    order_index: int


class EntityUpsert(BaseModel):
    """Fields omitted from the payload are left unchanged."""

    entity_kind: EntityKind | None = None
    project_type: str | None = Field(default=None, max_length=50)
    first_name: str | None = Field(default=None, max_length=100)
    last_name: str | None = Field(default=None, max_length=100)
    email: str | None = Field(default=None, max_length=255)
    phone: str | None = Field(default=None, max_length=50)
    email_opt_in: bool | None = None
    sms_opt_in: bool | None = None
    event_date: date | None = None
    owner_user_id: UUID | None = None
    is_active: bool | None = None

    @field_validator("phone")
    @classmethod
    def validate_phone(cls, v: str | None) -> str | None:
        return normalize_phone(v)

    @field_validator("email")
    @classmethod
    def validate_email(cls, v: str | None) -> str | None:
        if v and "@" not in v:
            raise ValueError("Invalid email address")
        return v


class EntityRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    organization_id: UUID
    entity_kind: str
    project_type: str | None
    stage_id: UUID | None
    stage_entered_at: datetime | None
    stage_transition_count: int
    first_name: str | None
    last_name: str | None
    email: str | None
    phone: str | None
    email_opt_in: bool
    sms_opt_in: bool
    event_date: date | None
    owner_user_id: UUID | None
    is_active: bool
