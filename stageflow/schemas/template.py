"""Pydantic schemas for message templates."""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from stageflow.db.enums import TemplateChannel


class MessageTemplateCreate(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    channel: TemplateChannel = TemplateChannel.EMAIL
    subject: str | None = Field(default=None, max_length=255)
    body: str = Field(min_length=1)


class MessageTemplateUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=100)
    subject: str | None = Field(default=None, max_length=255)
    body: str | None = Field(default=None, min_length=1)


class MessageTemplateRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    organization_id: UUID
    name: str
    channel: str
    subject: str | None
    body: str
    created_at: datetime
    updated_at: datetime
