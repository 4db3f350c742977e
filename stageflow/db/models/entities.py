"""SQLAlchemy ORM models for the tracked entity mirror."""

from __future__ import annotations

from typing import TYPE_CHECKING

import uuid
from datetime import date, datetime

from sqlalchemy import (
    Boolean,
    Date,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
    Uuid,
    func,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from stageflow.db.base import Base
from stageflow.db.enums import EntityKind
from stageflow.utils.time import utcnow

if TYPE_CHECKING:
    from stageflow.db.models import User


class TrackedEntity(Base):
    """
    Normalized identity of a contact or project moving through the pipeline.

    The upstream entity store owns the business record. This row keeps only
    what scheduling needs: current stage, recipients, consent flags, and the
    monotonic transition counter that identifies each trigger occurrence.
    """

    __tablename__ = "tracked_entities"
    __table_args__ = (
        Index("idx_entities_org_stage", "organization_id", "stage_id"),
        Index("idx_entities_org_type", "organization_id", "project_type"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    organization_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False
    )
    entity_kind: Mapped[str] = mapped_column(
        String(20), default=EntityKind.PROJECT.value, nullable=False
    )
    project_type: Mapped[str | None] = mapped_column(String(50), nullable=True)

    # Pipeline position
    stage_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("pipeline_stages.id", ondelete="SET NULL"), nullable=True
    )
    stage_entered_at: Mapped[datetime | None] = mapped_column(nullable=True)
    stage_transition_count: Mapped[int] = mapped_column(
        Integer, default=0, server_default=text("0"), nullable=False
    )

    # Contact details
    first_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    last_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(50), nullable=True)
    email_opt_in: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    sms_opt_in: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    event_date: Mapped[date | None] = mapped_column(Date, nullable=True)

    owner_user_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        default=utcnow, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        default=utcnow, onupdate=utcnow, server_default=func.now(), nullable=False
    )

    owner: Mapped["User | None"] = relationship()

    @property
    def full_name(self) -> str:
        return " ".join(p for p in (self.first_name, self.last_name) if p)


class StageTransition(Base):
    """
    One row per physical stage transition.

    The unique (entity_id, occurrence_key) index absorbs at-least-once
    redelivery from the entity store.
    """

    __tablename__ = "stage_transitions"
    __table_args__ = (
        UniqueConstraint("entity_id", "occurrence_key", name="uq_transition_occurrence"),
        Index("idx_transitions_entity", "entity_id", "sequence"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    organization_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False
    )
    entity_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("tracked_entities.id", ondelete="CASCADE"), nullable=False
    )
    from_stage_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    to_stage_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    occurred_at: Mapped[datetime] = mapped_column(nullable=False)
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    occurrence_key: Mapped[str] = mapped_column(String(128), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        default=utcnow, server_default=func.now(), nullable=False
    )
