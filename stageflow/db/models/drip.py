"""SQLAlchemy ORM models for drip campaigns."""

from __future__ import annotations

from typing import TYPE_CHECKING

import uuid
from datetime import datetime

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    func,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from stageflow.core.constants import DEFAULT_CAMPAIGN_SEND_HOUR, DEFAULT_CAMPAIGN_SEND_MINUTE
from stageflow.db.base import Base
from stageflow.db.enums import ActionKind, EnrollmentStatus
from stageflow.utils.time import utcnow

if TYPE_CHECKING:
    from stageflow.db.models import MessageTemplate, TrackedEntity


class DripCampaign(Base):
    """
    Multi-step nurture sequence.

    Each enrollment gets a personal timeline: step n is due at the campaign
    send time on the enrollment's calendar date + days_after_start.
    """

    __tablename__ = "drip_campaigns"
    __table_args__ = (
        UniqueConstraint("organization_id", "name", name="uq_drip_campaign_name"),
        Index("idx_drip_org_enabled", "organization_id", "is_enabled"),
        CheckConstraint(
            "send_at_hour BETWEEN 0 AND 23 AND send_at_minute BETWEEN 0 AND 59",
            name="chk_drip_send_time",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    organization_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    project_type: Mapped[str | None] = mapped_column(String(50), nullable=True)  # NULL = any

    # Entities entering this stage are enrolled automatically
    target_stage_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("pipeline_stages.id", ondelete="SET NULL"), nullable=True
    )

    # Fixed send time for every step (tenant-local)
    send_at_hour: Mapped[int] = mapped_column(
        Integer, default=DEFAULT_CAMPAIGN_SEND_HOUR, nullable=False
    )
    send_at_minute: Mapped[int] = mapped_column(
        Integer, default=DEFAULT_CAMPAIGN_SEND_MINUTE, nullable=False
    )
    # Steps past this many days after enrollment are never scheduled (NULL = no cap)
    max_duration_days: Mapped[int | None] = mapped_column(Integer, nullable=True)

    is_enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        default=utcnow, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        default=utcnow, onupdate=utcnow, server_default=func.now(), nullable=False
    )

    steps: Mapped[list["DripCampaignStep"]] = relationship(
        back_populates="campaign",
        cascade="all, delete-orphan",
        order_by="DripCampaignStep.order_index",
    )
    enrollments: Mapped[list["DripEnrollment"]] = relationship(
        back_populates="campaign", cascade="all, delete-orphan"
    )


class DripCampaignStep(Base):
    """One dated send in a drip campaign."""

    __tablename__ = "drip_campaign_steps"
    __table_args__ = (
        UniqueConstraint("campaign_id", "order_index", name="uq_drip_step_order"),
        CheckConstraint("days_after_start >= 0", name="chk_drip_step_days"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    campaign_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("drip_campaigns.id", ondelete="CASCADE"), nullable=False
    )
    order_index: Mapped[int] = mapped_column(Integer, nullable=False)
    days_after_start: Mapped[int] = mapped_column(Integer, nullable=False)
    action_kind: Mapped[str] = mapped_column(
        String(20), default=ActionKind.EMAIL.value, nullable=False
    )

    template_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("message_templates.id", ondelete="SET NULL"), nullable=True
    )
    subject: Mapped[str | None] = mapped_column(String(255), nullable=True)
    body: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        default=utcnow, server_default=func.now(), nullable=False
    )

    campaign: Mapped["DripCampaign"] = relationship(back_populates="steps")
    template: Mapped["MessageTemplate | None"] = relationship()


class DripEnrollment(Base):
    """An entity's personal timeline anchor in a campaign."""

    __tablename__ = "drip_enrollments"
    __table_args__ = (
        Index("idx_enrollments_campaign_entity", "campaign_id", "entity_id", "status"),
        Index("idx_enrollments_org_entity", "organization_id", "entity_id"),
        # At most one active enrollment per (campaign, entity)
        Index(
            "uq_enrollments_active",
            "campaign_id",
            "entity_id",
            unique=True,
            postgresql_where=text("status = 'active'"),
            sqlite_where=text("status = 'active'"),
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    organization_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False
    )
    campaign_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("drip_campaigns.id", ondelete="CASCADE"), nullable=False
    )
    entity_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("tracked_entities.id", ondelete="CASCADE"), nullable=False
    )
    enrolled_at: Mapped[datetime] = mapped_column(nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), default=EnrollmentStatus.ACTIVE.value, nullable=False
    )
    completed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    unenrolled_at: Mapped[datetime | None] = mapped_column(nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        default=utcnow, server_default=func.now(), nullable=False
    )

    campaign: Mapped["DripCampaign"] = relationship(back_populates="enrollments")
    entity: Mapped["TrackedEntity"] = relationship()
