"""SQLAlchemy ORM models for automation rules and message templates."""

from __future__ import annotations

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
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from stageflow.db.base import Base
from stageflow.db.enums import ActionKind, DelayKind, RecipientKind
from stageflow.utils.time import utcnow


class AutomationRule(Base):
    """
    "When an entity changes stage, run these steps" definition.

    Generic rules fire on any transition; specific-stage rules fire only when
    the entity enters target_stage_id. Disabling or deleting a rule cancels
    its pending executions.
    """

    __tablename__ = "automation_rules"
    __table_args__ = (
        UniqueConstraint("organization_id", "name", name="uq_automation_rule_name"),
        Index("idx_rules_matching", "organization_id", "trigger_kind", "is_enabled"),
        CheckConstraint(
            "(trigger_kind = 'stage_change') OR "
            "(trigger_kind = 'specific_stage' AND target_stage_id IS NOT NULL)",
            name="chk_rule_target_stage",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    organization_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Trigger
    trigger_kind: Mapped[str] = mapped_column(String(30), nullable=False)
    target_stage_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("pipeline_stages.id", ondelete="CASCADE"), nullable=True
    )
    project_type: Mapped[str | None] = mapped_column(String(50), nullable=True)  # NULL = any

    # State
    is_enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    # Opt-in: cancel pending steps when the entity leaves the stage that fired the rule
    cancel_on_stage_exit: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        default=utcnow, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        default=utcnow, onupdate=utcnow, server_default=func.now(), nullable=False
    )

    steps: Mapped[list["AutomationStep"]] = relationship(
        back_populates="rule",
        cascade="all, delete-orphan",
        order_by="AutomationStep.order_index",
    )


class AutomationStep(Base):
    """
    One timed action within a rule.

    The delay columns are the persisted form of a DelaySpec; exactly one of
    the three shapes is valid for each delay_kind.
    """

    __tablename__ = "automation_steps"
    __table_args__ = (
        UniqueConstraint("rule_id", "order_index", name="uq_step_order"),
        CheckConstraint(
            "(delay_kind = 'immediate' AND delay_days = 0 AND delay_hours = 0 "
            "AND delay_minutes = 0) OR "
            "(delay_kind = 'relative_duration' AND delay_days = 0 "
            "AND delay_hours BETWEEN 0 AND 23 AND delay_minutes BETWEEN 0 AND 59) OR "
            "(delay_kind = 'next_calendar_day_at' AND delay_days >= 1 "
            "AND delay_hours = 0 AND delay_minutes = 0 "
            "AND send_at_hour BETWEEN 0 AND 23 AND send_at_minute BETWEEN 0 AND 59)",
            name="chk_step_delay_shape",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    rule_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("automation_rules.id", ondelete="CASCADE"), nullable=False
    )
    order_index: Mapped[int] = mapped_column(Integer, nullable=False)
    action_kind: Mapped[str] = mapped_column(
        String(20), default=ActionKind.EMAIL.value, nullable=False
    )
    recipient_kind: Mapped[str] = mapped_column(
        String(20), default=RecipientKind.ENTITY_CONTACT.value, nullable=False
    )

    # Delay
    delay_kind: Mapped[str] = mapped_column(
        String(30), default=DelayKind.IMMEDIATE.value, nullable=False
    )
    delay_days: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    delay_hours: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    delay_minutes: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    send_at_hour: Mapped[int | None] = mapped_column(Integer, nullable=True)
    send_at_minute: Mapped[int | None] = mapped_column(Integer, nullable=True)

    # Quiet hours (tenant-local, inclusive hour range, may cross midnight)
    quiet_hours_start: Mapped[int | None] = mapped_column(Integer, nullable=True)
    quiet_hours_end: Mapped[int | None] = mapped_column(Integer, nullable=True)

    # Content reference: template or inline content
    template_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("message_templates.id", ondelete="SET NULL"), nullable=True
    )
    subject: Mapped[str | None] = mapped_column(String(255), nullable=True)
    body: Mapped[str | None] = mapped_column(Text, nullable=True)
    document_ref: Mapped[str | None] = mapped_column(String(500), nullable=True)

    is_enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        default=utcnow, server_default=func.now(), nullable=False
    )

    rule: Mapped["AutomationRule"] = relationship(back_populates="steps")
    template: Mapped["MessageTemplate | None"] = relationship()


class MessageTemplate(Base):
    """Reusable message content with {{variable}} placeholders."""

    __tablename__ = "message_templates"
    __table_args__ = (
        UniqueConstraint("organization_id", "name", name="uq_template_name"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    organization_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    channel: Mapped[str] = mapped_column(String(10), nullable=False)  # email | sms
    subject: Mapped[str | None] = mapped_column(String(255), nullable=True)
    body: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        default=utcnow, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        default=utcnow, onupdate=utcnow, server_default=func.now(), nullable=False
    )
