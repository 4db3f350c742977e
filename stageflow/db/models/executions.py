"""SQLAlchemy ORM models for scheduled executions."""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import (
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Uuid,
    func,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from stageflow.db.base import Base
from stageflow.db.enums import DEFAULT_EXECUTION_STATUS
from stageflow.utils.time import utcnow


class ScheduledExecution(Base):
    """
    A durable, dated unit of outbound work.

    Created by the rule matcher or cadence generator, mutated only by the
    dispatcher (claim, retry, sent/failed) and by reconciliation (canceled).
    dedupe_key is unique: one row per (entity, rule or campaign, step,
    trigger occurrence or enrollment).
    """

    __tablename__ = "scheduled_executions"
    __table_args__ = (
        Index(
            "idx_exec_due",
            "status",
            "due_at",
            postgresql_where=text("status = 'pending'"),
        ),
        Index("idx_exec_org_entity", "organization_id", "entity_id", "status"),
        Index("idx_exec_rule", "rule_id", "status"),
        Index("idx_exec_step", "step_id", "status"),
        Index("idx_exec_campaign", "campaign_id", "status"),
        Index("idx_exec_enrollment", "enrollment_id", "status"),
        Index("uq_exec_dedupe_key", "dedupe_key", unique=True),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    organization_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False
    )
    entity_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("tracked_entities.id", ondelete="CASCADE"), nullable=False
    )
    source_type: Mapped[str] = mapped_column(String(20), nullable=False)

    # Automation origin
    rule_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("automation_rules.id", ondelete="SET NULL"), nullable=True
    )
    step_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("automation_steps.id", ondelete="SET NULL"), nullable=True
    )
    trigger_stage_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)

    # Drip origin
    campaign_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("drip_campaigns.id", ondelete="SET NULL"), nullable=True
    )
    drip_step_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("drip_campaign_steps.id", ondelete="SET NULL"), nullable=True
    )
    enrollment_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("drip_enrollments.id", ondelete="SET NULL"), nullable=True
    )

    occurrence_key: Mapped[str] = mapped_column(String(128), nullable=False)
    dedupe_key: Mapped[str] = mapped_column(String(255), nullable=False)
    action_kind: Mapped[str] = mapped_column(String(20), nullable=False)

    # Execution state
    status: Mapped[str] = mapped_column(
        String(20), default=DEFAULT_EXECUTION_STATUS.value, nullable=False
    )
    due_at: Mapped[datetime] = mapped_column(nullable=False)
    attempt_count: Mapped[int] = mapped_column(
        Integer, default=0, server_default=text("0"), nullable=False
    )
    max_attempts: Mapped[int] = mapped_column(
        Integer, default=3, server_default=text("3"), nullable=False
    )
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    claimed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    sent_at: Mapped[datetime | None] = mapped_column(nullable=True)
    canceled_at: Mapped[datetime | None] = mapped_column(nullable=True)
    cancel_reason: Mapped[str | None] = mapped_column(String(40), nullable=True)
    provider_message_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        default=utcnow, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        default=utcnow, onupdate=utcnow, server_default=func.now(), nullable=False
    )
