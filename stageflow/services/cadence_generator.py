"""Cadence generator - expands a drip enrollment into dated sends.

Every step of a campaign is due at the campaign's fixed send time
(tenant-local, 09:00 unless configured) on the enrollment's local calendar
date plus the step's days_after_start. A day-0 step whose send time has
already passed on the enrollment date is due at the enrollment instant.
"""

from __future__ import annotations

import logging
from datetime import datetime, time, timedelta
from uuid import UUID
from zoneinfo import ZoneInfo

from sqlalchemy import or_, text
from sqlalchemy.orm import Session, selectinload

from stageflow.core.errors import ConfigurationError, DedupSkip
from stageflow.core.structured_logging import build_log_context
from stageflow.db.dialect import insert_for
from stageflow.db.enums import CancelReason, EnrollmentStatus, ExecutionSource
from stageflow.db.models import DripCampaign, DripCampaignStep, DripEnrollment, TrackedEntity
from stageflow.services import entity_service, reconciliation, schedule_store
from stageflow.services.delay_resolver import local_wall_time
from stageflow.utils.time import ensure_aware, utcnow

logger = logging.getLogger(__name__)


def step_due_at(campaign: DripCampaign, days_after_start: int, enrolled_at: datetime, tz: ZoneInfo) -> datetime:
    """Due instant for a step n days after enrollment, never before enrollment."""
    enrolled_at = ensure_aware(enrolled_at)
    local_date = enrolled_at.astimezone(tz).date() + timedelta(days=days_after_start)
    due_at = local_wall_time(local_date, time(campaign.send_at_hour, campaign.send_at_minute), tz)
    return max(due_at, enrolled_at)


def build_timeline(
    campaign: DripCampaign,
    enrolled_at: datetime,
    tz: ZoneInfo,
) -> list[tuple[DripCampaignStep, datetime]]:
    """
    (step, due_at) pairs for an enrollment, in step order.

    Steps past max_duration_days are left out.
    """
    timeline = []
    for step in sorted(campaign.steps, key=lambda s: s.order_index):
        if campaign.max_duration_days is not None and step.days_after_start > campaign.max_duration_days:
            continue
        timeline.append((step, step_due_at(campaign, step.days_after_start, enrolled_at, tz)))
    return timeline


def get_active_enrollment(db: Session, campaign_id: UUID, entity_id: UUID) -> DripEnrollment | None:
    return (
        db.query(DripEnrollment)
        .filter(
            DripEnrollment.campaign_id == campaign_id,
            DripEnrollment.entity_id == entity_id,
            DripEnrollment.status == EnrollmentStatus.ACTIVE.value,
        )
        .first()
    )


def enroll(
    db: Session,
    campaign: DripCampaign,
    entity: TrackedEntity,
    enrolled_at: datetime | None = None,
) -> DripEnrollment:
    """
    Enroll an entity and schedule one execution per campaign step.

    Re-enrolling while an active enrollment exists returns that enrollment
    without scheduling anything. Flushes but does not commit.

    Raises:
        ConfigurationError: campaign disabled or in another organization
    """
    if campaign.organization_id != entity.organization_id:
        raise ConfigurationError("Campaign and entity belong to different organizations")
    if not campaign.is_enabled:
        raise ConfigurationError(f"Campaign {campaign.name!r} is disabled")

    existing = get_active_enrollment(db, campaign.id, entity.id)
    if existing:
        logger.info("Entity %s already enrolled in campaign %s", entity.id, campaign.id)
        return existing

    enrolled_at = ensure_aware(enrolled_at or utcnow())
    # A concurrent enroll that got there first wins via the active-enrollment index
    insert = insert_for(db)
    stmt = (
        insert(DripEnrollment)
        .values(
            organization_id=campaign.organization_id,
            campaign_id=campaign.id,
            entity_id=entity.id,
            enrolled_at=enrolled_at,
            status=EnrollmentStatus.ACTIVE.value,
        )
        .on_conflict_do_nothing(
            index_elements=["campaign_id", "entity_id"],
            index_where=text("status = 'active'"),
        )
        .returning(DripEnrollment.id)
    )
    enrollment_id = db.execute(stmt).scalar_one_or_none()
    if enrollment_id is None:
        logger.info("Entity %s enrolled concurrently in campaign %s", entity.id, campaign.id)
        return get_active_enrollment(db, campaign.id, entity.id)
    enrollment = db.get(DripEnrollment, enrollment_id)

    tz = entity_service.get_org_zone(db, campaign.organization_id)
    scheduled = 0
    for step, due_at in build_timeline(campaign, enrolled_at, tz):
        try:
            schedule_store.insert_execution(
                db,
                organization_id=campaign.organization_id,
                entity_id=entity.id,
                source_type=ExecutionSource.DRIP.value,
                campaign_id=campaign.id,
                drip_step_id=step.id,
                enrollment_id=enrollment.id,
                occurrence_key=str(enrollment.id),
                dedupe_key=schedule_store.drip_dedupe_key(
                    entity.id, campaign.id, step.id, enrollment.id
                ),
                action_kind=step.action_kind,
                due_at=due_at,
            )
            scheduled += 1
        except DedupSkip:
            continue

    if scheduled == 0:
        enrollment.status = EnrollmentStatus.COMPLETED.value
        enrollment.completed_at = enrolled_at

    logger.info(
        "Enrolled entity %s in campaign %s (%s sends scheduled)",
        entity.id,
        campaign.id,
        scheduled,
        extra=build_log_context(org_id=str(campaign.organization_id), entity_id=str(entity.id)),
    )
    return enrollment


def enroll_for_stage(db: Session, trigger) -> list[DripEnrollment]:
    """Auto-enroll the trigger's entity in enabled campaigns targeting its new stage."""
    if trigger.to_stage_id is None:
        return []

    query = (
        db.query(DripCampaign)
        .options(selectinload(DripCampaign.steps))
        .filter(
            DripCampaign.organization_id == trigger.org_id,
            DripCampaign.is_enabled.is_(True),
            DripCampaign.target_stage_id == trigger.to_stage_id,
        )
    )
    if trigger.project_type:
        query = query.filter(
            or_(
                DripCampaign.project_type.is_(None),
                DripCampaign.project_type == trigger.project_type,
            )
        )
    else:
        query = query.filter(DripCampaign.project_type.is_(None))

    campaigns = query.order_by(DripCampaign.created_at).all()
    if not campaigns:
        return []

    entity = entity_service.get_entity(db, trigger.org_id, trigger.entity_id)
    return [enroll(db, campaign, entity, trigger.occurred_at) for campaign in campaigns]


def unenroll(db: Session, enrollment: DripEnrollment, now: datetime | None = None) -> int:
    """
    Stop an enrollment and cancel its pending sends.

    Idempotent: unenrolling an already stopped enrollment cancels nothing.
    Returns the number of executions canceled. Commits.
    """
    now = now or utcnow()
    if enrollment.status == EnrollmentStatus.ACTIVE.value:
        enrollment.status = EnrollmentStatus.UNENROLLED.value
        enrollment.unenrolled_at = now
    canceled = reconciliation.cancel_for_enrollment(
        db, enrollment.id, reason=CancelReason.UNENROLLED, now=now
    )
    db.commit()
    logger.info("Unenrolled %s, canceled %s pending sends", enrollment.id, canceled)
    return canceled


def complete_if_finished(db: Session, enrollment_id: UUID, now: datetime | None = None) -> bool:
    """Mark an active enrollment completed once nothing is left to send. Commits."""
    enrollment = db.get(DripEnrollment, enrollment_id)
    if enrollment is None or enrollment.status != EnrollmentStatus.ACTIVE.value:
        return False
    if schedule_store.count_open_for_enrollment(db, enrollment_id):
        return False
    enrollment.status = EnrollmentStatus.COMPLETED.value
    enrollment.completed_at = now or utcnow()
    db.commit()
    return True
