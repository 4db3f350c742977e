"""Drip service - CRUD for drip campaigns, their steps and enrollments."""

from __future__ import annotations

import logging
from datetime import datetime
from uuid import UUID

from sqlalchemy.orm import Session, selectinload

from stageflow.core.errors import ConfigurationError, NotFoundError
from stageflow.db.enums import ActionKind, EnrollmentStatus
from stageflow.db.models import DripCampaign, DripCampaignStep, DripEnrollment
from stageflow.schemas.drip import (
    DripCampaignCreate,
    DripCampaignUpdate,
    DripStepCreate,
    DripStepUpdate,
)
from stageflow.services import cadence_generator, content_service, entity_service
from stageflow.services.ordering import renumber
from stageflow.services.reconciliation import ConfigChange, ConfigChangeKind, apply_config_change
from stageflow.utils.time import utcnow

logger = logging.getLogger(__name__)


def _validate_step(
    db: Session,
    org_id: UUID,
    action_kind: ActionKind,
    template_id: UUID | None,
    subject: str | None,
    body: str | None,
) -> None:
    if action_kind == ActionKind.DOCUMENT_SEND:
        raise ConfigurationError("Drip steps support email and sms only")
    content_service.require_template(db, org_id, template_id, action_kind)
    if template_id:
        return
    if not body or not body.strip():
        raise ConfigurationError("Step needs a template or inline body")
    if action_kind == ActionKind.EMAIL and not (subject and subject.strip()):
        raise ConfigurationError("Email steps need a template or inline subject")


def _build_step(db: Session, org_id: UUID, data: DripStepCreate) -> DripCampaignStep:
    _validate_step(db, org_id, data.action_kind, data.template_id, data.subject, data.body)
    return DripCampaignStep(
        days_after_start=data.days_after_start,
        action_kind=data.action_kind.value,
        template_id=data.template_id,
        subject=data.subject,
        body=data.body,
    )


# =============================================================================
# Campaigns
# =============================================================================


def list_campaigns(db: Session, org_id: UUID, enabled_only: bool = False) -> list[DripCampaign]:
    query = (
        db.query(DripCampaign)
        .options(selectinload(DripCampaign.steps))
        .filter(DripCampaign.organization_id == org_id)
    )
    if enabled_only:
        query = query.filter(DripCampaign.is_enabled.is_(True))
    return query.order_by(DripCampaign.created_at.desc()).all()


def get_campaign(db: Session, org_id: UUID, campaign_id: UUID) -> DripCampaign | None:
    return (
        db.query(DripCampaign)
        .options(selectinload(DripCampaign.steps))
        .filter(DripCampaign.id == campaign_id, DripCampaign.organization_id == org_id)
        .first()
    )


def _name_taken(db: Session, org_id: UUID, name: str, exclude_id: UUID | None = None) -> bool:
    query = db.query(DripCampaign.id).filter(
        DripCampaign.organization_id == org_id,
        DripCampaign.name == name,
    )
    if exclude_id:
        query = query.filter(DripCampaign.id != exclude_id)
    return query.first() is not None


def create_campaign(db: Session, org_id: UUID, data: DripCampaignCreate) -> DripCampaign:
    """
    Raises:
        ConfigurationError: duplicate name, unknown stage or invalid step
    """
    if _name_taken(db, org_id, data.name):
        raise ConfigurationError(f"A campaign named {data.name!r} already exists")
    if data.target_stage_id:
        entity_service.require_stage(db, org_id, data.target_stage_id)

    campaign = DripCampaign(
        organization_id=org_id,
        name=data.name,
        project_type=data.project_type,
        target_stage_id=data.target_stage_id,
        send_at_hour=data.send_at_hour,
        send_at_minute=data.send_at_minute,
        max_duration_days=data.max_duration_days,
        is_enabled=data.is_enabled,
    )
    for index, step_data in enumerate(data.steps):
        step = _build_step(db, org_id, step_data)
        step.order_index = index
        campaign.steps.append(step)

    db.add(campaign)
    db.commit()
    db.refresh(campaign)
    logger.info("Created drip campaign %s with %s steps", campaign.id, len(campaign.steps))
    return campaign


def _stop_active_enrollments(db: Session, campaign: DripCampaign, now: datetime) -> int:
    return (
        db.query(DripEnrollment)
        .filter(
            DripEnrollment.campaign_id == campaign.id,
            DripEnrollment.status == EnrollmentStatus.ACTIVE.value,
        )
        .update(
            {
                DripEnrollment.status: EnrollmentStatus.UNENROLLED.value,
                DripEnrollment.unenrolled_at: now,
            },
            synchronize_session=False,
        )
    )


def update_campaign(db: Session, campaign: DripCampaign, data: DripCampaignUpdate) -> DripCampaign:
    """
    Apply a partial update. Disabling cancels pending sends and stops
    active enrollments.

    Raises:
        ConfigurationError: duplicate name or unknown stage
    """
    fields = data.model_fields_set

    if "name" in fields and data.name is not None:
        if _name_taken(db, campaign.organization_id, data.name, exclude_id=campaign.id):
            raise ConfigurationError(f"A campaign named {data.name!r} already exists")
        campaign.name = data.name
    if "project_type" in fields:
        campaign.project_type = data.project_type
    if "target_stage_id" in fields:
        if data.target_stage_id:
            entity_service.require_stage(db, campaign.organization_id, data.target_stage_id)
        campaign.target_stage_id = data.target_stage_id
    if "send_at_hour" in fields and data.send_at_hour is not None:
        campaign.send_at_hour = data.send_at_hour
    if "send_at_minute" in fields and data.send_at_minute is not None:
        campaign.send_at_minute = data.send_at_minute
    if "max_duration_days" in fields:
        campaign.max_duration_days = data.max_duration_days

    if "is_enabled" in fields and data.is_enabled is not None:
        if campaign.is_enabled and not data.is_enabled:
            now = utcnow()
            apply_config_change(
                db,
                ConfigChange(ConfigChangeKind.CAMPAIGN_DISABLED, campaign.organization_id, campaign.id),
                now=now,
            )
            stopped = _stop_active_enrollments(db, campaign, now)
            logger.info("Campaign %s disabled, %s enrollments stopped", campaign.id, stopped)
        campaign.is_enabled = data.is_enabled

    db.commit()
    db.refresh(campaign)
    return campaign


def delete_campaign(db: Session, campaign: DripCampaign) -> int:
    """Delete a campaign with its steps and enrollments. Returns sends canceled."""
    canceled = apply_config_change(
        db,
        ConfigChange(ConfigChangeKind.CAMPAIGN_DELETED, campaign.organization_id, campaign.id),
    )
    db.delete(campaign)
    db.commit()
    logger.info("Deleted drip campaign %s", campaign.id)
    return canceled


# =============================================================================
# Steps
# =============================================================================


def get_step(db: Session, campaign: DripCampaign, step_id: UUID) -> DripCampaignStep | None:
    return (
        db.query(DripCampaignStep)
        .filter(DripCampaignStep.id == step_id, DripCampaignStep.campaign_id == campaign.id)
        .first()
    )


def add_step(db: Session, campaign: DripCampaign, data: DripStepCreate) -> DripCampaignStep:
    """New steps apply to enrollments created afterwards."""
    step = _build_step(db, campaign.organization_id, data)
    steps = list(campaign.steps)
    position = len(steps) if data.position is None else min(data.position, len(steps))
    step.order_index = -(len(steps) + 1)
    campaign.steps.append(step)
    db.flush()

    steps.insert(position, step)
    renumber(db, steps)
    db.commit()
    db.refresh(step)
    return step


def update_step(
    db: Session,
    campaign: DripCampaign,
    step: DripCampaignStep,
    data: DripStepUpdate,
) -> DripCampaignStep:
    """Timing changes apply to new enrollments; content changes to every future send."""
    fields = data.model_fields_set
    if "days_after_start" in fields and data.days_after_start is not None:
        step.days_after_start = data.days_after_start
    if "action_kind" in fields and data.action_kind is not None:
        step.action_kind = data.action_kind.value
    for column in ("template_id", "subject", "body"):
        if column in fields:
            setattr(step, column, getattr(data, column))

    _validate_step(
        db,
        campaign.organization_id,
        ActionKind(step.action_kind),
        step.template_id,
        step.subject,
        step.body,
    )
    db.commit()
    db.refresh(step)
    return step


def delete_step(db: Session, campaign: DripCampaign, step: DripCampaignStep) -> int:
    canceled = apply_config_change(
        db,
        ConfigChange(ConfigChangeKind.CAMPAIGN_STEP_DELETED, campaign.organization_id, step.id),
    )
    campaign.steps.remove(step)
    db.flush()
    renumber(db, list(campaign.steps))
    db.commit()
    return canceled


# =============================================================================
# Enrollments
# =============================================================================


def enroll_entity(
    db: Session,
    campaign: DripCampaign,
    entity_id: UUID,
    enrolled_at: datetime | None = None,
) -> DripEnrollment:
    """
    Manually enroll an entity.

    Raises:
        NotFoundError: entity not in this organization
        ConfigurationError: campaign disabled
    """
    entity = entity_service.get_entity_or_raise(db, campaign.organization_id, entity_id)
    enrollment = cadence_generator.enroll(db, campaign, entity, enrolled_at)
    db.commit()
    db.refresh(enrollment)
    return enrollment


def get_enrollment(db: Session, org_id: UUID, enrollment_id: UUID) -> DripEnrollment | None:
    return (
        db.query(DripEnrollment)
        .filter(DripEnrollment.id == enrollment_id, DripEnrollment.organization_id == org_id)
        .first()
    )


def get_enrollment_or_raise(db: Session, org_id: UUID, enrollment_id: UUID) -> DripEnrollment:
    enrollment = get_enrollment(db, org_id, enrollment_id)
    if not enrollment:
        raise NotFoundError(f"Enrollment {enrollment_id} not found")
    return enrollment


def list_enrollments(
    db: Session,
    campaign: DripCampaign,
    status: EnrollmentStatus | None = None,
) -> list[DripEnrollment]:
    query = db.query(DripEnrollment).filter(DripEnrollment.campaign_id == campaign.id)
    if status:
        query = query.filter(DripEnrollment.status == status.value)
    return query.order_by(DripEnrollment.enrolled_at.desc()).all()


def unenroll(db: Session, enrollment: DripEnrollment) -> int:
    """Stop an enrollment. Returns pending sends canceled."""
    return cadence_generator.unenroll(db, enrollment)
