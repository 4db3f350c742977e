"""Drip campaign API router - campaigns, steps and enrollments."""

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from stageflow.core.deps import get_db, get_org_id
from stageflow.core.errors import ConfigurationError, NotFoundError
from stageflow.db.enums import EnrollmentStatus
from stageflow.db.models import DripCampaign
from stageflow.schemas.automation import CancellationResult
from stageflow.schemas.drip import (
    DripCampaignCreate,
    DripCampaignRead,
    DripCampaignUpdate,
    DripStepCreate,
    DripStepRead,
    DripStepUpdate,
    EnrollmentCreate,
    EnrollmentRead,
)
from stageflow.services import drip_service

router = APIRouter(tags=["Drip Campaigns"])


def _get_campaign_or_404(db: Session, org_id: UUID, campaign_id: UUID) -> DripCampaign:
    campaign = drip_service.get_campaign(db, org_id, campaign_id)
    if not campaign:
        raise HTTPException(status_code=404, detail="Campaign not found")
    return campaign


# =============================================================================
# Campaign CRUD
# =============================================================================


@router.get("/drip-campaigns", response_model=list[DripCampaignRead])
def list_campaigns(
    enabled_only: bool = False,
    db: Session = Depends(get_db),
    org_id: UUID = Depends(get_org_id),
):
    campaigns = drip_service.list_campaigns(db, org_id, enabled_only=enabled_only)
    return [DripCampaignRead.model_validate(c) for c in campaigns]


@router.post("/drip-campaigns", response_model=DripCampaignRead, status_code=201)
def create_campaign(
    data: DripCampaignCreate,
    db: Session = Depends(get_db),
    org_id: UUID = Depends(get_org_id),
):
    try:
        campaign = drip_service.create_campaign(db, org_id, data)
    except ConfigurationError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return DripCampaignRead.model_validate(campaign)


@router.get("/drip-campaigns/{campaign_id}", response_model=DripCampaignRead)
def get_campaign(
    campaign_id: UUID,
    db: Session = Depends(get_db),
    org_id: UUID = Depends(get_org_id),
):
    return DripCampaignRead.model_validate(_get_campaign_or_404(db, org_id, campaign_id))


@router.patch("/drip-campaigns/{campaign_id}", response_model=DripCampaignRead)
def update_campaign(
    campaign_id: UUID,
    data: DripCampaignUpdate,
    db: Session = Depends(get_db),
    org_id: UUID = Depends(get_org_id),
):
    """Update a campaign. Disabling cancels pending sends and stops enrollments."""
    campaign = _get_campaign_or_404(db, org_id, campaign_id)
    try:
        campaign = drip_service.update_campaign(db, campaign, data)
    except ConfigurationError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return DripCampaignRead.model_validate(campaign)


@router.delete("/drip-campaigns/{campaign_id}", response_model=CancellationResult)
def delete_campaign(
    campaign_id: UUID,
    db: Session = Depends(get_db),
    org_id: UUID = Depends(get_org_id),
):
    campaign = _get_campaign_or_404(db, org_id, campaign_id)
    return CancellationResult(canceled=drip_service.delete_campaign(db, campaign))


# =============================================================================
# Steps
# =============================================================================


@router.post("/drip-campaigns/{campaign_id}/steps", response_model=DripStepRead, status_code=201)
def add_campaign_step(
    campaign_id: UUID,
    data: DripStepCreate,
    db: Session = Depends(get_db),
    org_id: UUID = Depends(get_org_id),
):
    campaign = _get_campaign_or_404(db, org_id, campaign_id)
    try:
        step = drip_service.add_step(db, campaign, data)
    except ConfigurationError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return DripStepRead.model_validate(step)


@router.patch("/drip-campaigns/{campaign_id}/steps/{step_id}", response_model=DripStepRead)
def update_campaign_step(
    campaign_id: UUID,
    step_id: UUID,
    data: DripStepUpdate,
    db: Session = Depends(get_db),
    org_id: UUID = Depends(get_org_id),
):
    campaign = _get_campaign_or_404(db, org_id, campaign_id)
    step = drip_service.get_step(db, campaign, step_id)
    if not step:
        raise HTTPException(status_code=404, detail="Step not found")
    try:
        step = drip_service.update_step(db, campaign, step, data)
    except ConfigurationError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return DripStepRead.model_validate(step)


@router.delete("/drip-campaigns/{campaign_id}/steps/{step_id}", response_model=CancellationResult)
def delete_campaign_step(
    campaign_id: UUID,
    step_id: UUID,
    db: Session = Depends(get_db),
    org_id: UUID = Depends(get_org_id),
):
    campaign = _get_campaign_or_404(db, org_id, campaign_id)
    step = drip_service.get_step(db, campaign, step_id)
    if not step:
        raise HTTPException(status_code=404, detail="Step not found")
    return CancellationResult(canceled=drip_service.delete_step(db, campaign, step))


# =============================================================================
# Enrollments
# =============================================================================


@router.get("/drip-campaigns/{campaign_id}/enrollments", response_model=list[EnrollmentRead])
def list_enrollments(
    campaign_id: UUID,
    status: EnrollmentStatus | None = None,
    db: Session = Depends(get_db),
    org_id: UUID = Depends(get_org_id),
):
    campaign = _get_campaign_or_404(db, org_id, campaign_id)
    return [
        EnrollmentRead.model_validate(e)
        for e in drip_service.list_enrollments(db, campaign, status=status)
    ]


@router.post(
    "/drip-campaigns/{campaign_id}/enrollments",
    response_model=EnrollmentRead,
    status_code=201,
)
def enroll_entity(
    campaign_id: UUID,
    data: EnrollmentCreate,
    db: Session = Depends(get_db),
    org_id: UUID = Depends(get_org_id),
):
    """Enroll an entity manually. An active enrollment is returned as-is."""
    campaign = _get_campaign_or_404(db, org_id, campaign_id)
    try:
        enrollment = drip_service.enroll_entity(db, campaign, data.entity_id, data.enrolled_at)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ConfigurationError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return EnrollmentRead.model_validate(enrollment)


@router.delete("/drip-enrollments/{enrollment_id}", response_model=CancellationResult)
def unenroll_entity(
    enrollment_id: UUID,
    db: Session = Depends(get_db),
    org_id: UUID = Depends(get_org_id),
):
    """Unenroll and cancel pending sends. Repeating the call cancels nothing."""
    try:
        enrollment = drip_service.get_enrollment_or_raise(db, org_id, enrollment_id)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return CancellationResult(canceled=drip_service.unenroll(db, enrollment))
