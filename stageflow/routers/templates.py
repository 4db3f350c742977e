"""Message template API router."""

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from stageflow.core.deps import get_db, get_org_id
from stageflow.core.errors import ConfigurationError
from stageflow.db.enums import TemplateChannel
from stageflow.db.models import MessageTemplate
from stageflow.schemas.template import (
    MessageTemplateCreate,
    MessageTemplateRead,
    MessageTemplateUpdate,
)
from stageflow.services import content_service

router = APIRouter(prefix="/message-templates", tags=["Templates"])


def _get_template_or_404(db: Session, org_id: UUID, template_id: UUID) -> MessageTemplate:
    template = content_service.get_template(db, org_id, template_id)
    if not template:
        raise HTTPException(status_code=404, detail="Template not found")
    return template


@router.get("", response_model=list[MessageTemplateRead])
def list_templates(
    channel: TemplateChannel | None = None,
    db: Session = Depends(get_db),
    org_id: UUID = Depends(get_org_id),
):
    return content_service.list_templates(db, org_id, channel=channel)


@router.post("", response_model=MessageTemplateRead, status_code=201)
def create_template(
    data: MessageTemplateCreate,
    db: Session = Depends(get_db),
    org_id: UUID = Depends(get_org_id),
):
    try:
        return content_service.create_template(
            db,
            org_id,
            name=data.name,
            channel=data.channel,
            body=data.body,
            subject=data.subject,
        )
    except ConfigurationError as e:
        raise HTTPException(status_code=422, detail=str(e))


@router.get("/{template_id}", response_model=MessageTemplateRead)
def get_template(
    template_id: UUID,
    db: Session = Depends(get_db),
    org_id: UUID = Depends(get_org_id),
):
    return _get_template_or_404(db, org_id, template_id)


@router.patch("/{template_id}", response_model=MessageTemplateRead)
def update_template(
    template_id: UUID,
    data: MessageTemplateUpdate,
    db: Session = Depends(get_db),
    org_id: UUID = Depends(get_org_id),
):
    """Edits apply to every send rendered afterwards, pending ones included."""
    template = _get_template_or_404(db, org_id, template_id)
    try:
        return content_service.update_template(
            db,
            template,
            name=data.name,
            subject=data.subject,
            body=data.body,
        )
    except ConfigurationError as e:
        raise HTTPException(status_code=422, detail=str(e))


@router.delete("/{template_id}", status_code=204)
def delete_template(
    template_id: UUID,
    db: Session = Depends(get_db),
    org_id: UUID = Depends(get_org_id),
):
    content_service.delete_template(db, _get_template_or_404(db, org_id, template_id))
