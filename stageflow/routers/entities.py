"""Tracked entity mirror."""

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from stageflow.core.deps import get_db, get_org_id
from stageflow.core.errors import ConfigurationError
from stageflow.schemas.entity import EntityRead, EntityUpsert
from stageflow.services import entity_service

router = APIRouter(prefix="/entities", tags=["Entities"])


@router.get("/{entity_id}", response_model=EntityRead)
def get_entity(
    entity_id: UUID,
    db: Session = Depends(get_db),
    org_id: UUID = Depends(get_org_id),
):
    entity = entity_service.get_entity(db, org_id, entity_id)
    if not entity:
        raise HTTPException(status_code=404, detail="Entity not found")
    return entity


@router.put("/{entity_id}", response_model=EntityRead)
def upsert_entity(
    entity_id: UUID,
    data: EntityUpsert,
    db: Session = Depends(get_db),
    org_id: UUID = Depends(get_org_id),
):
    """
    Create or update an entity's contact details and consent flags.

    Stage position only changes through stage-change events.
    """
    if data.owner_user_id and not entity_service.get_user(db, org_id, data.owner_user_id):
        raise HTTPException(status_code=422, detail="Owner user not found")
    fields = data.model_dump(exclude_unset=True)
    try:
        return entity_service.upsert_entity(db, org_id, entity_id, **fields)
    except ConfigurationError as e:
        raise HTTPException(status_code=422, detail=str(e))
