"""Pipeline stage mirror."""

from uuid import UUID

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from stageflow.core.deps import get_db, get_org_id
from stageflow.schemas.entity import StageRead, StageUpsert
from stageflow.services import entity_service

router = APIRouter(prefix="/stages", tags=["Stages"])


@router.get("", response_model=list[StageRead])
def list_stages(
    db: Session = Depends(get_db),
    org_id: UUID = Depends(get_org_id),
):
    return entity_service.list_stages(db, org_id)


@router.put("", response_model=StageRead)
def upsert_stage(
    data: StageUpsert,
    db: Session = Depends(get_db),
    org_id: UUID = Depends(get_org_id),
):
    """Create or rename a stage, matched by id, then by name."""
    return entity_service.upsert_stage(
        db,
        org_id,
        name=data.name,
        order_index=data.order_index,
        stage_id=data.id,
    )
