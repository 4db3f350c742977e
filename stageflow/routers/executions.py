"""Read-only view of the schedule store."""

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from stageflow.core.deps import get_db, get_org_id
from stageflow.db.enums import ExecutionSource, ExecutionStatus
from stageflow.schemas.execution import ExecutionListResponse, ExecutionRead
from stageflow.services import schedule_store
from stageflow.utils.pagination import PaginationParams, get_pagination, page_count

router = APIRouter(prefix="/scheduled-executions", tags=["Scheduled Executions"])


@router.get("", response_model=ExecutionListResponse)
def list_executions(
    entity_id: UUID | None = None,
    status: ExecutionStatus | None = None,
    source_type: ExecutionSource | None = None,
    pagination: PaginationParams = Depends(get_pagination),
    db: Session = Depends(get_db),
    org_id: UUID = Depends(get_org_id),
):
    """List scheduled executions, soonest due first."""
    items, total = schedule_store.list_executions(
        db=db,
        org_id=org_id,
        entity_id=entity_id,
        status=status,
        source_type=source_type,
        limit=pagination.per_page,
        offset=pagination.offset,
    )
    return ExecutionListResponse(
        items=[ExecutionRead.model_validate(e) for e in items],
        total=total,
        page=pagination.page,
        per_page=pagination.per_page,
        pages=page_count(total, pagination.per_page),
    )


@router.get("/{execution_id}", response_model=ExecutionRead)
def get_execution(
    execution_id: UUID,
    db: Session = Depends(get_db),
    org_id: UUID = Depends(get_org_id),
):
    execution = schedule_store.get_execution(db, execution_id, org_id=org_id)
    if not execution:
        raise HTTPException(status_code=404, detail="Execution not found")
    return ExecutionRead.model_validate(execution)
