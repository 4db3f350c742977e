"""Inbound events from the upstream entity store."""

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from stageflow.core.deps import get_db, get_org_id
from stageflow.core.errors import ConfigurationError
from stageflow.schemas.event import StageChangedEvent, StageChangedResult
from stageflow.services import rule_matcher
from stageflow.services.trigger_detector import StageChangeEvent

router = APIRouter(prefix="/events", tags=["Events"])


@router.post("/stage-changed", response_model=StageChangedResult)
def stage_changed(
    data: StageChangedEvent,
    db: Session = Depends(get_db),
    org_id: UUID = Depends(get_org_id),
):
    """
    Record a stage change and schedule the matching automation steps.

    Redelivering the same event is a no-op and reports recorded=false.
    """
    event = StageChangeEvent(
        org_id=org_id,
        entity_id=data.entity_id,
        from_stage_id=data.from_stage_id,
        to_stage_id=data.to_stage_id,
        occurred_at=data.occurred_at,
        project_type=data.project_type,
        transition_id=data.transition_id,
    )
    try:
        result = rule_matcher.handle_stage_change(db, event)
    except ConfigurationError as e:
        raise HTTPException(status_code=422, detail=str(e))

    if result.trigger is None:
        return StageChangedResult(recorded=False)
    return StageChangedResult(
        recorded=True,
        occurrence_key=result.trigger.occurrence_key,
        sequence=result.trigger.sequence,
        scheduled_execution_ids=[e.id for e in result.scheduled],
        skipped=result.skipped,
        canceled=result.canceled,
        enrollment_ids=[e.id for e in result.enrollments],
    )
