"""Automation API router - REST endpoints for automation rules and steps."""

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from stageflow.core.deps import get_db, get_org_id
from stageflow.core.errors import ConfigurationError
from stageflow.db.enums import AutomationTriggerKind
from stageflow.db.models import AutomationRule
from stageflow.schemas.automation import (
    AutomationRuleCreate,
    AutomationRuleListItem,
    AutomationRuleRead,
    AutomationRuleUpdate,
    AutomationStepCreate,
    AutomationStepRead,
    AutomationStepUpdate,
    CancellationResult,
    StepReorder,
)
from stageflow.services import automation_service

router = APIRouter(prefix="/automations", tags=["Automations"])


def _get_rule_or_404(db: Session, org_id: UUID, rule_id: UUID) -> AutomationRule:
    rule = automation_service.get_rule(db, org_id, rule_id)
    if not rule:
        raise HTTPException(status_code=404, detail="Automation not found")
    return rule


# =============================================================================
# Rule CRUD
# =============================================================================


@router.get("", response_model=list[AutomationRuleListItem])
def list_automations(
    enabled_only: bool = False,
    trigger_kind: AutomationTriggerKind | None = None,
    db: Session = Depends(get_db),
    org_id: UUID = Depends(get_org_id),
):
    """List automation rules for the organization."""
    rules = automation_service.list_rules(
        db=db,
        org_id=org_id,
        enabled_only=enabled_only,
        trigger_kind=trigger_kind,
    )
    return [AutomationRuleListItem.model_validate(r) for r in rules]


@router.post("", response_model=AutomationRuleRead, status_code=201)
def create_automation(
    data: AutomationRuleCreate,
    db: Session = Depends(get_db),
    org_id: UUID = Depends(get_org_id),
):
    """Create a rule with its steps."""
    try:
        rule = automation_service.create_rule(db=db, org_id=org_id, data=data)
    except ConfigurationError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return AutomationRuleRead.model_validate(rule)


@router.get("/{rule_id}", response_model=AutomationRuleRead)
def get_automation(
    rule_id: UUID,
    db: Session = Depends(get_db),
    org_id: UUID = Depends(get_org_id),
):
    return AutomationRuleRead.model_validate(_get_rule_or_404(db, org_id, rule_id))


@router.patch("/{rule_id}", response_model=AutomationRuleRead)
def update_automation(
    rule_id: UUID,
    data: AutomationRuleUpdate,
    db: Session = Depends(get_db),
    org_id: UUID = Depends(get_org_id),
):
    """Update a rule. Disabling cancels its pending executions."""
    rule = _get_rule_or_404(db, org_id, rule_id)
    try:
        rule = automation_service.update_rule(db=db, rule=rule, data=data)
    except ConfigurationError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return AutomationRuleRead.model_validate(rule)


@router.delete("/{rule_id}", response_model=CancellationResult)
def delete_automation(
    rule_id: UUID,
    db: Session = Depends(get_db),
    org_id: UUID = Depends(get_org_id),
):
    """Delete a rule and cancel its pending executions."""
    rule = _get_rule_or_404(db, org_id, rule_id)
    return CancellationResult(canceled=automation_service.delete_rule(db, rule))


# =============================================================================
# Steps
# =============================================================================


@router.post("/{rule_id}/steps", response_model=AutomationStepRead, status_code=201)
def add_automation_step(
    rule_id: UUID,
    data: AutomationStepCreate,
    db: Session = Depends(get_db),
    org_id: UUID = Depends(get_org_id),
):
    rule = _get_rule_or_404(db, org_id, rule_id)
    try:
        step = automation_service.add_step(db, rule, data)
    except ConfigurationError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return AutomationStepRead.model_validate(step)


@router.patch("/{rule_id}/steps/{step_id}", response_model=AutomationStepRead)
def update_automation_step(
    rule_id: UUID,
    step_id: UUID,
    data: AutomationStepUpdate,
    db: Session = Depends(get_db),
    org_id: UUID = Depends(get_org_id),
):
    rule = _get_rule_or_404(db, org_id, rule_id)
    step = automation_service.get_step(db, rule, step_id)
    if not step:
        raise HTTPException(status_code=404, detail="Step not found")
    try:
        step = automation_service.update_step(db, rule, step, data)
    except ConfigurationError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return AutomationStepRead.model_validate(step)


@router.delete("/{rule_id}/steps/{step_id}", response_model=CancellationResult)
def delete_automation_step(
    rule_id: UUID,
    step_id: UUID,
    db: Session = Depends(get_db),
    org_id: UUID = Depends(get_org_id),
):
    rule = _get_rule_or_404(db, org_id, rule_id)
    step = automation_service.get_step(db, rule, step_id)
    if not step:
        raise HTTPException(status_code=404, detail="Step not found")
    return CancellationResult(canceled=automation_service.delete_step(db, rule, step))


@router.put("/{rule_id}/steps/order", response_model=AutomationRuleRead)
def reorder_automation_steps(
    rule_id: UUID,
    data: StepReorder,
    db: Session = Depends(get_db),
    org_id: UUID = Depends(get_org_id),
):
    """Reorder steps; step_ids must list every step once."""
    rule = _get_rule_or_404(db, org_id, rule_id)
    try:
        rule = automation_service.reorder_steps(db, rule, data.step_ids)
    except ConfigurationError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return AutomationRuleRead.model_validate(rule)
