"""Trigger detector - turns stage-change notifications into trigger occurrences.

The entity store delivers stage changes at least once. Each physical
transition gets an occurrence key (the upstream transition id when one is
supplied, otherwise a hash of entity/from/to/timestamp) and is recorded under
a unique (entity_id, occurrence_key) index, so a redelivered event yields no
second occurrence.
"""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass
from datetime import datetime
from uuid import UUID

from sqlalchemy.orm import Session

from stageflow.core.structured_logging import build_log_context
from stageflow.db.dialect import insert_for, is_postgres
from stageflow.db.models import StageTransition, TrackedEntity
from stageflow.services import entity_service
from stageflow.utils.time import ensure_aware

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StageChangeEvent:
    """Stage-change notification from the entity store."""

    org_id: UUID
    entity_id: UUID
    from_stage_id: UUID | None
    to_stage_id: UUID | None
    occurred_at: datetime
    project_type: str | None = None
    transition_id: str | None = None


@dataclass(frozen=True)
class TriggerEvent:
    """One recorded trigger occurrence."""

    org_id: UUID
    entity_id: UUID
    project_type: str | None
    from_stage_id: UUID | None
    to_stage_id: UUID | None
    occurred_at: datetime
    occurrence_key: str
    sequence: int
    transition_row_id: UUID


def occurrence_key_for(event: StageChangeEvent) -> str:
    """Upstream transition id when supplied, else a content hash of the event."""
    if event.transition_id:
        return f"t:{event.transition_id}"
    occurred_at = ensure_aware(event.occurred_at).isoformat()
    raw = f"{event.entity_id}|{event.from_stage_id}|{event.to_stage_id}|{occurred_at}"
    return "h:" + hashlib.sha256(raw.encode("utf-8")).hexdigest()[:40]


def _get_entity_for_update(db: Session, org_id: UUID, entity_id: UUID) -> TrackedEntity | None:
    query = db.query(TrackedEntity).filter(
        TrackedEntity.id == entity_id,
        TrackedEntity.organization_id == org_id,
    )
    if is_postgres(db):
        query = query.with_for_update()
    return query.first()


def record_stage_change(db: Session, event: StageChangeEvent) -> TriggerEvent | None:
    """
    Record a stage change and return its trigger occurrence.

    Returns None for a no-op transition (from == to) and for a redelivered
    event whose occurrence is already recorded. Unknown entities are created
    in the mirror from the event. Flushes but does not commit.

    Raises:
        ConfigurationError: the entity id belongs to another organization
    """
    log_ctx = build_log_context(org_id=str(event.org_id), entity_id=str(event.entity_id))
    if event.from_stage_id == event.to_stage_id:
        logger.debug("Ignoring no-op stage change", extra=log_ctx)
        return None

    occurred_at = ensure_aware(event.occurred_at)
    occurrence_key = occurrence_key_for(event)

    entity = _get_entity_for_update(db, event.org_id, event.entity_id)
    if entity is None:
        entity_service.require_entity_id_available(db, event.org_id, event.entity_id)
        entity = TrackedEntity(
            id=event.entity_id,
            organization_id=event.org_id,
            project_type=event.project_type,
            stage_id=event.from_stage_id,
        )
        db.add(entity)
        db.flush()
    elif event.project_type and entity.project_type != event.project_type:
        entity.project_type = event.project_type

    sequence = entity.stage_transition_count + 1
    insert = insert_for(db)
    stmt = (
        insert(StageTransition)
        .values(
            organization_id=event.org_id,
            entity_id=event.entity_id,
            from_stage_id=event.from_stage_id,
            to_stage_id=event.to_stage_id,
            occurred_at=occurred_at,
            sequence=sequence,
            occurrence_key=occurrence_key,
        )
        .on_conflict_do_nothing(index_elements=["entity_id", "occurrence_key"])
        .returning(StageTransition.id)
    )
    transition_row_id = db.execute(stmt).scalar_one_or_none()
    if transition_row_id is None:
        logger.info("Duplicate stage change %s ignored", occurrence_key, extra=log_ctx)
        return None

    entity.stage_transition_count = sequence
    # An out-of-order delivery is still a trigger occurrence but must not
    # move the mirror back to an older stage.
    if entity.stage_entered_at is None or occurred_at >= entity.stage_entered_at:
        entity.stage_id = event.to_stage_id
        entity.stage_entered_at = occurred_at
    db.flush()

    logger.info(
        "Recorded stage change #%s for entity %s",
        sequence,
        event.entity_id,
        extra=log_ctx,
    )
    return TriggerEvent(
        org_id=event.org_id,
        entity_id=event.entity_id,
        project_type=entity.project_type,
        from_stage_id=event.from_stage_id,
        to_stage_id=event.to_stage_id,
        occurred_at=occurred_at,
        occurrence_key=occurrence_key,
        sequence=sequence,
        transition_row_id=transition_row_id,
    )
