"""Tests for recording stage changes as trigger occurrences."""
import uuid
from datetime import datetime, timezone

import pytest

from stageflow.core.errors import ConfigurationError
from stageflow.db.models import StageTransition, TrackedEntity
from stageflow.services.trigger_detector import (
    StageChangeEvent,
    occurrence_key_for,
    record_stage_change,
)


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


def _event(org, entity_id, from_stage, to_stage, occurred_at, **kwargs) -> StageChangeEvent:
    return StageChangeEvent(
        org_id=org.id,
        entity_id=entity_id,
        from_stage_id=from_stage.id if from_stage else None,
        to_stage_id=to_stage.id if to_stage else None,
        occurred_at=occurred_at,
        **kwargs,
    )


def test_occurrence_key_prefers_transition_id(test_org, stages):
    event = _event(test_org, uuid.uuid4(), None, stages["Inquiry"], utc(2026, 6, 1, 12), transition_id="tr-1")
    assert occurrence_key_for(event) == "t:tr-1"


def test_occurrence_key_hash_is_stable(test_org, stages):
    entity_id = uuid.uuid4()
    first = _event(test_org, entity_id, None, stages["Inquiry"], utc(2026, 6, 1, 12))
    second = _event(test_org, entity_id, None, stages["Inquiry"], utc(2026, 6, 1, 12))
    later = _event(test_org, entity_id, None, stages["Inquiry"], utc(2026, 6, 1, 13))
    assert occurrence_key_for(first) == occurrence_key_for(second)
    assert occurrence_key_for(first).startswith("h:")
    assert occurrence_key_for(first) != occurrence_key_for(later)


def test_noop_transition_ignored(db, test_org, stages, test_entity):
    event = _event(test_org, test_entity.id, stages["Inquiry"], stages["Inquiry"], utc(2026, 6, 1, 12))
    assert record_stage_change(db, event) is None
    assert db.query(StageTransition).count() == 0


def test_records_transition_and_moves_stage(db, test_org, stages, test_entity):
    trigger = record_stage_change(
        db, _event(test_org, test_entity.id, None, stages["Inquiry"], utc(2026, 6, 1, 12))
    )
    db.commit()

    assert trigger is not None
    assert trigger.sequence == 1
    assert trigger.project_type == "wedding"
    db.refresh(test_entity)
    assert test_entity.stage_id == stages["Inquiry"].id
    assert test_entity.stage_entered_at == utc(2026, 6, 1, 12)
    assert test_entity.stage_transition_count == 1


def test_redelivered_event_recorded_once(db, test_org, stages, test_entity):
    event = _event(
        test_org, test_entity.id, None, stages["Inquiry"], utc(2026, 6, 1, 12), transition_id="abc"
    )
    assert record_stage_change(db, event) is not None
    assert record_stage_change(db, event) is None
    db.commit()
    assert db.query(StageTransition).count() == 1


def test_sequence_increments_per_transition(db, test_org, stages, test_entity):
    record_stage_change(db, _event(test_org, test_entity.id, None, stages["Inquiry"], utc(2026, 6, 1, 12)))
    second = record_stage_change(
        db, _event(test_org, test_entity.id, stages["Inquiry"], stages["Booked"], utc(2026, 6, 2, 12))
    )
    # Re-entering a stage is a new occurrence, not a duplicate
    third = record_stage_change(
        db, _event(test_org, test_entity.id, stages["Booked"], stages["Inquiry"], utc(2026, 6, 3, 12))
    )
    fourth = record_stage_change(
        db, _event(test_org, test_entity.id, stages["Inquiry"], stages["Booked"], utc(2026, 6, 4, 12))
    )
    assert (second.sequence, third.sequence, fourth.sequence) == (2, 3, 4)
    assert second.occurrence_key != fourth.occurrence_key


def test_out_of_order_event_does_not_move_stage_back(db, test_org, stages, test_entity):
    record_stage_change(
        db, _event(test_org, test_entity.id, stages["Inquiry"], stages["Booked"], utc(2026, 6, 5, 12))
    )
    late = record_stage_change(
        db, _event(test_org, test_entity.id, None, stages["Inquiry"], utc(2026, 6, 1, 12))
    )
    db.commit()

    assert late is not None
    db.refresh(test_entity)
    assert test_entity.stage_id == stages["Booked"].id
    assert test_entity.stage_entered_at == utc(2026, 6, 5, 12)


def test_unknown_entity_created_from_event(db, test_org, stages):
    entity_id = uuid.uuid4()
    trigger = record_stage_change(
        db,
        _event(
            test_org, entity_id, None, stages["Inquiry"], utc(2026, 6, 1, 12), project_type="corporate"
        ),
    )
    db.commit()

    entity = db.get(TrackedEntity, entity_id)
    assert trigger.project_type == "corporate"
    assert entity.organization_id == test_org.id
    assert entity.stage_id == stages["Inquiry"].id


def test_event_updates_project_type(db, test_org, stages, test_entity):
    trigger = record_stage_change(
        db,
        _event(
            test_org, test_entity.id, None, stages["Inquiry"], utc(2026, 6, 1, 12), project_type="gala"
        ),
    )
    assert trigger.project_type == "gala"


def test_entity_of_another_org_rejected(db, test_org, other_org, stages, test_entity):
    event = StageChangeEvent(
        org_id=other_org.id,
        entity_id=test_entity.id,
        from_stage_id=None,
        to_stage_id=uuid.uuid4(),
        occurred_at=utc(2026, 6, 1, 12),
        transition_id="x",
    )
    with pytest.raises(ConfigurationError):
        record_stage_change(db, event)
