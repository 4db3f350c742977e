"""API tests for stage-change events and the execution listing."""
import uuid

import pytest

from stageflow.schemas.automation import AutomationRuleCreate, AutomationStepCreate, DelayInput
from stageflow.services import automation_service


@pytest.fixture
def welcome_rule(db, test_org):
    return automation_service.create_rule(
        db,
        test_org.id,
        AutomationRuleCreate(
            name="Welcome",
            steps=[
                AutomationStepCreate(subject="Hi", body="b"),
                AutomationStepCreate(subject="Again", body="b", delay=DelayInput(days=2)),
            ],
        ),
    )


def _event(entity_id, to_stage, **overrides) -> dict:
    payload = {
        "entity_id": str(entity_id),
        "from_stage_id": None,
        "to_stage_id": str(to_stage.id),
        "occurred_at": "2026-06-01T15:00:00Z",
    }
    payload.update(overrides)
    return payload


@pytest.mark.asyncio
async def test_stage_change_schedules_steps(client, stages, test_entity, welcome_rule):
    response = await client.post(
        "/events/stage-changed",
        json=_event(test_entity.id, stages["Inquiry"], transition_id="crm-1"),
    )

    assert response.status_code == 200
    data = response.json()
    assert data["recorded"] is True
    assert data["occurrence_key"] == "t:crm-1"
    assert data["sequence"] == 1
    assert len(data["scheduled_execution_ids"]) == 2


@pytest.mark.asyncio
async def test_redelivery_reports_not_recorded(client, stages, test_entity, welcome_rule):
    payload = _event(test_entity.id, stages["Inquiry"], transition_id="crm-1")
    await client.post("/events/stage-changed", json=payload)

    response = await client.post("/events/stage-changed", json=payload)

    assert response.json() == {
        "recorded": False,
        "occurrence_key": None,
        "sequence": None,
        "scheduled_execution_ids": [],
        "skipped": 0,
        "canceled": 0,
        "enrollment_ids": [],
    }
    listing = (await client.get("/scheduled-executions")).json()
    assert listing["total"] == 2


@pytest.mark.asyncio
async def test_entity_of_other_org_rejected(client, db, other_org, stages):
    from stageflow.services import entity_service

    foreign = entity_service.upsert_entity(db, other_org.id, uuid.uuid4(), first_name="Lee")

    response = await client.post("/events/stage-changed", json=_event(foreign.id, stages["Inquiry"]))

    assert response.status_code == 422


@pytest.mark.asyncio
async def test_executions_list_and_filters(client, stages, test_entity, welcome_rule):
    await client.post("/events/stage-changed", json=_event(test_entity.id, stages["Inquiry"]))

    response = await client.get("/scheduled-executions", params={"per_page": 1})
    data = response.json()
    assert response.status_code == 200
    assert (data["total"], data["pages"], data["per_page"]) == (2, 2, 1)
    assert data["items"][0]["due_at"].startswith("2026-06-01T15:00:00")

    page_two = (await client.get("/scheduled-executions", params={"per_page": 1, "page": 2})).json()
    assert page_two["items"][0]["id"] != data["items"][0]["id"]

    pending = (await client.get("/scheduled-executions", params={"status": "pending"})).json()
    assert pending["total"] == 2
    sent = (await client.get("/scheduled-executions", params={"status": "sent"})).json()
    assert sent["total"] == 0
    other_entity = (
        await client.get("/scheduled-executions", params={"entity_id": str(uuid.uuid4())})
    ).json()
    assert other_entity["total"] == 0


@pytest.mark.asyncio
async def test_get_execution(client, stages, test_entity, welcome_rule):
    created = (
        await client.post("/events/stage-changed", json=_event(test_entity.id, stages["Inquiry"]))
    ).json()
    execution_id = created["scheduled_execution_ids"][0]

    response = await client.get(f"/scheduled-executions/{execution_id}")
    assert response.status_code == 200
    assert response.json()["status"] == "pending"
    assert response.json()["rule_id"] == str(welcome_rule.id)

    assert (await client.get(f"/scheduled-executions/{uuid.uuid4()}")).status_code == 404


@pytest.mark.asyncio
async def test_disabling_rule_via_api_cancels(client, stages, test_entity, welcome_rule):
    await client.post("/events/stage-changed", json=_event(test_entity.id, stages["Inquiry"]))

    response = await client.patch(f"/automations/{welcome_rule.id}", json={"is_enabled": False})
    assert response.status_code == 200

    canceled = (await client.get("/scheduled-executions", params={"status": "canceled"})).json()
    assert canceled["total"] == 2
    assert {i["cancel_reason"] for i in canceled["items"]} == {"rule_disabled"}
