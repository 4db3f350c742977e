"""API tests for drip campaigns and enrollments."""
import uuid

import pytest


def _campaign_payload(**overrides) -> dict:
    payload = {
        "name": "Post-inquiry nurture",
        "send_at_hour": 10,
        "steps": [
            {"days_after_start": 0, "subject": "Welcome", "body": "<p>Hi {{first_name}}</p>"},
            {"days_after_start": 3, "action_kind": "sms", "body": "Still planning, {{first_name}}?"},
        ],
    }
    payload.update(overrides)
    return payload


@pytest.mark.asyncio
async def test_create_and_list(client):
    response = await client.post("/drip-campaigns", json=_campaign_payload())
    assert response.status_code == 201
    assert response.json()["send_at_hour"] == 10
    assert [s["days_after_start"] for s in response.json()["steps"]] == [0, 3]

    listing = (await client.get("/drip-campaigns")).json()
    assert [c["name"] for c in listing] == ["Post-inquiry nurture"]


@pytest.mark.asyncio
async def test_invalid_campaigns_rejected(client):
    bad_payloads = [
        _campaign_payload(send_at_hour=24),
        _campaign_payload(target_stage_id=str(uuid.uuid4())),
        _campaign_payload(steps=[{"days_after_start": -1, "subject": "s", "body": "b"}]),
        _campaign_payload(steps=[{"days_after_start": 0, "action_kind": "document_send", "body": "b"}]),
        _campaign_payload(steps=[{"days_after_start": 0, "action_kind": "email", "body": "no subject"}]),
    ]
    for payload in bad_payloads:
        response = await client.post("/drip-campaigns", json=payload)
        assert response.status_code == 422, payload


@pytest.mark.asyncio
async def test_enroll_and_unenroll(client, test_entity):
    campaign = (await client.post("/drip-campaigns", json=_campaign_payload())).json()

    response = await client.post(
        f"/drip-campaigns/{campaign['id']}/enrollments",
        json={"entity_id": str(test_entity.id), "enrolled_at": "2026-06-01T12:00:00Z"},
    )
    assert response.status_code == 201
    enrollment = response.json()
    assert enrollment["status"] == "active"

    executions = (await client.get("/scheduled-executions", params={"source_type": "drip"})).json()
    # 10:00 EDT on the enrollment day, then three days later
    assert [i["due_at"][:19] for i in executions["items"]] == [
        "2026-06-01T14:00:00",
        "2026-06-04T14:00:00",
    ]

    response = await client.delete(f"/drip-enrollments/{enrollment['id']}")
    assert response.json() == {"canceled": 2}
    response = await client.delete(f"/drip-enrollments/{enrollment['id']}")
    assert response.json() == {"canceled": 0}

    enrollments = (
        await client.get(f"/drip-campaigns/{campaign['id']}/enrollments", params={"status": "unenrolled"})
    ).json()
    assert [e["id"] for e in enrollments] == [enrollment["id"]]


@pytest.mark.asyncio
async def test_enroll_twice_returns_active_enrollment(client, test_entity):
    campaign = (await client.post("/drip-campaigns", json=_campaign_payload())).json()
    url = f"/drip-campaigns/{campaign['id']}/enrollments"

    first = (await client.post(url, json={"entity_id": str(test_entity.id)})).json()
    second = (await client.post(url, json={"entity_id": str(test_entity.id)})).json()

    assert first["id"] == second["id"]


@pytest.mark.asyncio
async def test_enroll_errors(client, test_entity):
    campaign = (await client.post("/drip-campaigns", json=_campaign_payload(is_enabled=False))).json()
    url = f"/drip-campaigns/{campaign['id']}/enrollments"

    assert (await client.post(url, json={"entity_id": str(uuid.uuid4())})).status_code == 404
    assert (await client.post(url, json={"entity_id": str(test_entity.id)})).status_code == 422
    assert (await client.delete(f"/drip-enrollments/{uuid.uuid4()}")).status_code == 404


@pytest.mark.asyncio
async def test_step_crud(client):
    campaign = (await client.post("/drip-campaigns", json=_campaign_payload())).json()
    base = f"/drip-campaigns/{campaign['id']}/steps"

    added = await client.post(base, json={"days_after_start": 7, "action_kind": "sms", "body": "Last call"})
    assert added.status_code == 201
    assert added.json()["order_index"] == 2

    updated = await client.patch(f"{base}/{added.json()['id']}", json={"days_after_start": 10})
    assert updated.json()["days_after_start"] == 10

    removed = await client.delete(f"{base}/{campaign['steps'][0]['id']}")
    assert removed.status_code == 200

    steps = (await client.get(f"/drip-campaigns/{campaign['id']}")).json()["steps"]
    assert [(s["days_after_start"], s["order_index"]) for s in steps] == [(3, 0), (10, 1)]


@pytest.mark.asyncio
async def test_delete_campaign_cancels_sends(client, test_entity):
    campaign = (await client.post("/drip-campaigns", json=_campaign_payload())).json()
    await client.post(
        f"/drip-campaigns/{campaign['id']}/enrollments",
        json={"entity_id": str(test_entity.id)},
    )

    response = await client.delete(f"/drip-campaigns/{campaign['id']}")

    assert response.json() == {"canceled": 2}
    assert (await client.get(f"/drip-campaigns/{campaign['id']}")).status_code == 404
