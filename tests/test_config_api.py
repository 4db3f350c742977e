"""API tests for the stage, entity and template mirrors."""
import uuid

import pytest


@pytest.mark.asyncio
async def test_health(client):
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


class TestStages:
    @pytest.mark.asyncio
    async def test_upsert_and_list(self, client):
        stage_id = str(uuid.uuid4())
        created = await client.put("/stages", json={"id": stage_id, "name": "Lead", "order_index": 0})
        assert created.json()["id"] == stage_id

        renamed = await client.put("/stages", json={"id": stage_id, "name": "New lead", "order_index": 0})
        assert renamed.json()["name"] == "New lead"

        await client.put("/stages", json={"name": "Won", "order_index": 1})
        listing = (await client.get("/stages")).json()
        assert [s["name"] for s in listing] == ["New lead", "Won"]


class TestEntities:
    @pytest.mark.asyncio
    async def test_upsert_creates_then_updates(self, client, test_user):
        entity_id = uuid.uuid4()

        created = await client.put(
            f"/entities/{entity_id}",
            json={
                "first_name": "  Sam   Lee ",
                "email": "Sam@Example.com",
                "phone": "555-010-3000",
                "email_opt_in": True,
                "owner_user_id": str(test_user.id),
            },
        )
        assert created.status_code == 200
        data = created.json()
        assert data["first_name"] == "Sam Lee"
        assert data["email"] == "sam@example.com"
        assert data["phone"] == "+15550103000"
        assert data["sms_opt_in"] is False
        assert data["stage_id"] is None

        updated = await client.put(f"/entities/{entity_id}", json={"sms_opt_in": True})
        assert updated.json()["sms_opt_in"] is True
        assert updated.json()["email"] == "sam@example.com"

    @pytest.mark.asyncio
    async def test_invalid_phone_rejected(self, client):
        response = await client.put(f"/entities/{uuid.uuid4()}", json={"phone": "12345"})
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_unknown_owner_rejected(self, client):
        response = await client.put(
            f"/entities/{uuid.uuid4()}", json={"owner_user_id": str(uuid.uuid4())}
        )
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_id_owned_by_other_org_rejected(self, client, db, other_org):
        from stageflow.services import entity_service

        foreign = entity_service.upsert_entity(db, other_org.id, uuid.uuid4(), first_name="Lee")

        response = await client.put(f"/entities/{foreign.id}", json={"first_name": "Mine"})
        assert response.status_code == 422
        assert (await client.get(f"/entities/{foreign.id}")).status_code == 404


class TestTemplates:
    @pytest.mark.asyncio
    async def test_crud(self, client):
        created = await client.post(
            "/message-templates",
            json={"name": "Welcome", "channel": "email", "subject": "Hi", "body": "<p>Hello</p>"},
        )
        assert created.status_code == 201
        template_id = created.json()["id"]

        updated = await client.patch(f"/message-templates/{template_id}", json={"subject": "Hello!"})
        assert updated.json()["subject"] == "Hello!"

        await client.post("/message-templates", json={"name": "Ping", "channel": "sms", "body": "Hi"})
        sms_only = (await client.get("/message-templates", params={"channel": "sms"})).json()
        assert [t["name"] for t in sms_only] == ["Ping"]

        assert (await client.delete(f"/message-templates/{template_id}")).status_code == 204
        assert (await client.get(f"/message-templates/{template_id}")).status_code == 404

    @pytest.mark.asyncio
    async def test_email_template_without_subject_rejected(self, client):
        response = await client.post(
            "/message-templates", json={"name": "Bad", "channel": "email", "body": "x"}
        )
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_step_must_use_matching_channel(self, client):
        sms = (
            await client.post("/message-templates", json={"name": "Ping", "channel": "sms", "body": "Hi"})
        ).json()

        response = await client.post(
            "/automations",
            json={"name": "Mismatch", "steps": [{"action_kind": "email", "template_id": sms["id"]}]},
        )

        assert response.status_code == 422
