"""API tests over the ASGI app with a temporary database and fake providers."""

import importlib

import httpx
import pytest
import pytest_asyncio

from devicepush.database import get_db
from devicepush.main import create_app
from devicepush.services.providers import FCMAdapter

notification_routes = importlib.import_module("devicepush.routers.notifications")
settings_routes = importlib.import_module("devicepush.routers.settings")

ALICE = {"X-User-Id": "alice"}
BOB = {"X-User-Id": "bob"}


@pytest_asyncio.fixture
async def client(session_factory, service, dispatcher, monkeypatch):
    monkeypatch.setattr(notification_routes, "notification_service", service)
    monkeypatch.setattr(notification_routes, "push_dispatcher", dispatcher)
    monkeypatch.setattr(settings_routes, "push_dispatcher", dispatcher)

    app = create_app()

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


async def _register(client, device_id, headers=ALICE, **fields):
    body = {"device_id": device_id, "platform": "android", "push_token": f"token-{device_id}", **fields}
    return await client.post("/api/devices/register", json=body, headers=headers)


async def _send(client, headers=ALICE, **fields):
    body = {"title": "Hello", "message": "World", "user_ids": ["alice"], **fields}
    return await client.post("/api/notifications/send", json=body, headers=headers)


class TestDeviceEndpoints:

    @pytest.mark.asyncio
    async def test_register_then_update(self, client):
        response = await _register(client, "phone", metadata={"name": "Pixel", "model": "8"})
        assert response.status_code == 201
        body = response.json()
        assert body["created"] is True
        assert body["device"]["name"] == "Pixel"
        assert body["device"]["push_tokens"][0]["provider"] == "fcm"
        assert body["device"]["preferences"]["categories"]["marketing"] is False

        response = await _register(client, "phone", push_token="token-new")
        body = response.json()
        assert body["created"] is False
        assert body["device"]["name"] == "Pixel"
        assert [t["token"] for t in body["device"]["push_tokens"] if t["is_active"]] == ["token-new"]

    @pytest.mark.asyncio
    async def test_caller_identity_required(self, client):
        response = await client.get("/api/devices")
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_invalid_platform(self, client):
        response = await _register(client, "pager", platform="pager")
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_list_and_deactivate(self, client):
        await _register(client, "phone")
        await _register(client, "tablet")

        response = await client.delete("/api/devices/tablet", headers=ALICE)
        assert response.status_code == 200

        active = await client.get("/api/devices", headers=ALICE)
        assert [device["device_id"] for device in active.json()] == ["phone"]
        everything = await client.get("/api/devices", params={"include_inactive": True}, headers=ALICE)
        assert len(everything.json()) == 2

        count = await client.get("/api/devices/count")
        assert count.json() == {"total": 2, "active": 1, "inactive": 1, "by_platform": {"android": 1}}

    @pytest.mark.asyncio
    async def test_other_users_device_is_not_found(self, client):
        await _register(client, "phone")
        response = await client.delete("/api/devices/phone", headers=BOB)
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_update_preferences_merges(self, client):
        await _register(client, "phone")

        response = await client.put(
            "/api/devices/phone/preferences",
            json={"categories": {"marketing": True}, "quiet_hours": {"enabled": True}},
            headers=ALICE,
        )

        assert response.status_code == 200
        preferences = response.json()["preferences"]
        assert preferences["categories"]["marketing"] is True
        assert preferences["categories"]["medication"] is True
        assert preferences["quiet_hours"] == {"enabled": True, "start_time": "22:00", "end_time": "08:00"}

    @pytest.mark.asyncio
    async def test_rotate_token(self, client):
        await _register(client, "phone")

        response = await client.put(
            "/api/devices/phone/token",
            json={"push_token": "rotated", "provider": "fcm"},
            headers=ALICE,
        )

        tokens = response.json()["push_tokens"]
        assert [t["token"] for t in tokens if t["is_active"]] == ["rotated"]


class TestNotificationEndpoints:

    @pytest.mark.asyncio
    async def test_send_to_user(self, client, adapters):
        await _register(client, "phone")

        response = await _send(client)

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        result = body["results"][0]
        assert result["user_id"] == "alice"
        assert result["status"] == "delivered"
        assert result["delivered"] == 1
        assert result["devices"][0]["device_id"] == "phone"
        assert len(adapters["fcm"].calls) == 1

    @pytest.mark.asyncio
    async def test_send_needs_exactly_one_target_list(self, client):
        response = await _send(client, user_ids=None)
        assert response.status_code == 400
        response = await _send(client, device_ids=["phone"])
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_send_to_devices(self, client):
        await _register(client, "phone")
        response = await _send(client, user_ids=None, device_ids=["phone"])
        assert response.json()["results"][0]["status"] == "delivered"

    @pytest.mark.asyncio
    async def test_send_without_devices(self, client):
        response = await _send(client)
        body = response.json()
        assert body["success"] is False
        assert body["results"][0]["message"] == "No eligible devices"

    @pytest.mark.asyncio
    async def test_detail_and_interactions(self, client):
        await _register(client, "phone")
        sent = await _send(client)
        notification_id = sent.json()["results"][0]["notification_id"]

        detail = await client.get(f"/api/notifications/{notification_id}", headers=ALICE)
        assert detail.status_code == 200
        assert detail.json()["targets"][0]["status"] == "delivered"

        read = await client.post(f"/api/notifications/{notification_id}/read", json={"device_id": "phone"}, headers=ALICE)
        assert read.json()["is_read"] is True
        assert read.json()["impressions"] == 1

        clicked = await client.post(f"/api/notifications/{notification_id}/click", headers=ALICE)
        assert clicked.json()["clicks"] == 1

        hidden = await client.get(f"/api/notifications/{notification_id}", headers=BOB)
        assert hidden.status_code == 404

    @pytest.mark.asyncio
    async def test_schedule_and_cancel(self, client):
        await _register(client, "phone")

        response = await client.post(
            "/api/notifications/schedule",
            json={"title": "Later", "message": "Soon", "user_id": "alice", "scheduled_for": "2999-01-01T09:00:00Z"},
            headers=ALICE,
        )
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "pending"
        notification_id = body["notification_id"]

        read = await client.post(f"/api/notifications/{notification_id}/read", headers=ALICE)
        assert read.status_code == 409

        cancelled = await client.post(f"/api/notifications/{notification_id}/cancel", headers=ALICE)
        assert cancelled.json()["status"] == "cancelled"

        again = await client.post(f"/api/notifications/{notification_id}/cancel", headers=ALICE)
        assert again.status_code == 409

    @pytest.mark.asyncio
    async def test_schedule_in_the_past(self, client):
        response = await client.post(
            "/api/notifications/schedule",
            json={"title": "Late", "message": "Too late", "user_id": "alice", "scheduled_for": "2000-01-01T09:00:00Z"},
            headers=ALICE,
        )
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_bulk(self, client):
        await _register(client, "phone")

        response = await client.post(
            "/api/notifications/bulk",
            json={"notifications": [
                {"title": "One", "message": "First", "user_ids": ["alice"]},
                {"title": "Two", "message": "Second"},
            ]},
            headers=ALICE,
        )

        body = response.json()
        assert body["summary"] == {"total": 2, "successful": 1, "failed": 1}
        assert body["results"][1]["error"] == "Either user_ids or device_ids must be specified"

    @pytest.mark.asyncio
    async def test_test_notification(self, client, adapters):
        await _register(client, "phone")

        response = await client.post("/api/notifications/test", headers=ALICE)

        assert response.json()["status"] == "delivered"
        _, payload = adapters["fcm"].calls[0]
        assert payload.category == "system"

    @pytest.mark.asyncio
    async def test_list_filters(self, client):
        await _register(client, "phone")
        await _send(client, category="medication")
        await _send(client, category="appointment")

        response = await client.get("/api/notifications", params={"category": "appointment"}, headers=ALICE)

        assert [item["category"] for item in response.json()] == ["appointment"]

    @pytest.mark.asyncio
    async def test_notification_settings(self, client):
        response = await client.get("/api/notifications/settings")
        body = response.json()
        assert "medication" in body["categories"]
        assert body["providers"] == {"fcm": True, "apns": True, "web_push": True}


class TestSettingsEndpoints:

    @pytest.mark.asyncio
    async def test_update_rebuilds_adapters(self, client, dispatcher):
        response = await client.put("/api/settings", json={
            "fcm_enabled": True,
            "fcm_project_id": "demo",
            "fcm_access_token": "secret",
        })

        assert response.status_code == 200
        body = response.json()
        assert body["fcm_enabled"] is True
        assert body["fcm_access_token_set"] is True
        assert "fcm_access_token" not in body
        assert isinstance(dispatcher.get_adapter("fcm"), FCMAdapter)
        assert dispatcher.get_status() == {"fcm": True, "apns": False, "web_push": False}

        await dispatcher.close()


class TestHealth:

    @pytest.mark.asyncio
    async def test_health(self, client):
        response = await client.get("/health")
        assert response.json()["status"] == "healthy"
