"""Tests for the device registry."""

import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import func, select

from conftest import register_device
from devicepush.exceptions import DeviceNotFoundError, RegistrationError
from devicepush.models import Device, PushToken
from devicepush.services.registry import merge_preferences, resolve_push_token
from devicepush.utils.db_utils import utcnow


async def _count(session, model):
    result = await session.execute(select(func.count(model.id)))
    return result.scalar()


class TestRegister:

    @pytest.mark.asyncio
    async def test_new_device_gets_defaults(self, registry, session):
        device, created = await registry.register(session, "user-1", "dev-1", "android", push_token="tok-1")
        assert created is True
        assert device.is_active is True
        assert device.preferences["enabled"] is True
        assert device.preferences["categories"]["marketing"] is False
        assert device.preferences["quiet_hours"]["start_time"] == "22:00"
        assert device.location == {"timezone": "UTC"}
        assert [(t.provider, t.token, t.is_active) for t in device.push_tokens] == [("fcm", "tok-1", True)]

    @pytest.mark.asyncio
    async def test_register_is_idempotent(self, registry, session):
        first, created_first = await registry.register(session, "user-1", "dev-1", "android")
        second, created_second = await registry.register(session, "user-1", "dev-1", "android")
        assert created_first is True
        assert created_second is False
        assert first.id == second.id
        assert await _count(session, Device) == 1

    @pytest.mark.asyncio
    async def test_reregister_keeps_omitted_metadata(self, registry, session):
        await registry.register(session, "user-1", "dev-1", "ios", metadata={"name": "Phone", "model": "X"})
        device, _ = await registry.register(session, "user-2", "dev-1", "ios", metadata={"app_version": "2.0"})
        assert device.name == "Phone"
        assert device.model == "X"
        assert device.app_version == "2.0"
        assert device.user_id == "user-2"

    @pytest.mark.asyncio
    async def test_unknown_metadata_goes_to_extra(self, registry, session):
        device, _ = await registry.register(session, "user-1", "dev-1", "web", metadata={"browser": "firefox"})
        assert device.extra == {"browser": "firefox"}

    @pytest.mark.asyncio
    async def test_preferences_merged_not_replaced(self, registry, session):
        device, _ = await registry.register(
            session, "user-1", "dev-1", "android",
            preferences={"categories": {"marketing": True}},
        )
        assert device.preferences["categories"]["marketing"] is True
        assert device.preferences["categories"]["general"] is True

    @pytest.mark.asyncio
    async def test_reregister_reactivates(self, registry, session):
        await register_device(registry, session, "dev-1")
        await registry.deactivate(session, "dev-1")
        device = await register_device(registry, session, "dev-1")
        assert device.is_active is True

    @pytest.mark.asyncio
    @pytest.mark.parametrize("kwargs", [
        {"platform": "blackberry"},
        {"device_id": ""},
        {"push_token": "   "},
        {"provider": "pigeon", "push_token": "tok"},
        {"preferences": {"quiet_hours": {"start_time": "25:00"}}},
        {"preferences": {"categories": {"spam": True}}},
        {"capabilities": {"hologram": True}},
    ])
    async def test_invalid_input_rejected(self, registry, session, kwargs):
        args = {"user_id": "user-1", "device_id": "dev-1", "platform": "android"}
        args.update(kwargs)
        with pytest.raises(RegistrationError):
            await registry.register(session, **args)
        assert await _count(session, Device) == 0

    @pytest.mark.asyncio
    async def test_concurrent_registration_creates_one_record(self, registry, session_factory):
        async def register(token):
            async with session_factory() as session:
                await registry.register(session, "user-1", "dev-1", "android", push_token=token)

        await asyncio.gather(register("tok-a"), register("tok-b"))

        async with session_factory() as session:
            assert await _count(session, Device) == 1
            device = await registry.get(session, "dev-1")
            active = [t for t in device.push_tokens if t.is_active]
            assert len(active) == 1


class TestTokens:

    @pytest.mark.asyncio
    async def test_rotation_deactivates_previous_token(self, registry, session):
        await register_device(registry, session, "dev-1", token="old")
        device = await registry.rotate_token(session, "dev-1", "fcm", "new")

        tokens = {t.token: t.is_active for t in device.push_tokens}
        assert tokens == {"old": False, "new": True}
        assert device.get_active_push_token("fcm").token == "new"

    @pytest.mark.asyncio
    async def test_rotation_leaves_other_providers(self, registry, session):
        await register_device(registry, session, "dev-1", platform="ios", token="apns-1", provider="apns")
        device = await registry.rotate_token(session, "dev-1", "fcm", "fcm-1")
        assert device.get_active_push_token("apns").token == "apns-1"
        assert device.get_active_push_token("fcm").token == "fcm-1"

    @pytest.mark.asyncio
    async def test_same_token_is_not_duplicated(self, registry, session):
        await register_device(registry, session, "dev-1", token="same")
        await register_device(registry, session, "dev-1", token="same")
        assert await _count(session, PushToken) == 1

    @pytest.mark.asyncio
    async def test_rotate_unknown_device(self, registry, session):
        with pytest.raises(DeviceNotFoundError):
            await registry.rotate_token(session, "missing", "fcm", "tok")

    @pytest.mark.asyncio
    async def test_ios_prefers_apns_then_fcm(self, registry, session):
        device = await register_device(registry, session, "dev-1", platform="ios", token="fcm-1", provider="fcm")
        assert resolve_push_token(device) == ("fcm", "fcm-1")

        device = await registry.rotate_token(session, "dev-1", "apns", "apns-1")
        assert resolve_push_token(device) == ("apns", "apns-1")

    @pytest.mark.asyncio
    async def test_expired_token_is_skipped(self, registry, session):
        device = await register_device(
            registry, session, "dev-1", token="tok", expires_at=utcnow() - timedelta(minutes=1)
        )
        assert resolve_push_token(device) is None

    @pytest.mark.asyncio
    async def test_find_by_token(self, registry, session):
        await register_device(registry, session, "dev-1", token="needle")
        device = await registry.find_by_token(session, "needle")
        assert device.device_id == "dev-1"
        assert await registry.find_by_token(session, "haystack") is None


class TestLifecycle:

    @pytest.mark.asyncio
    async def test_deactivate_disables_tokens(self, registry, session):
        await register_device(registry, session, "dev-1")
        device = await registry.deactivate(session, "dev-1")
        assert device.is_active is False
        assert all(not t.is_active for t in device.push_tokens)

    @pytest.mark.asyncio
    async def test_update_preferences_merges_sections(self, registry, session):
        await register_device(registry, session, "dev-1")
        device = await registry.update_preferences(
            session, "dev-1", {"quiet_hours": {"enabled": True}, "priority": {"low": False}}
        )
        assert device.preferences["quiet_hours"] == {"enabled": True, "start_time": "22:00", "end_time": "08:00"}
        assert device.preferences["priority"]["low"] is False
        assert device.preferences["priority"]["high"] is True

    @pytest.mark.asyncio
    async def test_cleanup_inactive_uses_cutoff(self, registry, session_factory):
        now = utcnow()
        async with session_factory() as session:
            stale = await register_device(registry, session, "stale")
            recent = await register_device(registry, session, "recent")
            stale.last_activity = now - timedelta(days=91)
            recent.last_activity = now - timedelta(days=89)
            await session.commit()

            count = await registry.cleanup_inactive(session, max_age_days=90, now=now)
        assert count == 1

        async with session_factory() as session:
            assert (await registry.get(session, "stale")).is_active is False
            assert (await registry.get(session, "recent")).is_active is True

    @pytest.mark.asyncio
    async def test_record_interaction_increments_counter(self, registry, session_factory):
        async with session_factory() as session:
            await register_device(registry, session, "dev-1")
            await registry.record_interaction(session, "dev-1", "received")
            await registry.record_interaction(session, "dev-1", "received")

        async with session_factory() as session:
            device = await registry.get(session, "dev-1")
            assert device.notifications_received == 2
            assert device.last_notification_at is not None

    @pytest.mark.asyncio
    async def test_list_eligible_filters(self, registry, session):
        await register_device(registry, session, "phone")
        await register_device(registry, session, "tablet", preferences={"enabled": False})
        await register_device(registry, session, "old")
        await registry.deactivate(session, "old")
        await register_device(registry, session, "other", user_id="user-2")

        eligible = await registry.list_eligible(session, "user-1", "general", "normal")
        assert [d.device_id for d in eligible] == ["phone"]
        assert await registry.list_eligible(session, "user-1", "marketing", "normal") == []

    @pytest.mark.asyncio
    async def test_count(self, registry, session):
        await register_device(registry, session, "a")
        await register_device(registry, session, "b", platform="web", token=None)
        await register_device(registry, session, "c")
        await registry.deactivate(session, "c")

        counts = await registry.count(session)
        assert counts == {"total": 3, "active": 2, "inactive": 1, "by_platform": {"android": 1, "web": 1}}


def test_merge_preferences_replaces_top_level_keys():
    merged = merge_preferences({"enabled": True, "categories": {"general": True}}, {"enabled": False})
    assert merged == {"enabled": False, "categories": {"general": True}}
