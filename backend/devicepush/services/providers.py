"""Push provider adapters: FCM (HTTP v1), APNs and Web Push."""
import asyncio
import json
import logging
import time
from dataclasses import dataclass
from typing import Optional, List

import httpx
from aioapns import APNs, NotificationRequest, PushType
from pywebpush import webpush, WebPushException
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..models.settings import Setting, DEFAULT_SETTINGS
from .dispatcher import PushAdapter, PushPayload, DeliveryResult

logger = logging.getLogger(__name__)

FCM_SEND_URL = "https://fcm.googleapis.com/v1/projects/{project_id}/messages:send"

# Abstract priority -> provider urgency
FCM_PRIORITY = {"critical": "HIGH", "high": "HIGH", "normal": "NORMAL", "low": "NORMAL"}
APNS_PRIORITY = {"critical": 10, "high": 10, "normal": 5, "low": 5}
WEB_PUSH_URGENCY = {"critical": "high", "high": "high", "normal": "normal", "low": "low"}

WEB_PUSH_ICON = "/icon-192x192.png"
WEB_PUSH_BADGE = "/badge-72x72.png"


def _string_data(payload: PushPayload) -> dict:
    """FCM and APNs custom data, with every value as a string."""
    data = {
        key: value if isinstance(value, str) else json.dumps(value)
        for key, value in payload.data.items()
    }
    if payload.notification_id is not None:
        data["notification_id"] = str(payload.notification_id)
    data["category"] = payload.category
    return data


def _aps(payload: PushPayload) -> dict:
    aps = {
        "alert": {"title": payload.title, "body": payload.body},
        "content-available": 1,
    }
    if payload.badge is not None:
        aps["badge"] = payload.badge
    if payload.sound:
        aps["sound"] = payload.sound
    if payload.media_url:
        aps["mutable-content"] = 1
    if payload.actions:
        aps["category"] = "ACTION_CATEGORY"
    return aps


@dataclass
class ProviderSettings:
    """Credentials for the push providers."""
    fcm_enabled: bool = False
    fcm_project_id: str = ""
    fcm_access_token: str = ""

    apns_enabled: bool = False
    apns_key_path: str = ""  # Path to .p8 key file
    apns_key_id: str = ""
    apns_team_id: str = ""
    apns_bundle_id: str = ""
    apns_use_sandbox: bool = True  # Use sandbox for development

    web_push_enabled: bool = False
    vapid_private_key: str = ""
    vapid_subject: str = ""

    timeout_seconds: float = 30.0

    @classmethod
    def from_settings(cls, values: dict, timeout_seconds: float = 30.0) -> "ProviderSettings":
        """Build from the string key-value settings table."""
        return cls(
            fcm_enabled=values.get("fcm_enabled", "0") == "1",
            fcm_project_id=values.get("fcm_project_id", ""),
            fcm_access_token=values.get("fcm_access_token", ""),
            apns_enabled=values.get("apns_enabled", "0") == "1",
            apns_key_path=values.get("apns_key_path", ""),
            apns_key_id=values.get("apns_key_id", ""),
            apns_team_id=values.get("apns_team_id", ""),
            apns_bundle_id=values.get("apns_bundle_id", ""),
            apns_use_sandbox=values.get("apns_use_sandbox", "1") == "1",
            web_push_enabled=values.get("web_push_enabled", "0") == "1",
            vapid_private_key=values.get("vapid_private_key", ""),
            vapid_subject=values.get("vapid_subject", ""),
            timeout_seconds=timeout_seconds,
        )


class FCMAdapter(PushAdapter):
    """Firebase Cloud Messaging over the HTTP v1 API."""

    provider = "fcm"

    def __init__(
        self,
        project_id: str,
        access_token: str,
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.project_id = project_id
        self.access_token = access_token
        self._client = client or httpx.AsyncClient(timeout=timeout)

    @property
    def url(self) -> str:
        return FCM_SEND_URL.format(project_id=self.project_id)

    def build_message(self, token: str, payload: PushPayload) -> dict:
        android_notification = {
            "visibility": "PUBLIC" if payload.priority == "critical" else "PRIVATE",
        }
        if payload.sound:
            android_notification["sound"] = payload.sound
        if payload.badge is not None:
            android_notification["notification_count"] = payload.badge
        if payload.vibrate:
            android_notification["vibrate_timings"] = ["1s", "0.5s"]
        if payload.media_url:
            android_notification["image"] = payload.media_url
        if payload.actions:
            android_notification["click_action"] = "FLUTTER_NOTIFICATION_CLICK"

        android = {
            "priority": FCM_PRIORITY.get(payload.priority, "NORMAL"),
            "ttl": f"{payload.ttl_seconds}s",
            "notification": android_notification,
        }
        if payload.collapse_key:
            android["collapse_key"] = payload.collapse_key

        notification = {"title": payload.title, "body": payload.body}
        if payload.media_url:
            notification["image"] = payload.media_url

        message = {
            "token": token,
            "notification": notification,
            "data": _string_data(payload),
            "android": android,
        }

        # iOS devices registered with an FCM token are delivered through APNs by Firebase
        if payload.platform == "ios":
            message["apns"] = {
                "headers": {
                    "apns-priority": str(APNS_PRIORITY.get(payload.priority, 5)),
                    "apns-expiration": str(int(time.time()) + payload.ttl_seconds),
                },
                "payload": {"aps": _aps(payload)},
            }
        return message

    async def _deliver(self, token: str, payload: PushPayload) -> DeliveryResult:
        message = self.build_message(token, payload)
        try:
            response = await self._client.post(
                self.url,
                json={"message": message},
                headers={"Authorization": f"Bearer {self.access_token}"},
            )
        except httpx.HTTPError as e:
            return DeliveryResult.failed(f"FCM request failed: {type(e).__name__}: {e}", code="network_error")

        if response.status_code == 200:
            return DeliveryResult(success=True, provider_message_id=response.json().get("name"))

        code = str(response.status_code)
        error = f"FCM returned HTTP {response.status_code}"
        try:
            detail = response.json().get("error") or {}
            code = detail.get("status") or code
            error = detail.get("message") or error
        except ValueError:
            pass
        return DeliveryResult.failed(error, code=code)

    async def close(self) -> None:
        await self._client.aclose()


class APNsAdapter(PushAdapter):
    """Apple Push Notification service via aioapns."""

    provider = "apns"

    def __init__(
        self,
        key_path: str = "",
        key_id: str = "",
        team_id: str = "",
        bundle_id: str = "",
        use_sandbox: bool = True,
        client=None,
    ):
        self._client = client or APNs(
            key=key_path,
            key_id=key_id,
            team_id=team_id,
            topic=bundle_id,
            use_sandbox=use_sandbox,
        )

    def build_message(self, payload: PushPayload) -> dict:
        message = {"aps": _aps(payload)}
        message.update(_string_data(payload))
        if payload.media_url:
            message["image_url"] = payload.media_url
        return message

    async def _deliver(self, token: str, payload: PushPayload) -> DeliveryResult:
        request = NotificationRequest(
            device_token=token,
            message=self.build_message(payload),
            time_to_live=payload.ttl_seconds,
            priority=APNS_PRIORITY.get(payload.priority, 5),
            collapse_key=payload.collapse_key,
            push_type=PushType.ALERT,
        )
        response = await self._client.send_notification(request)

        if response.is_successful:
            return DeliveryResult(success=True, provider_message_id=response.notification_id)
        return DeliveryResult.failed(response.description or "APNs rejected the notification", code=str(response.status))

    async def close(self) -> None:
        # aioapns keeps HTTP/2 connections in the client's pool
        pool = getattr(self._client, "pool", None)
        if pool is not None:
            pool.close()


class WebPushAdapter(PushAdapter):
    """Browser push via pywebpush; the token is the JSON subscription."""

    provider = "web_push"

    def __init__(self, vapid_private_key: str, vapid_subject: str, timeout: float = 30.0):
        self.vapid_private_key = vapid_private_key
        self.vapid_subject = vapid_subject
        self.timeout = timeout

    def build_message(self, payload: PushPayload) -> dict:
        message = {
            "title": payload.title,
            "body": payload.body,
            "icon": WEB_PUSH_ICON,
            "badge": WEB_PUSH_BADGE,
            "data": {**payload.data, "notification_id": payload.notification_id, "category": payload.category},
            "actions": [
                {"action": action.get("id"), "title": action.get("title"), "icon": action.get("icon")}
                for action in payload.actions
            ],
            "timestamp": int(time.time() * 1000),
            "requireInteraction": payload.priority == "critical",
            "silent": payload.priority == "low",
        }
        if payload.media_url:
            message["image"] = payload.media_url
        return message

    async def _deliver(self, token: str, payload: PushPayload) -> DeliveryResult:
        try:
            subscription = json.loads(token)
        except ValueError:
            return DeliveryResult.failed("Web push token is not a JSON subscription", code="invalid_token")

        try:
            response = await asyncio.to_thread(
                webpush,
                subscription_info=subscription,
                data=json.dumps(self.build_message(payload)),
                vapid_private_key=self.vapid_private_key,
                vapid_claims={"sub": self.vapid_subject},
                ttl=payload.ttl_seconds,
                headers={"Urgency": WEB_PUSH_URGENCY.get(payload.priority, "normal")},
                timeout=self.timeout,
            )
        except WebPushException as e:
            status = getattr(e.response, "status_code", None)
            return DeliveryResult.failed(f"Web push failed: {e}", code=str(status) if status else "web_push_error")

        location = response.headers.get("Location") if response is not None else None
        return DeliveryResult(success=True, provider_message_id=location)


def build_adapters(config: ProviderSettings) -> List[PushAdapter]:
    """Create an adapter for every enabled, fully configured provider."""
    adapters: List[PushAdapter] = []

    if config.fcm_enabled:
        if config.fcm_project_id and config.fcm_access_token:
            adapters.append(FCMAdapter(config.fcm_project_id, config.fcm_access_token, timeout=config.timeout_seconds))
        else:
            logger.warning("FCM enabled but not fully configured")

    if config.apns_enabled:
        if all([config.apns_key_path, config.apns_key_id, config.apns_team_id, config.apns_bundle_id]):
            try:
                adapters.append(APNsAdapter(
                    key_path=config.apns_key_path,
                    key_id=config.apns_key_id,
                    team_id=config.apns_team_id,
                    bundle_id=config.apns_bundle_id,
                    use_sandbox=config.apns_use_sandbox,
                ))
                logger.info(f"APNs client configured (sandbox={config.apns_use_sandbox})")
            except Exception as e:
                logger.error(f"Failed to configure APNs client: {e}")
        else:
            logger.warning("APNs enabled but not fully configured")

    if config.web_push_enabled:
        if config.vapid_private_key and config.vapid_subject:
            adapters.append(WebPushAdapter(config.vapid_private_key, config.vapid_subject, timeout=config.timeout_seconds))
        else:
            logger.warning("Web push enabled but VAPID keys not configured")

    if not adapters:
        logger.info("No push providers configured; sends will fail as unsupported")
    return adapters


async def get_all_settings(session: AsyncSession) -> dict:
    """Get all settings as a dictionary, defaults overridden by stored values."""
    result = await session.execute(select(Setting))
    settings_dict = dict(DEFAULT_SETTINGS)
    for setting in result.scalars().all():
        settings_dict[setting.key] = setting.value
    return settings_dict


async def load_provider_settings(session: AsyncSession, timeout_seconds: float = 30.0) -> ProviderSettings:
    """Read provider credentials from the settings table."""
    return ProviderSettings.from_settings(await get_all_settings(session), timeout_seconds)
