"""Platform dispatcher - one send() over a table of provider adapters.

Adding a provider means registering another PushAdapter; the dispatch
control flow never branches on platform names.
"""
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional, List, Dict, Iterable

from ..models.device import PLATFORM_PROVIDERS, PROVIDERS
from ..models.notification import DEFAULT_DELIVERY_SETTINGS

logger = logging.getLogger(__name__)

UNSUPPORTED_PLATFORM = "unsupported platform"


@dataclass
class PushPayload:
    """Provider-neutral notification content for one device."""
    title: str
    body: str
    category: str = "general"
    priority: str = "normal"  # low, normal, high, critical
    data: dict = field(default_factory=dict)
    ttl_seconds: int = 86400
    badge: Optional[int] = None
    sound: Optional[str] = None
    vibrate: bool = False
    collapse_key: Optional[str] = None
    media_url: Optional[str] = None
    media_type: Optional[str] = None
    actions: List[dict] = field(default_factory=list)
    platform: Optional[str] = None
    notification_id: Optional[int] = None


@dataclass
class DeliveryResult:
    """Outcome of one provider call. Adapters return this instead of raising."""
    success: bool
    provider: Optional[str] = None
    provider_message_id: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    latency_ms: Optional[int] = None

    @classmethod
    def failed(cls, error: str, code: Optional[str] = None, provider: Optional[str] = None) -> "DeliveryResult":
        return cls(success=False, provider=provider, error=error, error_code=code)


class PushAdapter(ABC):
    """Delivers payloads through one provider family."""

    provider: str = ""

    async def send(self, token: str, payload: PushPayload) -> DeliveryResult:
        """Send to one token; every failure comes back as a result."""
        started = time.monotonic()
        try:
            result = await self._deliver(token, payload)
        except Exception as e:
            logger.error(f"{self.provider} send failed: {type(e).__name__}: {e} (token: {token[:16]}...)")
            result = DeliveryResult.failed(f"{type(e).__name__}: {e}", code="internal_error")

        result.provider = self.provider
        result.latency_ms = int((time.monotonic() - started) * 1000)
        if result.success:
            logger.info(f"Push notification sent via {self.provider} to {token[:16]}...")
        else:
            logger.warning(f"Push notification failed via {self.provider}: {result.error} (token: {token[:16]}...)")
        return result

    @abstractmethod
    async def _deliver(self, token: str, payload: PushPayload) -> DeliveryResult:
        """Provider-specific send."""

    async def close(self) -> None:
        """Release network resources held by the adapter."""


def build_payload(notification, device=None) -> PushPayload:
    """Build the payload for one device of a notification record.

    Fields the device cannot render (per its capability flags) are left out.
    """
    settings = {**DEFAULT_DELIVERY_SETTINGS, **(notification.settings or {})}
    capabilities = (device.capabilities if device is not None else None) or {}

    media = notification.media or {}
    media_url = media.get("url") if capabilities.get("rich_media", True) else None
    actions = list(notification.actions or []) if capabilities.get("action_buttons", True) else []

    return PushPayload(
        title=notification.title,
        body=notification.message,
        category=notification.category,
        priority=notification.priority,
        data=dict(notification.data or {}),
        ttl_seconds=int(settings.get("time_to_live") or DEFAULT_DELIVERY_SETTINGS["time_to_live"]),
        badge=settings.get("badge") if capabilities.get("badge", True) else None,
        sound=settings.get("sound") if capabilities.get("sound", True) else None,
        vibrate=bool(settings.get("vibrate")) and capabilities.get("vibration", True),
        collapse_key=settings.get("collapse_key"),
        media_url=media_url,
        media_type=media.get("type") if media_url else None,
        actions=actions,
        platform=device.platform if device is not None else None,
        notification_id=notification.id,
    )


class PlatformDispatcher:
    """Routes each send to the adapter registered for its provider family."""

    def __init__(self, adapters: Optional[Iterable[PushAdapter]] = None):
        self._adapters: Dict[str, PushAdapter] = {}
        for adapter in adapters or ():
            self.register(adapter)

    def register(self, adapter: PushAdapter) -> None:
        """Register (or replace) the adapter for ``adapter.provider``."""
        self._adapters[adapter.provider] = adapter
        logger.info(f"Push adapter registered: {adapter.provider}")

    def unregister(self, provider: str) -> Optional[PushAdapter]:
        return self._adapters.pop(provider, None)

    async def replace_adapters(self, adapters: Iterable[PushAdapter]) -> None:
        """Swap the whole adapter table, closing adapters that are dropped."""
        old = self._adapters
        self._adapters = {}
        for adapter in adapters:
            self.register(adapter)
        for provider, adapter in old.items():
            if self._adapters.get(provider) is not adapter:
                await adapter.close()

    async def configure(self, config) -> None:
        """Rebuild the adapter table from provider credentials (a ProviderSettings)."""
        from .providers import build_adapters

        await self.replace_adapters(build_adapters(config))

    def get_adapter(self, provider: str) -> Optional[PushAdapter]:
        return self._adapters.get(provider)

    def get_status(self) -> Dict[str, bool]:
        """Which provider families currently have an adapter."""
        return {provider: provider in self._adapters for provider in PROVIDERS}

    async def send(self, device, token: str, payload: PushPayload, provider: Optional[str] = None) -> DeliveryResult:
        """Send a payload to one device token.

        ``provider`` defaults to the first provider for the device's platform.
        Unknown platforms and providers without an adapter fail immediately,
        without any network call.
        """
        if provider is None:
            providers = PLATFORM_PROVIDERS.get(device.platform)
            provider = providers[0] if providers else None

        adapter = self._adapters.get(provider) if provider else None
        if adapter is None:
            logger.warning(
                f"No adapter for platform {device.platform!r} provider {provider!r} "
                f"(device {device.device_id})"
            )
            return DeliveryResult.failed(UNSUPPORTED_PLATFORM, code="unsupported_platform", provider=provider)

        return await adapter.send(token, payload)

    async def close(self) -> None:
        for adapter in self._adapters.values():
            await adapter.close()


# Global instance
push_dispatcher = PlatformDispatcher()
