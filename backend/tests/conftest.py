"""Pytest configuration and shared fixtures."""

import asyncio
import os
import tempfile
from typing import Dict, List, Optional, Tuple

# Keep the module-level engine away from /data before anything imports it
os.environ.setdefault("DATA_PATH", tempfile.mkdtemp(prefix="devicepush-test-"))

import pytest
import pytest_asyncio

from devicepush import models  # noqa: F401  (registers tables on Base.metadata)
from devicepush.database import Base, build_engine, build_session_factory
from devicepush.services.dispatcher import DeliveryResult, PlatformDispatcher, PushAdapter, PushPayload
from devicepush.services.notifications import NotificationService
from devicepush.services.registry import DeviceRegistry


class FakeAdapter(PushAdapter):
    """Adapter that records sends and answers from a per-token script."""

    def __init__(self, provider: str, delay: float = 0.0):
        self.provider = provider
        self.delay = delay
        self.calls: List[Tuple[str, PushPayload]] = []
        self.responses: Dict[str, DeliveryResult] = {}
        self.closed = False

    def fail(self, token: str, error: str = "Unregistered", code: str = "UNREGISTERED"):
        self.responses[token] = DeliveryResult.failed(error, code=code)

    async def _deliver(self, token: str, payload: PushPayload) -> DeliveryResult:
        self.calls.append((token, payload))
        if self.delay:
            await asyncio.sleep(self.delay)
        if token in self.responses:
            return self.responses[token]
        return DeliveryResult(success=True, provider_message_id=f"{self.provider}-{len(self.calls)}")

    async def close(self) -> None:
        self.closed = True


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    """Session factory over a fresh SQLite database."""
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield build_session_factory(engine)
    await engine.dispose()


@pytest_asyncio.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def registry():
    return DeviceRegistry()


@pytest.fixture
def adapters():
    return {provider: FakeAdapter(provider) for provider in ("fcm", "apns", "web_push")}


@pytest.fixture
def dispatcher(adapters):
    return PlatformDispatcher(adapters.values())


@pytest.fixture
def service(registry, dispatcher, session_factory):
    return NotificationService(
        registry=registry,
        dispatcher=dispatcher,
        session_factory=session_factory,
        batch_size=500,
        batch_cooldown_seconds=0,
    )


async def register_device(
    registry: DeviceRegistry,
    session,
    device_id: str,
    user_id: str = "user-1",
    platform: str = "android",
    token: Optional[str] = "__default__",
    **kwargs,
):
    """Register a device with a token named after it unless told otherwise."""
    if token == "__default__":
        token = f"token-{device_id}"
    device, _ = await registry.register(
        session,
        user_id=user_id,
        device_id=device_id,
        platform=platform,
        push_token=token,
        **kwargs,
    )
    return device
