"""Device registry - registration, token lifecycle, preferences and cleanup."""
import asyncio
import copy
import logging
import weakref
from datetime import datetime, timedelta
from typing import Optional, List, Tuple

from sqlalchemy import select, update, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..exceptions import RegistrationError, DeviceNotFoundError
from ..models.device import (
    Device,
    PushToken,
    PLATFORMS,
    PROVIDERS,
    CATEGORIES,
    PRIORITIES,
    PLATFORM_PROVIDERS,
    DEFAULT_CAPABILITIES,
    default_preferences,
    default_capabilities,
    default_location,
)
from ..utils.db_utils import retry_on_lock, utcnow, as_naive_utc
from .eligibility import check_eligibility, is_valid_clock

logger = logging.getLogger(__name__)

# Metadata keys stored in their own columns; anything else lands in Device.extra
METADATA_FIELDS = ("name", "model", "manufacturer", "os_version", "app_version")

# Preference sections merged key by key rather than replaced
NESTED_PREFERENCES = ("categories", "priority", "quiet_hours")

INTERACTION_COUNTERS = {
    "received": "notifications_received",
    "read": "notifications_read",
    "clicked": "notifications_clicked",
}

DEVICE_ID_MAX_LENGTH = 255
NAME_MAX_LENGTH = 100


def default_provider_for(platform: str) -> str:
    """Provider assumed for a token registered without one."""
    return PLATFORM_PROVIDERS[platform][0]


def resolve_push_token(device: Device, now: Optional[datetime] = None) -> Optional[Tuple[str, str]]:
    """Pick the (provider, token) a device should be reached through.

    Walks the platform's providers in preference order and returns the first
    active, unexpired token, or None when the device has nothing usable.
    """
    for provider in PLATFORM_PROVIDERS.get(device.platform, ()):
        token = device.get_active_push_token(provider, now)
        if token is not None:
            return provider, token.token
    return None


def merge_preferences(current: Optional[dict], patch: dict) -> dict:
    """Merge a preference patch without dropping unrelated keys."""
    merged = copy.deepcopy(current) if current else default_preferences()
    for key, value in patch.items():
        if key in NESTED_PREFERENCES and isinstance(value, dict):
            merged[key] = {**(merged.get(key) or {}), **value}
        else:
            merged[key] = value
    return merged


def validate_preferences(patch: dict) -> None:
    """Reject unknown sections, unknown keys and malformed values."""
    if not isinstance(patch, dict):
        raise RegistrationError("Preferences must be an object")

    allowed_sections = {"enabled", *NESTED_PREFERENCES}
    unknown = set(patch) - allowed_sections
    if unknown:
        raise RegistrationError(f"Unknown preference keys: {', '.join(sorted(unknown))}")

    if "enabled" in patch and not isinstance(patch["enabled"], bool):
        raise RegistrationError("preferences.enabled must be a boolean")

    for section, known in (("categories", CATEGORIES), ("priority", PRIORITIES)):
        if section not in patch:
            continue
        values = patch[section]
        if not isinstance(values, dict):
            raise RegistrationError(f"preferences.{section} must be an object")
        for key, flag in values.items():
            if key not in known:
                raise RegistrationError(f"Unknown {section} key: {key}")
            if not isinstance(flag, bool):
                raise RegistrationError(f"preferences.{section}.{key} must be a boolean")

    quiet_hours = patch.get("quiet_hours")
    if quiet_hours is not None:
        if not isinstance(quiet_hours, dict):
            raise RegistrationError("preferences.quiet_hours must be an object")
        unknown = set(quiet_hours) - {"enabled", "start_time", "end_time"}
        if unknown:
            raise RegistrationError(f"Unknown quiet_hours keys: {', '.join(sorted(unknown))}")
        if "enabled" in quiet_hours and not isinstance(quiet_hours["enabled"], bool):
            raise RegistrationError("quiet_hours.enabled must be a boolean")
        for key in ("start_time", "end_time"):
            if key in quiet_hours and not is_valid_clock(quiet_hours[key]):
                raise RegistrationError(f"quiet_hours.{key} must be HH:MM, got {quiet_hours[key]!r}")


def _validate_registration(
    user_id: str,
    device_id: str,
    platform: str,
    metadata: Optional[dict],
    capabilities: Optional[dict],
    location: Optional[dict],
    push_token: Optional[str],
    provider: Optional[str],
) -> None:
    if not user_id or not isinstance(user_id, str):
        raise RegistrationError("user_id is required")
    if not device_id or not isinstance(device_id, str) or not device_id.strip():
        raise RegistrationError("device_id is required")
    if len(device_id) > DEVICE_ID_MAX_LENGTH:
        raise RegistrationError(f"device_id longer than {DEVICE_ID_MAX_LENGTH} characters")
    if platform not in PLATFORMS:
        raise RegistrationError(f"Unsupported platform: {platform!r} (expected one of {', '.join(PLATFORMS)})")

    if metadata is not None:
        if not isinstance(metadata, dict):
            raise RegistrationError("metadata must be an object")
        name = metadata.get("name")
        if name is not None and len(str(name)) > NAME_MAX_LENGTH:
            raise RegistrationError(f"name longer than {NAME_MAX_LENGTH} characters")

    if capabilities is not None:
        if not isinstance(capabilities, dict):
            raise RegistrationError("capabilities must be an object")
        for key, flag in capabilities.items():
            if key not in DEFAULT_CAPABILITIES:
                raise RegistrationError(f"Unknown capability: {key}")
            if not isinstance(flag, bool):
                raise RegistrationError(f"capabilities.{key} must be a boolean")

    if location is not None and not isinstance(location, dict):
        raise RegistrationError("location must be an object")

    if push_token is not None and not push_token.strip():
        raise RegistrationError("push_token must not be empty")
    if provider is not None and provider not in PROVIDERS:
        raise RegistrationError(f"Unsupported provider: {provider!r} (expected one of {', '.join(PROVIDERS)})")


class DeviceRegistry:
    """Owns device records and their push tokens.

    Registrations and token rotations for the same device_id are serialized:
    within a process by a per-device asyncio.Lock, across processes by a row
    lock on PostgreSQL and the unique device_id constraint everywhere.
    """

    def __init__(self):
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def _lock_for(self, device_id: str) -> asyncio.Lock:
        lock = self._locks.get(device_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[device_id] = lock
        return lock

    async def _load_for_update(self, session: AsyncSession, device_id: str) -> Optional[Device]:
        result = await session.execute(
            select(Device)
            .where(Device.device_id == device_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get(self, session: AsyncSession, device_id: str) -> Device:
        """Get a device by its device_id."""
        result = await session.execute(select(Device).where(Device.device_id == device_id))
        device = result.scalar_one_or_none()
        if device is None:
            raise DeviceNotFoundError(device_id)
        return device

    async def get_many(self, session: AsyncSession, device_ids: List[str], active_only: bool = True) -> List[Device]:
        """Get devices by device_id, keeping the caller's order."""
        if not device_ids:
            return []
        query = select(Device).where(Device.device_id.in_(device_ids))
        if active_only:
            query = query.where(Device.is_active.is_(True))
        result = await session.execute(query)
        by_id = {device.device_id: device for device in result.scalars().all()}
        return [by_id[device_id] for device_id in dict.fromkeys(device_ids) if device_id in by_id]

    async def list_for_user(self, session: AsyncSession, user_id: str, active_only: bool = True) -> List[Device]:
        """Get a user's devices, most recently active first."""
        query = select(Device).where(Device.user_id == user_id)
        if active_only:
            query = query.where(Device.is_active.is_(True))
        result = await session.execute(query.order_by(Device.last_activity.desc(), Device.id))
        return list(result.scalars().all())

    async def find_by_token(self, session: AsyncSession, token: str) -> Optional[Device]:
        """Find the active device holding an active push token."""
        result = await session.execute(
            select(Device)
            .join(PushToken, PushToken.device_pk == Device.id)
            .where(
                PushToken.token == token,
                PushToken.is_active.is_(True),
                Device.is_active.is_(True),
            )
        )
        return result.scalars().first()

    async def register(
        self,
        session: AsyncSession,
        user_id: str,
        device_id: str,
        platform: str,
        metadata: Optional[dict] = None,
        preferences: Optional[dict] = None,
        capabilities: Optional[dict] = None,
        location: Optional[dict] = None,
        push_token: Optional[str] = None,
        provider: Optional[str] = None,
        expires_at: Optional[datetime] = None,
    ) -> Tuple[Device, bool]:
        """Register a new device or update an existing one.

        Keyed by device_id: a second registration never creates a second
        record. Supplied metadata overwrites, omitted metadata is kept, and
        preferences/capabilities/location are merged into what is stored.

        Returns:
            Tuple of (device, created)
        """
        _validate_registration(user_id, device_id, platform, metadata, capabilities, location, push_token, provider)
        if preferences is not None:
            validate_preferences(preferences)
        if push_token is not None and provider is None:
            provider = default_provider_for(platform)

        async with self._lock_for(device_id):
            try:
                device, created = await self._upsert(
                    session, user_id, device_id, platform, metadata, preferences, capabilities, location
                )
                if push_token is not None:
                    self._rotate(device, provider, push_token, expires_at)
                await retry_on_lock(session.commit)
            except IntegrityError:
                # Another process inserted the same device_id first; merge onto its row
                await session.rollback()
                logger.info(f"Concurrent registration for {device_id}, retrying as update")
                device, created = await self._upsert(
                    session, user_id, device_id, platform, metadata, preferences, capabilities, location
                )
                if push_token is not None:
                    self._rotate(device, provider, push_token, expires_at)
                await retry_on_lock(session.commit)

        if created:
            logger.info(f"New device registered: {device_id} ({platform}) for user {user_id}")
        else:
            logger.info(f"Device updated: {device_id} ({platform})")
        return device, created

    async def _upsert(
        self,
        session: AsyncSession,
        user_id: str,
        device_id: str,
        platform: str,
        metadata: Optional[dict],
        preferences: Optional[dict],
        capabilities: Optional[dict],
        location: Optional[dict],
    ) -> Tuple[Device, bool]:
        now = utcnow()
        metadata = metadata or {}
        columns = {key: metadata[key] for key in METADATA_FIELDS if metadata.get(key) is not None}
        extra = {key: value for key, value in metadata.items() if key not in METADATA_FIELDS}

        device = await self._load_for_update(session, device_id)
        if device is None:
            device = Device(
                device_id=device_id,
                user_id=user_id,
                platform=platform,
                preferences=merge_preferences(default_preferences(), preferences or {}),
                capabilities={**default_capabilities(), **(capabilities or {})},
                location={**default_location(), **(location or {})},
                extra=extra,
                push_tokens=[],
                is_active=True,
                last_activity=now,
                **columns,
            )
            session.add(device)
            await session.flush()
            return device, True

        # Update existing device in place
        device.user_id = user_id
        device.platform = platform
        for key, value in columns.items():
            setattr(device, key, value)
        if extra:
            device.extra = {**(device.extra or {}), **extra}
        if preferences:
            device.preferences = merge_preferences(device.preferences, preferences)
        if capabilities:
            device.capabilities = {**(device.capabilities or default_capabilities()), **capabilities}
        if location:
            device.location = {**(device.location or default_location()), **location}
        device.is_active = True
        device.last_activity = now
        await session.flush()
        return device, False

    def _rotate(self, device: Device, provider: str, token: str, expires_at: Optional[datetime]) -> PushToken:
        """Make ``token`` the single active token for ``provider`` on ``device``."""
        now = utcnow()
        expires_at = as_naive_utc(expires_at) if expires_at else None

        current = device.get_active_push_token(provider, now)
        if current is not None and current.token == token:
            # Same token re-registered: refresh it rather than stacking duplicates
            current.last_used = now
            if expires_at is not None:
                current.expires_at = expires_at
            return current

        for existing in device.push_tokens:
            if existing.provider == provider and existing.is_active:
                existing.is_active = False

        new_token = PushToken(
            token=token,
            provider=provider,
            is_active=True,
            created_at=now,
            last_used=now,
            expires_at=expires_at,
        )
        device.push_tokens.append(new_token)
        return new_token

    async def rotate_token(
        self,
        session: AsyncSession,
        device_id: str,
        provider: str,
        token: str,
        expires_at: Optional[datetime] = None,
    ) -> Device:
        """Replace the device's active token for one provider.

        The previous active token for that provider is deactivated; tokens
        for other providers are left alone.
        """
        if provider not in PROVIDERS:
            raise RegistrationError(f"Unsupported provider: {provider!r} (expected one of {', '.join(PROVIDERS)})")
        if not token or not token.strip():
            raise RegistrationError("push_token must not be empty")

        async with self._lock_for(device_id):
            device = await self._load_for_update(session, device_id)
            if device is None:
                raise DeviceNotFoundError(device_id)
            self._rotate(device, provider, token, expires_at)
            device.last_activity = utcnow()
            await retry_on_lock(session.commit)

        logger.info(f"Push token rotated for {device_id} ({provider}): {token[:16]}...")
        return device

    async def update_preferences(self, session: AsyncSession, device_id: str, patch: dict) -> Device:
        """Merge a preference patch into a device's stored preferences."""
        validate_preferences(patch)
        device = await self.get(session, device_id)
        device.preferences = merge_preferences(device.preferences, patch)
        await retry_on_lock(session.commit)
        logger.info(f"Preferences updated for {device_id}")
        return device

    async def deactivate(self, session: AsyncSession, device_id: str) -> Device:
        """Deactivate a device and all of its tokens.

        Only a new registration for the same device_id reactivates it.
        """
        async with self._lock_for(device_id):
            device = await self._load_for_update(session, device_id)
            if device is None:
                raise DeviceNotFoundError(device_id)
            device.is_active = False
            for token in device.push_tokens:
                token.is_active = False
            await retry_on_lock(session.commit)

        logger.info(f"Device deactivated: {device_id}")
        return device

    async def verify(self, session: AsyncSession, device_id: str) -> Device:
        device = await self.get(session, device_id)
        device.is_verified = True
        await retry_on_lock(session.commit)
        return device

    async def touch(self, session: AsyncSession, device_id: str) -> Device:
        """Record activity for a device (keeps it out of the inactivity sweep)."""
        device = await self.get(session, device_id)
        device.last_activity = utcnow()
        await retry_on_lock(session.commit)
        return device

    async def record_interaction(
        self,
        session: AsyncSession,
        device_id: str,
        kind: str,
        commit: bool = True,
    ) -> None:
        """Bump one of the device's interaction counters in the database."""
        column_name = INTERACTION_COUNTERS.get(kind)
        if column_name is None:
            raise ValueError(f"Unknown interaction kind: {kind}")

        column = getattr(Device, column_name)
        values = {column_name: column + 1}
        if kind == "received":
            values["last_notification_at"] = utcnow()

        await session.execute(
            update(Device)
            .where(Device.device_id == device_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if commit:
            await retry_on_lock(session.commit)

    async def cleanup_inactive(
        self,
        session: AsyncSession,
        max_age_days: int = 90,
        now: Optional[datetime] = None,
    ) -> int:
        """Deactivate devices with no activity in the last ``max_age_days`` days.

        Returns:
            Number of devices deactivated
        """
        cutoff = as_naive_utc(now or utcnow()) - timedelta(days=max_age_days)
        result = await session.execute(
            update(Device)
            .where(Device.last_activity < cutoff, Device.is_active.is_(True))
            .values(is_active=False)
            .execution_options(synchronize_session=False)
        )
        await retry_on_lock(session.commit)

        count = result.rowcount or 0
        if count:
            logger.info(f"Deactivated {count} devices inactive for more than {max_age_days} days")
        return count

    async def list_eligible(
        self,
        session: AsyncSession,
        user_id: str,
        category: str,
        priority: str,
        now: Optional[datetime] = None,
        respect_quiet_hours: bool = True,
    ) -> List[Device]:
        """Get the user's devices that may receive a (category, priority) notification."""
        now = now or utcnow()
        eligible = []
        for device in await self.list_for_user(session, user_id, active_only=True):
            allowed, reason = check_eligibility(device, category, priority, now, respect_quiet_hours)
            if allowed:
                eligible.append(device)
            else:
                logger.debug(f"Device {device.device_id} excluded: {reason}")
        return eligible

    async def count(self, session: AsyncSession) -> dict:
        """Get device registration counts (for admin dashboard)."""
        total_result = await session.execute(select(func.count(Device.id)))
        total = total_result.scalar() or 0

        active_result = await session.execute(
            select(func.count(Device.id)).where(Device.is_active.is_(True))
        )
        active = active_result.scalar() or 0

        platform_result = await session.execute(
            select(Device.platform, func.count(Device.id))
            .where(Device.is_active.is_(True))
            .group_by(Device.platform)
        )
        by_platform = {platform: count for platform, count in platform_result.all()}

        return {
            "total": total,
            "active": active,
            "inactive": total - active,
            "by_platform": by_platform,
        }


# Global instance
device_registry = DeviceRegistry()
