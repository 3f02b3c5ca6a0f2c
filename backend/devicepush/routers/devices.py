"""Device registration API endpoints for push notifications."""
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import settings
from ..database import get_db
from ..exceptions import PushError, DeviceNotFoundError
from ..models import Device
from ..schemas.device import (
    DeviceRegisterRequest,
    DeviceRegisterResponse,
    DeviceResponse,
    DeviceCountResponse,
    PreferencesUpdate,
    TokenUpdateRequest,
    CleanupResponse,
)
from ..services.registry import device_registry
from .common import get_current_user, http_error

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/devices", tags=["devices"])


async def _get_owned_device(db: AsyncSession, device_id: str, user_id: str) -> Device:
    """Get a device that belongs to the caller; other users' devices are not found."""
    device = await device_registry.get(db, device_id)
    if device.user_id != user_id:
        raise DeviceNotFoundError(device_id)
    return device


@router.post("/register", response_model=DeviceRegisterResponse, status_code=201)
async def register_device(
    request: DeviceRegisterRequest,
    user_id: str = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Register a device for push notifications.

    If the device_id already exists, update it. Otherwise create a new record.
    Apps should call this on every launch to keep the token current.
    """
    try:
        device, created = await device_registry.register(
            db,
            user_id=user_id,
            device_id=request.device_id,
            platform=request.platform,
            metadata=request.metadata.model_dump(exclude_none=True) if request.metadata else None,
            preferences=request.preferences.model_dump(exclude_none=True) if request.preferences else None,
            capabilities=request.capabilities,
            location=request.location.model_dump(exclude_none=True) if request.location else None,
            push_token=request.push_token,
            provider=request.provider,
            expires_at=request.token_expires_at,
        )
    except PushError as e:
        raise http_error(e)

    return DeviceRegisterResponse(
        success=True,
        created=created,
        message="Device registered successfully" if created else "Device updated successfully",
        device=DeviceResponse.model_validate(device),
    )


@router.get("", response_model=List[DeviceResponse])
async def list_devices(
    include_inactive: bool = False,
    user_id: str = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """List the caller's devices."""
    return await device_registry.list_for_user(db, user_id, active_only=not include_inactive)


@router.get("/count", response_model=DeviceCountResponse)
async def get_device_count(db: AsyncSession = Depends(get_db)):
    """Get count of registered devices (for admin dashboard)."""
    return await device_registry.count(db)


@router.post("/cleanup", response_model=CleanupResponse)
async def cleanup_inactive_devices(
    max_age_days: Optional[int] = Query(None, ge=1, le=3650),
    db: AsyncSession = Depends(get_db),
):
    """Deactivate devices with no activity in the given window."""
    count = await device_registry.cleanup_inactive(db, max_age_days or settings.inactive_device_days)
    return CleanupResponse(success=True, deactivated=count)


@router.put("/{device_id}/preferences", response_model=DeviceResponse)
async def update_preferences(
    device_id: str,
    update: PreferencesUpdate,
    user_id: str = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Merge a partial preference update into the device's preferences."""
    try:
        await _get_owned_device(db, device_id, user_id)
        return await device_registry.update_preferences(db, device_id, update.model_dump(exclude_none=True))
    except PushError as e:
        raise http_error(e)


@router.put("/{device_id}/token", response_model=DeviceResponse)
async def update_push_token(
    device_id: str,
    request: TokenUpdateRequest,
    user_id: str = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Rotate the device's push token for one provider."""
    try:
        await _get_owned_device(db, device_id, user_id)
        return await device_registry.rotate_token(
            db, device_id, request.provider, request.push_token, request.expires_at
        )
    except PushError as e:
        raise http_error(e)


@router.post("/{device_id}/verify", response_model=DeviceResponse)
async def verify_device(
    device_id: str,
    user_id: str = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Mark a device as verified."""
    try:
        await _get_owned_device(db, device_id, user_id)
        return await device_registry.verify(db, device_id)
    except PushError as e:
        raise http_error(e)


@router.delete("/{device_id}")
async def deactivate_device(
    device_id: str,
    user_id: str = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Deactivate a device.

    This doesn't delete the record but marks it and its tokens inactive.
    """
    try:
        await _get_owned_device(db, device_id, user_id)
        await device_registry.deactivate(db, device_id)
    except PushError as e:
        raise http_error(e)

    return {"success": True, "message": "Device deactivated successfully"}
