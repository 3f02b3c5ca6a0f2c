"""Device schemas for API."""
from datetime import datetime
from typing import Optional, List, Dict
from pydantic import BaseModel, Field


class DeviceMetadata(BaseModel):
    """Descriptive device fields; unknown keys are kept as extra metadata."""
    name: Optional[str] = Field(None, max_length=100)
    model: Optional[str] = None
    manufacturer: Optional[str] = None
    os_version: Optional[str] = None
    app_version: Optional[str] = None

    class Config:
        extra = "allow"


class QuietHours(BaseModel):
    """Quiet hours window in the device's local time."""
    enabled: Optional[bool] = None
    start_time: Optional[str] = Field(None, pattern=r"^([01]\d|2[0-3]):[0-5]\d$")
    end_time: Optional[str] = Field(None, pattern=r"^([01]\d|2[0-3]):[0-5]\d$")


class PreferencesUpdate(BaseModel):
    """Partial preference update; nested maps are merged key by key."""
    enabled: Optional[bool] = None
    categories: Optional[Dict[str, bool]] = None
    priority: Optional[Dict[str, bool]] = None
    quiet_hours: Optional[QuietHours] = None


class DeviceLocation(BaseModel):
    country: Optional[str] = None
    region: Optional[str] = None
    city: Optional[str] = None
    timezone: Optional[str] = None


class DeviceRegisterRequest(BaseModel):
    """Request to register a device for push notifications."""
    device_id: str = Field(..., min_length=1, max_length=255)
    platform: str = Field(..., pattern="^(ios|android|web)$")
    push_token: Optional[str] = Field(None, min_length=1)
    provider: Optional[str] = Field(None, pattern="^(fcm|apns|web_push)$")
    token_expires_at: Optional[datetime] = None
    metadata: Optional[DeviceMetadata] = None
    preferences: Optional[PreferencesUpdate] = None
    capabilities: Optional[Dict[str, bool]] = None
    location: Optional[DeviceLocation] = None


class TokenUpdateRequest(BaseModel):
    """Request to rotate a device's push token for one provider."""
    push_token: str = Field(..., min_length=1)
    provider: str = Field(..., pattern="^(fcm|apns|web_push)$")
    expires_at: Optional[datetime] = None


class PushTokenResponse(BaseModel):
    token: str
    provider: str
    is_active: bool
    created_at: Optional[datetime] = None
    last_used: Optional[datetime] = None
    expires_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class DeviceResponse(BaseModel):
    """Schema for device in API responses."""
    device_id: str
    user_id: str
    platform: str
    name: Optional[str] = None
    model: Optional[str] = None
    manufacturer: Optional[str] = None
    os_version: Optional[str] = None
    app_version: Optional[str] = None
    preferences: dict
    capabilities: dict
    location: dict
    is_active: bool
    is_verified: bool
    last_activity: Optional[datetime] = None
    notifications_received: int = 0
    notifications_read: int = 0
    notifications_clicked: int = 0
    last_notification_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    push_tokens: List[PushTokenResponse] = []

    class Config:
        from_attributes = True


class DeviceRegisterResponse(BaseModel):
    """Response after registering a device."""
    success: bool
    created: bool
    message: str
    device: DeviceResponse


class DeviceCountResponse(BaseModel):
    total: int
    active: int
    inactive: int
    by_platform: Dict[str, int]


class CleanupResponse(BaseModel):
    success: bool
    deactivated: int
