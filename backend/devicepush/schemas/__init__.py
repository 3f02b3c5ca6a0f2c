"""Pydantic schemas for API request/response models."""
from .device import (
    DeviceRegisterRequest,
    DeviceRegisterResponse,
    DeviceResponse,
    PreferencesUpdate,
    TokenUpdateRequest,
)
from .notification import (
    SendNotificationRequest,
    ScheduleNotificationRequest,
    BulkNotificationRequest,
    DispatchResponse,
    NotificationResponse,
    NotificationDetailResponse,
)
from .settings import (
    SettingsResponse,
    SettingsUpdate,
)

__all__ = [
    "DeviceRegisterRequest",
    "DeviceRegisterResponse",
    "DeviceResponse",
    "PreferencesUpdate",
    "TokenUpdateRequest",
    "SendNotificationRequest",
    "ScheduleNotificationRequest",
    "BulkNotificationRequest",
    "DispatchResponse",
    "NotificationResponse",
    "NotificationDetailResponse",
    "SettingsResponse",
    "SettingsUpdate",
]
