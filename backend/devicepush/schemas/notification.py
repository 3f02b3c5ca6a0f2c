"""Notification schemas for API."""
from datetime import datetime
from typing import Optional, List, Dict, Any
from pydantic import BaseModel, Field

CATEGORY_PATTERN = "^(appointment|medication|health_alert|test_result|general|emergency|reminder|marketing|system)$"
PRIORITY_PATTERN = "^(low|normal|high|critical)$"


class NotificationAction(BaseModel):
    """A button shown with the notification."""
    id: str = Field(..., min_length=1)
    title: str = Field(..., min_length=1)
    icon: Optional[str] = None
    action: Optional[str] = Field(None, pattern="^(open_app|open_url|dismiss|custom)$")
    url: Optional[str] = None


class NotificationMedia(BaseModel):
    type: str = Field(..., pattern="^(image|video|audio)$")
    url: str = Field(..., min_length=1)
    thumbnail: Optional[str] = None


class DeliverySettings(BaseModel):
    """Per-notification delivery overrides."""
    badge: Optional[int] = Field(None, ge=0)
    sound: Optional[str] = None
    vibrate: Optional[bool] = None
    lights: Optional[bool] = None
    time_to_live: Optional[int] = Field(None, ge=0)  # seconds
    collapse_key: Optional[str] = None
    respect_quiet_hours: Optional[bool] = None


class NotificationContentBase(BaseModel):
    title: str = Field(..., min_length=1, max_length=100)
    message: str = Field(..., min_length=1, max_length=500)
    category: str = Field(default="general", pattern=CATEGORY_PATTERN)
    priority: str = Field(default="normal", pattern=PRIORITY_PATTERN)
    data: Dict[str, Any] = {}
    actions: List[NotificationAction] = []
    media: Optional[NotificationMedia] = None
    settings: Optional[DeliverySettings] = None


class SendNotificationRequest(NotificationContentBase):
    """Send to users or to explicit devices (exactly one of the two)."""
    user_ids: Optional[List[str]] = None
    device_ids: Optional[List[str]] = None
    scheduled_for: Optional[datetime] = None


class ScheduleNotificationRequest(NotificationContentBase):
    """Store a notification for one user until ``scheduled_for``."""
    user_id: str = Field(..., min_length=1)
    scheduled_for: datetime


class BulkNotificationRequest(BaseModel):
    notifications: List[SendNotificationRequest] = Field(..., min_length=1)


class SendTestRequest(BaseModel):
    device_id: Optional[str] = None


class InteractionRequest(BaseModel):
    """Optional body for read/click: which device the user acted on."""
    device_id: Optional[str] = None


class DeviceOutcomeResponse(BaseModel):
    device_id: str
    platform: str
    provider: Optional[str] = None
    success: bool
    status: str
    provider_message_id: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[str] = None


class DispatchResponse(BaseModel):
    """Per-device breakdown of one send."""
    user_id: Optional[str] = None
    success: bool
    status: str
    notification_id: Optional[int] = None
    message: str = ""
    device_count: int = 0
    delivered: int = 0
    failed: int = 0
    devices: List[DeviceOutcomeResponse] = []


class SendNotificationResponse(BaseModel):
    success: bool
    message: str
    results: List[DispatchResponse]


class BulkItemResponse(BaseModel):
    index: int
    success: bool
    error: Optional[str] = None
    results: List[DispatchResponse] = []


class BulkSummary(BaseModel):
    total: int
    successful: int
    failed: int


class BulkNotificationResponse(BaseModel):
    success: bool
    message: str
    summary: BulkSummary
    results: List[BulkItemResponse]


class NotificationTargetResponse(BaseModel):
    device_id: str
    platform: str
    provider: str
    status: str
    sent_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    error: Optional[str] = None
    provider_message_id: Optional[str] = None

    class Config:
        from_attributes = True


class NotificationErrorResponse(BaseModel):
    device_id: str
    error: str
    code: Optional[str] = None
    timestamp: Optional[datetime] = None
    retry_count: int = 0

    class Config:
        from_attributes = True


class NotificationResponse(BaseModel):
    """Schema for notification in API responses."""
    id: int
    user_id: str
    title: str
    message: str
    category: str
    priority: str
    data: dict
    actions: List[dict] = []
    media: Optional[dict] = None
    settings: dict
    status: str
    scheduled_for: Optional[datetime] = None
    sent_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    read_at: Optional[datetime] = None
    is_read: bool = False
    is_clicked: bool = False
    is_dismissed: bool = False
    impressions: int = 0
    clicks: int = 0
    dismissals: int = 0
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class NotificationDetailResponse(NotificationResponse):
    """Notification with its per-device targets and error log."""
    targets: List[NotificationTargetResponse] = []
    errors: List[NotificationErrorResponse] = []


class NotificationSettingsResponse(BaseModel):
    """Values a client needs to build notification requests."""
    categories: List[str]
    priorities: List[str]
    platforms: List[str]
    providers: Dict[str, bool]
    default_settings: dict
    default_preferences: dict
