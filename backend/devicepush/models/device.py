"""Device model - registered endpoints and their push tokens."""
import copy
from datetime import datetime
from typing import Optional

from sqlalchemy import Column, Integer, String, DateTime, Boolean, ForeignKey, JSON
from sqlalchemy.orm import relationship

from ..database import Base
from ..utils.db_utils import utcnow


PLATFORMS = ("ios", "android", "web")
PROVIDERS = ("fcm", "apns", "web_push")

CATEGORIES = (
    "appointment",
    "medication",
    "health_alert",
    "test_result",
    "general",
    "emergency",
    "reminder",
    "marketing",
    "system",
)
PRIORITIES = ("low", "normal", "high", "critical")

# Token providers tried for each platform, most preferred first
PLATFORM_PROVIDERS = {
    "ios": ("apns", "fcm"),
    "android": ("fcm",),
    "web": ("web_push",),
}

DEFAULT_PREFERENCES = {
    "enabled": True,
    "categories": {category: category != "marketing" for category in CATEGORIES},
    "priority": {priority: True for priority in PRIORITIES},
    "quiet_hours": {
        "enabled": False,
        "start_time": "22:00",  # 24h format
        "end_time": "08:00",
    },
}

DEFAULT_CAPABILITIES = {
    "push_notifications": True,
    "rich_media": True,
    "action_buttons": True,
    "badge": True,
    "sound": True,
    "vibration": True,
}

DEFAULT_LOCATION = {"timezone": "UTC"}


def default_preferences() -> dict:
    return copy.deepcopy(DEFAULT_PREFERENCES)


def default_capabilities() -> dict:
    return dict(DEFAULT_CAPABILITIES)


def default_location() -> dict:
    return dict(DEFAULT_LOCATION)


class Device(Base):
    """A registered device (one phone or browser) belonging to a user."""

    __tablename__ = "devices"

    id = Column(Integer, primary_key=True, autoincrement=True)
    device_id = Column(String(255), unique=True, nullable=False, index=True)
    user_id = Column(String(255), nullable=False, index=True)
    platform = Column(String(16), nullable=False, index=True)  # ios, android, web
    name = Column(String(100), nullable=True)
    model = Column(String, nullable=True)
    manufacturer = Column(String, nullable=True)
    os_version = Column(String, nullable=True)
    app_version = Column(String, nullable=True)

    # JSON documents; always reassigned, never mutated in place
    preferences = Column(JSON, nullable=False, default=default_preferences)
    capabilities = Column(JSON, nullable=False, default=default_capabilities)
    location = Column(JSON, nullable=False, default=default_location)
    extra = Column(JSON, nullable=False, default=dict)

    last_activity = Column(DateTime, default=utcnow, index=True)
    last_login = Column(DateTime, nullable=True)
    is_active = Column(Boolean, default=True, index=True)
    is_verified = Column(Boolean, default=False)

    # Interaction counters
    notifications_received = Column(Integer, default=0)
    notifications_read = Column(Integer, default=0)
    notifications_clicked = Column(Integer, default=0)
    last_notification_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    push_tokens = relationship(
        "PushToken",
        back_populates="device",
        cascade="all, delete-orphan",
        order_by="PushToken.id",
        lazy="selectin",
    )

    def get_active_push_token(self, provider: str, now: Optional[datetime] = None) -> Optional["PushToken"]:
        """Return the active, unexpired token for a provider, if any."""
        now = now or utcnow()
        for token in self.push_tokens:
            if token.provider != provider or not token.is_active:
                continue
            if token.expires_at is not None and token.expires_at <= now:
                continue
            return token
        return None

    @property
    def timezone(self) -> str:
        return (self.location or {}).get("timezone") or "UTC"


class PushToken(Base):
    """A push token issued to a device by one provider family."""

    __tablename__ = "push_tokens"

    id = Column(Integer, primary_key=True, autoincrement=True)
    device_pk = Column(Integer, ForeignKey("devices.id", ondelete="CASCADE"), nullable=False, index=True)
    token = Column(String, nullable=False, index=True)
    provider = Column(String(16), nullable=False)  # fcm, apns, web_push
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=utcnow)
    last_used = Column(DateTime, nullable=True)
    expires_at = Column(DateTime, nullable=True)

    device = relationship("Device", back_populates="push_tokens")
