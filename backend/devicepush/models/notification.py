"""Notification record - one content payload delivered to N target devices."""
from sqlalchemy import Column, Integer, String, DateTime, Boolean, ForeignKey, JSON
from sqlalchemy.orm import relationship

from ..database import Base
from ..utils.db_utils import utcnow


# Overall record status
STATUS_PENDING = "pending"
STATUS_SENT = "sent"
STATUS_DELIVERED = "delivered"
STATUS_FAILED = "failed"
STATUS_CANCELLED = "cancelled"

NOTIFICATION_STATUSES = (STATUS_PENDING, STATUS_SENT, STATUS_DELIVERED, STATUS_FAILED, STATUS_CANCELLED)

# Per-target sub-status
TARGET_STATUSES = (STATUS_PENDING, STATUS_SENT, STATUS_DELIVERED, STATUS_FAILED)
TERMINAL_TARGET_STATUSES = (STATUS_DELIVERED, STATUS_FAILED)

# Overall states in which read/click/dismiss may be recorded
INTERACTIVE_STATUSES = (STATUS_DELIVERED, STATUS_FAILED)

MEDIA_TYPES = ("image", "video", "audio")
ACTION_TYPES = ("open_app", "open_url", "dismiss", "custom")

TITLE_MAX_LENGTH = 100
MESSAGE_MAX_LENGTH = 500

DEFAULT_DELIVERY_SETTINGS = {
    "badge": 1,
    "sound": "default",
    "vibrate": True,
    "lights": True,
    "time_to_live": 86400,  # 24 hours in seconds
    "collapse_key": None,
    "respect_quiet_hours": True,
}


class Notification(Base):
    """A push notification and its delivery state."""

    __tablename__ = "notifications"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(255), nullable=False, index=True)

    # Content
    title = Column(String(TITLE_MAX_LENGTH), nullable=False)
    message = Column(String(MESSAGE_MAX_LENGTH), nullable=False)
    category = Column(String(32), nullable=False, index=True)
    priority = Column(String(16), nullable=False, default="normal", index=True)
    data = Column(JSON, nullable=False, default=dict)
    actions = Column(JSON, nullable=False, default=list)  # [{id, title, icon, action, url}]
    media = Column(JSON, nullable=True)  # {type, url, thumbnail}
    settings = Column(JSON, nullable=False, default=lambda: dict(DEFAULT_DELIVERY_SETTINGS))

    # Delivery
    status = Column(String(16), nullable=False, default=STATUS_PENDING, index=True)
    scheduled_for = Column(DateTime, nullable=True, index=True)
    sent_at = Column(DateTime, nullable=True)
    delivered_at = Column(DateTime, nullable=True)
    read_at = Column(DateTime, nullable=True)

    # Tracking
    is_read = Column(Boolean, default=False)
    is_clicked = Column(Boolean, default=False)
    is_dismissed = Column(Boolean, default=False)

    # Analytics counters
    impressions = Column(Integer, default=0)
    clicks = Column(Integer, default=0)
    dismissals = Column(Integer, default=0)
    conversions = Column(Integer, default=0)

    created_by = Column(String(255), nullable=True)
    created_at = Column(DateTime, default=utcnow, index=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    targets = relationship(
        "NotificationTarget",
        back_populates="notification",
        cascade="all, delete-orphan",
        order_by="NotificationTarget.id",
        lazy="selectin",
    )
    errors = relationship(
        "NotificationError",
        back_populates="notification",
        cascade="all, delete-orphan",
        order_by="NotificationError.id",
        lazy="selectin",
    )


class NotificationTarget(Base):
    """Delivery sub-record for one device of a notification."""

    __tablename__ = "notification_targets"

    id = Column(Integer, primary_key=True, autoincrement=True)
    notification_id = Column(Integer, ForeignKey("notifications.id", ondelete="CASCADE"), nullable=False, index=True)
    device_id = Column(String(255), nullable=False, index=True)
    platform = Column(String(16), nullable=False)
    provider = Column(String(16), nullable=False)
    push_token = Column(String, nullable=False)
    status = Column(String(16), nullable=False, default=STATUS_PENDING)
    sent_at = Column(DateTime, nullable=True)
    delivered_at = Column(DateTime, nullable=True)
    error = Column(String, nullable=True)
    provider_message_id = Column(String, nullable=True)

    notification = relationship("Notification", back_populates="targets")


class NotificationError(Base):
    """Log of a provider failure for one device."""

    __tablename__ = "notification_errors"

    id = Column(Integer, primary_key=True, autoincrement=True)
    notification_id = Column(Integer, ForeignKey("notifications.id", ondelete="CASCADE"), nullable=False, index=True)
    device_id = Column(String(255), nullable=False)
    error = Column(String, nullable=False)
    code = Column(String, nullable=True)
    timestamp = Column(DateTime, default=utcnow)
    retry_count = Column(Integer, default=0)

    notification = relationship("Notification", back_populates="errors")
