"""Database models."""
from .settings import Setting
from .device import Device, PushToken
from .notification import Notification, NotificationTarget, NotificationError

__all__ = ["Setting", "Device", "PushToken", "Notification", "NotificationTarget", "NotificationError"]
