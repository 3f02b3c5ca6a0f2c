"""Settings model - key-value store for push provider configuration."""
from sqlalchemy import Column, String, DateTime

from ..database import Base
from ..utils.db_utils import utcnow


class Setting(Base):
    """Global settings stored as key-value pairs."""

    __tablename__ = "settings"

    key = Column(String, primary_key=True)
    value = Column(String, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


# Default settings
DEFAULT_SETTINGS = {
    # Firebase Cloud Messaging (HTTP v1)
    "fcm_enabled": "0",  # 0 or 1
    "fcm_project_id": "",
    "fcm_access_token": "",  # OAuth2 bearer token minted outside this service

    # Apple Push Notification service
    "apns_enabled": "0",  # 0 or 1
    "apns_key_path": "",  # Path to .p8 key file
    "apns_key_id": "",  # Key ID from Apple
    "apns_team_id": "",  # Team ID from Apple
    "apns_bundle_id": "",  # App bundle identifier
    "apns_use_sandbox": "1",  # 0 for production, 1 for sandbox/development

    # Web Push (VAPID)
    "web_push_enabled": "0",  # 0 or 1
    "vapid_private_key": "",
    "vapid_subject": "mailto:support@example.com",
}

# Keys never echoed back by the settings API
SECRET_SETTINGS = ("fcm_access_token", "vapid_private_key")
