"""Settings schemas for API."""
from typing import Optional
from pydantic import BaseModel


class SettingsResponse(BaseModel):
    """Schema for settings response. Secrets are reported as set/unset only."""
    # Firebase Cloud Messaging
    fcm_enabled: bool = False
    fcm_project_id: Optional[str] = None
    fcm_access_token_set: bool = False

    # Apple Push Notification service
    apns_enabled: bool = False
    apns_key_path: Optional[str] = None
    apns_key_id: Optional[str] = None
    apns_team_id: Optional[str] = None
    apns_bundle_id: Optional[str] = None
    apns_use_sandbox: bool = True

    # Web Push
    web_push_enabled: bool = False
    vapid_subject: Optional[str] = None
    vapid_private_key_set: bool = False


class SettingsUpdate(BaseModel):
    """Schema for updating settings."""
    # Firebase Cloud Messaging
    fcm_enabled: Optional[bool] = None
    fcm_project_id: Optional[str] = None
    fcm_access_token: Optional[str] = None

    # Apple Push Notification service
    apns_enabled: Optional[bool] = None
    apns_key_path: Optional[str] = None
    apns_key_id: Optional[str] = None
    apns_team_id: Optional[str] = None
    apns_bundle_id: Optional[str] = None
    apns_use_sandbox: Optional[bool] = None

    # Web Push
    web_push_enabled: Optional[bool] = None
    vapid_private_key: Optional[str] = None
    vapid_subject: Optional[str] = None
