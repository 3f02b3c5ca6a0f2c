"""Settings API endpoints for push provider credentials."""
import logging

from fastapi import APIRouter, Depends
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import settings
from ..database import get_db
from ..models import Setting
from ..models.settings import SECRET_SETTINGS
from ..schemas.settings import SettingsResponse, SettingsUpdate
from ..services.dispatcher import push_dispatcher
from ..services.providers import ProviderSettings, get_all_settings
from ..utils.db_utils import retry_on_lock

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/settings", tags=["settings"])


def _bool_from_str(val: str) -> bool:
    """Convert string '0'/'1' to bool."""
    return val == "1" or val.lower() == "true"


def _build_settings_response(settings_dict: dict) -> SettingsResponse:
    """Build a SettingsResponse from a settings dictionary."""
    return SettingsResponse(
        # FCM
        fcm_enabled=_bool_from_str(settings_dict.get("fcm_enabled", "0")),
        fcm_project_id=settings_dict.get("fcm_project_id") or None,
        fcm_access_token_set=bool(settings_dict.get("fcm_access_token")),

        # APNs
        apns_enabled=_bool_from_str(settings_dict.get("apns_enabled", "0")),
        apns_key_path=settings_dict.get("apns_key_path") or None,
        apns_key_id=settings_dict.get("apns_key_id") or None,
        apns_team_id=settings_dict.get("apns_team_id") or None,
        apns_bundle_id=settings_dict.get("apns_bundle_id") or None,
        apns_use_sandbox=_bool_from_str(settings_dict.get("apns_use_sandbox", "1")),

        # Web Push
        web_push_enabled=_bool_from_str(settings_dict.get("web_push_enabled", "0")),
        vapid_subject=settings_dict.get("vapid_subject") or None,
        vapid_private_key_set=bool(settings_dict.get("vapid_private_key")),
    )


@router.get("", response_model=SettingsResponse)
async def get_settings(db: AsyncSession = Depends(get_db)):
    """Get provider settings. Secrets are only reported as set or not."""
    settings_dict = await get_all_settings(db)
    return _build_settings_response(settings_dict)


@router.put("", response_model=SettingsResponse)
async def update_settings(update: SettingsUpdate, db: AsyncSession = Depends(get_db)):
    """Update provider settings and rebuild the provider adapters."""
    updates = update.model_dump(exclude_unset=True)

    for key, value in updates.items():
        if value is not None:
            # Convert bools to "0"/"1" for storage
            if isinstance(value, bool):
                store_value = "1" if value else "0"
            else:
                store_value = str(value)

            # Find or create setting
            result = await db.execute(select(Setting).where(Setting.key == key))
            setting = result.scalar_one_or_none()

            if setting:
                setting.value = store_value
            else:
                setting = Setting(key=key, value=store_value)
                db.add(setting)

    await retry_on_lock(db.commit)

    settings_dict = await get_all_settings(db)
    await push_dispatcher.configure(
        ProviderSettings.from_settings(settings_dict, settings.provider_timeout_seconds)
    )
    changed = sorted(key for key in updates if key not in SECRET_SETTINGS)
    logger.info(f"Provider settings updated: {', '.join(changed) or 'secrets only'}")
    return _build_settings_response(settings_dict)
