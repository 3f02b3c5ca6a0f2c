"""Notification API endpoints: sending, scheduling, history and interactions."""
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from ..database import get_db
from ..exceptions import PushError
from ..models.device import CATEGORIES, PRIORITIES, PLATFORMS, default_preferences
from ..models.notification import DEFAULT_DELIVERY_SETTINGS
from ..schemas.notification import (
    NotificationContentBase,
    SendNotificationRequest,
    ScheduleNotificationRequest,
    BulkNotificationRequest,
    SendTestRequest,
    InteractionRequest,
    DispatchResponse,
    SendNotificationResponse,
    BulkItemResponse,
    BulkSummary,
    BulkNotificationResponse,
    NotificationResponse,
    NotificationDetailResponse,
    NotificationSettingsResponse,
)
from ..services.batch import SCHEDULED_DEVICE_TARGETS, BulkRequest
from ..services.dispatcher import push_dispatcher
from ..services.notifications import NotificationContent, notification_service
from .common import get_current_user, http_error

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/notifications", tags=["notifications"])


def _content(request: NotificationContentBase, scheduled_for=None) -> NotificationContent:
    """Convert request fields into service content."""
    return NotificationContent(
        title=request.title,
        message=request.message,
        category=request.category,
        priority=request.priority,
        data=dict(request.data),
        actions=[action.model_dump(exclude_none=True) for action in request.actions],
        media=request.media.model_dump(exclude_none=True) if request.media else None,
        settings=request.settings.model_dump(exclude_none=True) if request.settings else {},
        scheduled_for=scheduled_for,
    )


@router.post("/send", response_model=SendNotificationResponse)
async def send_notification(
    request: SendNotificationRequest,
    user_id: str = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Send a notification to users (eligible devices) or to explicit devices."""
    if bool(request.user_ids) == bool(request.device_ids):
        raise HTTPException(status_code=400, detail="Either user_ids or device_ids must be provided")
    if request.device_ids and request.scheduled_for:
        raise HTTPException(status_code=400, detail=SCHEDULED_DEVICE_TARGETS)

    content = _content(request, request.scheduled_for)
    try:
        if request.user_ids:
            sent = await notification_service.send_to_users(db, request.user_ids, content, created_by=user_id)
            results = [DispatchResponse(user_id=target, **result.to_dict()) for target, result in sent]
        else:
            result = await notification_service.send_to_devices(db, request.device_ids, content, created_by=user_id)
            results = [DispatchResponse(**result.to_dict())]
    except PushError as e:
        raise http_error(e)

    return SendNotificationResponse(
        success=any(result.success for result in results),
        message="Notification processed",
        results=results,
    )


@router.post("/bulk", response_model=BulkNotificationResponse)
async def send_bulk_notifications(
    request: BulkNotificationRequest,
    user_id: str = Depends(get_current_user),
):
    """Send many notifications in rate-limited batches."""
    bulk = [
        BulkRequest(
            content=_content(item, item.scheduled_for),
            user_ids=item.user_ids or [],
            device_ids=item.device_ids or [],
            created_by=user_id,
        )
        for item in request.notifications
    ]
    outcomes = await notification_service.send_bulk(bulk)

    items = [
        BulkItemResponse(
            index=outcome.index,
            success=outcome.success,
            error=outcome.error,
            results=[DispatchResponse(**result.to_dict()) for result in outcome.results],
        )
        for outcome in outcomes
    ]
    successful = sum(1 for item in items if item.success)
    return BulkNotificationResponse(
        success=True,
        message="Bulk notifications processed",
        summary=BulkSummary(total=len(items), successful=successful, failed=len(items) - successful),
        results=items,
    )


@router.post("/schedule", response_model=DispatchResponse)
async def schedule_notification(
    request: ScheduleNotificationRequest,
    user_id: str = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Store a notification for delivery at ``scheduled_for``."""
    try:
        result = await notification_service.schedule(
            db, request.user_id, _content(request, request.scheduled_for), created_by=user_id
        )
    except PushError as e:
        raise http_error(e)
    return DispatchResponse(user_id=request.user_id, **result.to_dict())


@router.post("/test", response_model=DispatchResponse)
async def send_test_notification(
    request: Optional[SendTestRequest] = None,
    user_id: str = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Send a test notification to one of the caller's devices, or all of them."""
    try:
        result = await notification_service.send_test(db, user_id, request.device_id if request else None)
    except PushError as e:
        raise http_error(e)
    return DispatchResponse(user_id=user_id, **result.to_dict())


@router.get("", response_model=List[NotificationResponse])
async def list_notifications(
    category: Optional[str] = None,
    status: Optional[str] = None,
    priority: Optional[str] = None,
    unread_only: bool = False,
    limit: int = Query(50, ge=1, le=200),
    skip: int = Query(0, ge=0),
    user_id: str = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Get the caller's notifications, newest first."""
    try:
        return await notification_service.list_for_user(
            db, user_id,
            category=category,
            status=status,
            priority=priority,
            unread_only=unread_only,
            limit=limit,
            skip=skip,
        )
    except PushError as e:
        raise http_error(e)


@router.get("/settings", response_model=NotificationSettingsResponse)
async def get_notification_settings():
    """Categories, priorities and defaults clients build requests from."""
    return NotificationSettingsResponse(
        categories=list(CATEGORIES),
        priorities=list(PRIORITIES),
        platforms=list(PLATFORMS),
        providers=push_dispatcher.get_status(),
        default_settings=dict(DEFAULT_DELIVERY_SETTINGS),
        default_preferences=default_preferences(),
    )


@router.get("/{notification_id}", response_model=NotificationDetailResponse)
async def get_notification(
    notification_id: int,
    user_id: str = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Get one notification with its per-device delivery state."""
    try:
        return await notification_service.get(db, notification_id, user_id)
    except PushError as e:
        raise http_error(e)


@router.post("/{notification_id}/read", response_model=NotificationResponse)
async def mark_read(
    notification_id: int,
    request: Optional[InteractionRequest] = None,
    user_id: str = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    try:
        return await notification_service.mark_read(
            db, notification_id, user_id, device_id=request.device_id if request else None
        )
    except PushError as e:
        raise http_error(e)


@router.post("/{notification_id}/click", response_model=NotificationResponse)
async def mark_clicked(
    notification_id: int,
    request: Optional[InteractionRequest] = None,
    user_id: str = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    try:
        return await notification_service.mark_clicked(
            db, notification_id, user_id, device_id=request.device_id if request else None
        )
    except PushError as e:
        raise http_error(e)


@router.post("/{notification_id}/dismiss", response_model=NotificationResponse)
async def mark_dismissed(
    notification_id: int,
    user_id: str = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    try:
        return await notification_service.mark_dismissed(db, notification_id, user_id)
    except PushError as e:
        raise http_error(e)


@router.post("/{notification_id}/cancel", response_model=NotificationResponse)
async def cancel_notification(
    notification_id: int,
    user_id: str = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Cancel a notification that has not been dispatched yet."""
    try:
        return await notification_service.cancel(db, notification_id, user_id)
    except PushError as e:
        raise http_error(e)
