"""Notification service - creates records, dispatches them and tracks interactions.

Delivery of one record:
1. Claim it. Immediate sends create the record already in `sent`; scheduled
   records are claimed with a compare-and-swap UPDATE (pending -> sent), and
   losing that claim means another worker owns the record.
2. Send to every target device concurrently through the dispatcher.
3. Fold results into the record through a single DeliveryAggregator, then
   resolve the overall status once every target entry is terminal.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, List, Tuple, Sequence, Callable

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import settings
from ..database import async_session
from ..exceptions import (
    AggregationInconsistency,
    DispatchError,
    NotificationNotFoundError,
    NotificationStateError,
    NotificationValidationError,
)
from ..models.device import Device, CATEGORIES, PRIORITIES
from ..models.notification import (
    Notification,
    NotificationTarget,
    STATUS_PENDING,
    STATUS_SENT,
    STATUS_CANCELLED,
    STATUS_FAILED,
    NOTIFICATION_STATUSES,
    INTERACTIVE_STATUSES,
    MEDIA_TYPES,
    ACTION_TYPES,
    TITLE_MAX_LENGTH,
    MESSAGE_MAX_LENGTH,
    DEFAULT_DELIVERY_SETTINGS,
)
from ..utils.db_utils import retry_on_lock, utcnow, as_naive_utc
from .aggregator import DeliveryAggregator, DeviceOutcome
from .batch import BatchCoordinator, BulkRequest, BulkResult, SCHEDULED_DEVICE_TARGETS
from .dispatcher import PlatformDispatcher, DeliveryResult, build_payload, push_dispatcher
from .registry import DeviceRegistry, device_registry, resolve_push_token
from .eligibility import check_eligibility

logger = logging.getLogger(__name__)

NO_ELIGIBLE_DEVICES = "No eligible devices"
NO_ACTIVE_DEVICES = "No active devices found"

TEST_TITLE = "Test Notification"
TEST_MESSAGE = "This is a test notification"


@dataclass
class NotificationContent:
    """What to send, independent of who receives it."""
    title: str
    message: str
    category: str = "general"
    priority: str = "normal"
    data: dict = field(default_factory=dict)
    actions: List[dict] = field(default_factory=list)
    media: Optional[dict] = None
    settings: dict = field(default_factory=dict)
    scheduled_for: Optional[datetime] = None

    def validate(self) -> None:
        """Raise NotificationValidationError on malformed content."""
        if not self.title or not self.title.strip():
            raise NotificationValidationError("title is required")
        if len(self.title) > TITLE_MAX_LENGTH:
            raise NotificationValidationError(f"title longer than {TITLE_MAX_LENGTH} characters")
        if not self.message or not self.message.strip():
            raise NotificationValidationError("message is required")
        if len(self.message) > MESSAGE_MAX_LENGTH:
            raise NotificationValidationError(f"message longer than {MESSAGE_MAX_LENGTH} characters")
        if self.category not in CATEGORIES:
            raise NotificationValidationError(f"Unknown category: {self.category!r}")
        if self.priority not in PRIORITIES:
            raise NotificationValidationError(f"Unknown priority: {self.priority!r}")
        if not isinstance(self.data, dict):
            raise NotificationValidationError("data must be an object")

        for action in self.actions or []:
            if not isinstance(action, dict) or not action.get("id") or not action.get("title"):
                raise NotificationValidationError("Each action needs an id and a title")
            if action.get("action") and action["action"] not in ACTION_TYPES:
                raise NotificationValidationError(f"Unknown action type: {action['action']!r}")

        if self.media is not None:
            if not isinstance(self.media, dict) or not self.media.get("url"):
                raise NotificationValidationError("media needs a url")
            if self.media.get("type") not in MEDIA_TYPES:
                raise NotificationValidationError(f"Unknown media type: {self.media.get('type')!r}")

        unknown = set(self.settings or {}) - set(DEFAULT_DELIVERY_SETTINGS)
        if unknown:
            raise NotificationValidationError(f"Unknown delivery settings: {', '.join(sorted(unknown))}")
        ttl = (self.settings or {}).get("time_to_live")
        if ttl is not None and (not isinstance(ttl, int) or ttl < 0):
            raise NotificationValidationError("time_to_live must be a non-negative integer")

    def delivery_settings(self) -> dict:
        return {**DEFAULT_DELIVERY_SETTINGS, **(self.settings or {})}


@dataclass
class DispatchResult:
    """Outcome of a send: the record it created and a per-device breakdown."""
    success: bool
    status: str
    notification_id: Optional[int] = None
    message: str = ""
    devices: List[DeviceOutcome] = field(default_factory=list)

    @property
    def device_count(self) -> int:
        return len(self.devices)

    @property
    def delivered_count(self) -> int:
        return sum(1 for outcome in self.devices if outcome.success)

    @property
    def failed_count(self) -> int:
        return sum(1 for outcome in self.devices if not outcome.success)

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "status": self.status,
            "notification_id": self.notification_id,
            "message": self.message,
            "device_count": self.device_count,
            "delivered": self.delivered_count,
            "failed": self.failed_count,
            "devices": [outcome.to_dict() for outcome in self.devices],
        }


class NotificationService:
    """Sends notifications to users or devices and records the outcome."""

    def __init__(
        self,
        registry: DeviceRegistry = device_registry,
        dispatcher: PlatformDispatcher = push_dispatcher,
        session_factory: Callable = async_session,
        batch_size: int = 500,
        batch_cooldown_seconds: float = 0.1,
    ):
        self.registry = registry
        self.dispatcher = dispatcher
        self.session_factory = session_factory
        self.batch_size = batch_size
        self.batch_cooldown_seconds = batch_cooldown_seconds

    # ------------------------------------------------------------------
    # Sending

    async def send_to_user(
        self,
        session: AsyncSession,
        user_id: str,
        content: NotificationContent,
        created_by: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> DispatchResult:
        """Send to every eligible device of one user.

        A future ``scheduled_for`` stores the record as pending for the
        scheduler instead of dispatching it now.
        """
        content.validate()
        now = as_naive_utc(now) if now else utcnow()
        scheduled_for = as_naive_utc(content.scheduled_for) if content.scheduled_for else None
        deferred = scheduled_for is not None and scheduled_for > now

        devices = await self.registry.list_eligible(
            session,
            user_id,
            content.category,
            content.priority,
            now=scheduled_for if deferred else now,
            respect_quiet_hours=content.delivery_settings().get("respect_quiet_hours", True),
        )
        notification = await self._create_record(
            session, user_id, devices, content, scheduled_for, created_by, now, claimed=not deferred
        )
        if notification is None:
            self._log_empty(f"user {user_id}", content)
            return DispatchResult(success=False, status=STATUS_FAILED, message=NO_ELIGIBLE_DEVICES)

        if deferred:
            logger.info(f"Notification {notification.id} scheduled for {scheduled_for.isoformat()}")
            return DispatchResult(
                success=True,
                status=STATUS_PENDING,
                notification_id=notification.id,
                message="Notification scheduled",
            )

        return await self._dispatch(session, notification.id)

    async def send_to_users(
        self,
        session: AsyncSession,
        user_ids: Sequence[str],
        content: NotificationContent,
        created_by: Optional[str] = None,
    ) -> List[Tuple[str, DispatchResult]]:
        """Send to several users; one user's failure does not stop the rest."""
        results = []
        for user_id in user_ids:
            try:
                result = await self.send_to_user(session, user_id, content, created_by)
            except NotificationValidationError:
                raise
            except Exception as e:
                await session.rollback()
                logger.error(f"Error sending to user {user_id}: {type(e).__name__}: {e}")
                result = DispatchResult(success=False, status=STATUS_FAILED, message=str(e))
            results.append((user_id, result))
        return results

    async def send_to_devices(
        self,
        session: AsyncSession,
        device_ids: Sequence[str],
        content: NotificationContent,
        created_by: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> DispatchResult:
        """Send to explicit devices now. The record belongs to the first device's owner."""
        content.validate()
        if content.scheduled_for is not None:
            raise NotificationValidationError(SCHEDULED_DEVICE_TARGETS)
        now = as_naive_utc(now) if now else utcnow()

        devices = await self.registry.get_many(session, list(device_ids), active_only=True)
        if not devices:
            self._log_empty(f"devices {', '.join(device_ids)}", content)
            return DispatchResult(success=False, status=STATUS_FAILED, message=NO_ACTIVE_DEVICES)

        respect_quiet_hours = content.delivery_settings().get("respect_quiet_hours", True)
        eligible = []
        for device in devices:
            allowed, reason = check_eligibility(device, content.category, content.priority, now, respect_quiet_hours)
            if allowed:
                eligible.append(device)
            else:
                logger.debug(f"Device {device.device_id} excluded: {reason}")

        notification = await self._create_record(
            session, devices[0].user_id, eligible, content, None, created_by, now, claimed=True
        )
        if notification is None:
            self._log_empty(f"devices {', '.join(device_ids)}", content)
            return DispatchResult(success=False, status=STATUS_FAILED, message=NO_ELIGIBLE_DEVICES)

        return await self._dispatch(session, notification.id)

    async def schedule(
        self,
        session: AsyncSession,
        user_id: str,
        content: NotificationContent,
        created_by: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> DispatchResult:
        """Store a notification for later delivery by the scheduler."""
        now = as_naive_utc(now) if now else utcnow()
        if content.scheduled_for is None or as_naive_utc(content.scheduled_for) <= now:
            raise NotificationValidationError("scheduled_for must be in the future")
        return await self.send_to_user(session, user_id, content, created_by, now=now)

    async def send_test(
        self,
        session: AsyncSession,
        user_id: str,
        device_id: Optional[str] = None,
    ) -> DispatchResult:
        """Send a system test message to one device or all of a user's devices."""
        if device_id:
            device = await self.registry.get(session, device_id)
            if device.user_id != user_id:
                raise NotificationValidationError(f"Device {device_id} does not belong to user {user_id}")
            device_ids = [device_id]
        else:
            device_ids = [device.device_id for device in await self.registry.list_for_user(session, user_id)]

        if not device_ids:
            raise NotificationValidationError("No active devices found for testing")

        content = NotificationContent(
            title=TEST_TITLE,
            message=TEST_MESSAGE,
            category="system",
            priority="normal",
            data={"test": "true", "timestamp": utcnow().isoformat()},
        )
        return await self.send_to_devices(session, device_ids, content, created_by=user_id)

    async def send_bulk(self, requests: Sequence[BulkRequest]) -> List[BulkResult]:
        """Process many send requests in batches, each in its own session."""
        coordinator = BatchCoordinator(
            self._handle_bulk_request,
            batch_size=self.batch_size,
            cooldown_seconds=self.batch_cooldown_seconds,
        )
        return await coordinator.run(requests)

    async def _handle_bulk_request(self, request: BulkRequest) -> List[DispatchResult]:
        request.validate()
        async with self.session_factory() as session:
            if request.user_ids:
                return [result for _, result in await self.send_to_users(
                    session, request.user_ids, request.content, request.created_by
                )]
            return [await self.send_to_devices(session, request.device_ids, request.content, request.created_by)]

    # ------------------------------------------------------------------
    # Dispatch

    async def deliver(self, session: AsyncSession, notification_id: int) -> DispatchResult:
        """Claim a pending record, send it to every target and resolve its status.

        Raises:
            NotificationStateError: the record is no longer pending (claimed
                by another worker, cancelled or already dispatched)
        """
        claim = await session.execute(
            update(Notification)
            .where(Notification.id == notification_id, Notification.status == STATUS_PENDING)
            .values(status=STATUS_SENT, sent_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        await retry_on_lock(session.commit)
        if claim.rowcount != 1:
            current = await self._load(session, notification_id)
            raise NotificationStateError(notification_id, current.status, "dispatch")

        return await self._dispatch(session, notification_id)

    async def _dispatch(self, session: AsyncSession, notification_id: int) -> DispatchResult:
        """Send a record this worker has claimed and resolve its status."""
        notification = await self._load(session, notification_id)
        devices = await self.registry.get_many(
            session, [target.device_id for target in notification.targets], active_only=False
        )
        by_device_id = {device.device_id: device for device in devices}

        aggregator = DeliveryAggregator(session, notification, self.registry)
        sends = [
            self._send_one(target.id, target.device_id, target.provider, target.push_token,
                           by_device_id.get(target.device_id), notification)
            for target in notification.targets
        ]
        outcomes = await aggregator.collect(sends)
        status = aggregator.resolve()
        await retry_on_lock(session.commit)

        delivered = sum(1 for outcome in outcomes if outcome.success)
        logger.info(
            f"Notification {notification_id} {status}: "
            f"{delivered}/{len(outcomes)} devices delivered"
        )
        return DispatchResult(
            success=delivered > 0,
            status=status,
            notification_id=notification_id,
            message=f"Delivered to {delivered} of {len(outcomes)} devices",
            devices=outcomes,
        )

    async def _send_one(
        self,
        target_id: int,
        device_id: str,
        provider: str,
        token: str,
        device: Optional[Device],
        notification: Notification,
    ) -> Tuple[int, DeliveryResult]:
        if device is None or not device.is_active:
            error = DispatchError(device_id, "Device is no longer active", code="device_inactive")
            return target_id, DeliveryResult.failed(str(error), code=error.code, provider=provider)

        payload = build_payload(notification, device)
        try:
            result = await self.dispatcher.send(device, token, payload, provider=provider)
        except Exception as e:
            logger.error(f"Dispatch to {device_id} raised: {type(e).__name__}: {e}")
            result = DeliveryResult.failed(f"{type(e).__name__}: {e}", code="internal_error", provider=provider)
        return target_id, result

    async def _create_record(
        self,
        session: AsyncSession,
        user_id: str,
        devices: Sequence[Device],
        content: NotificationContent,
        scheduled_for: Optional[datetime],
        created_by: Optional[str],
        now: datetime,
        claimed: bool = False,
    ) -> Optional[Notification]:
        """Persist a record with one target entry per reachable device.

        A ``claimed`` record is written already in ``sent`` for immediate
        dispatch by the caller, so the scheduler never sees it as due.
        Returns None when no device has a usable token.
        """
        targets = []
        for device in devices:
            resolved = resolve_push_token(device, now)
            if resolved is None:
                logger.debug(f"Device {device.device_id} has no active push token")
                continue
            provider, token = resolved
            targets.append(NotificationTarget(
                device_id=device.device_id,
                platform=device.platform,
                provider=provider,
                push_token=token,
                status=STATUS_PENDING,
            ))

        if not targets:
            return None

        notification = Notification(
            user_id=user_id,
            title=content.title,
            message=content.message,
            category=content.category,
            priority=content.priority,
            data=dict(content.data or {}),
            actions=list(content.actions or []),
            media=dict(content.media) if content.media else None,
            settings=content.delivery_settings(),
            status=STATUS_SENT if claimed else STATUS_PENDING,
            sent_at=utcnow() if claimed else None,
            scheduled_for=scheduled_for,
            created_by=created_by,
            targets=targets,
            errors=[],
        )
        session.add(notification)
        await retry_on_lock(session.commit)
        return notification

    def _log_empty(self, audience: str, content: NotificationContent) -> None:
        error = AggregationInconsistency(
            f"No deliverable devices for {audience} "
            f"(category={content.category}, priority={content.priority})"
        )
        logger.warning(str(error))

    # ------------------------------------------------------------------
    # Lifecycle and interactions

    async def cancel(self, session: AsyncSession, notification_id: int, user_id: Optional[str] = None) -> Notification:
        """Cancel a notification that has not been dispatched yet."""
        await self.get(session, notification_id, user_id)
        result = await session.execute(
            update(Notification)
            .where(Notification.id == notification_id, Notification.status == STATUS_PENDING)
            .values(status=STATUS_CANCELLED, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        await retry_on_lock(session.commit)

        notification = await self._load(session, notification_id)
        if result.rowcount != 1:
            raise NotificationStateError(notification_id, notification.status, "cancel")

        logger.info(f"Notification {notification_id} cancelled")
        return notification

    async def mark_read(
        self,
        session: AsyncSession,
        notification_id: int,
        user_id: Optional[str] = None,
        device_id: Optional[str] = None,
    ) -> Notification:
        return await self._record_interaction(
            session, notification_id, user_id, device_id,
            operation="read",
            values={
                "is_read": True,
                "read_at": utcnow(),
                "impressions": Notification.impressions + 1,
            },
            device_counter="read",
        )

    async def mark_clicked(
        self,
        session: AsyncSession,
        notification_id: int,
        user_id: Optional[str] = None,
        device_id: Optional[str] = None,
    ) -> Notification:
        return await self._record_interaction(
            session, notification_id, user_id, device_id,
            operation="click",
            values={"is_clicked": True, "clicks": Notification.clicks + 1},
            device_counter="clicked",
        )

    async def mark_dismissed(
        self,
        session: AsyncSession,
        notification_id: int,
        user_id: Optional[str] = None,
    ) -> Notification:
        return await self._record_interaction(
            session, notification_id, user_id, None,
            operation="dismiss",
            values={"is_dismissed": True, "dismissals": Notification.dismissals + 1},
        )

    async def _record_interaction(
        self,
        session: AsyncSession,
        notification_id: int,
        user_id: Optional[str],
        device_id: Optional[str],
        operation: str,
        values: dict,
        device_counter: Optional[str] = None,
    ) -> Notification:
        notification = await self.get(session, notification_id, user_id)
        if notification.status not in INTERACTIVE_STATUSES:
            raise NotificationStateError(notification_id, notification.status, operation)

        await session.execute(
            update(Notification)
            .where(Notification.id == notification_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if device_id and device_counter:
            await self.registry.record_interaction(session, device_id, device_counter, commit=False)
        await retry_on_lock(session.commit)
        return await self._load(session, notification_id)

    # ------------------------------------------------------------------
    # Queries

    async def _load(self, session: AsyncSession, notification_id: int) -> Notification:
        result = await session.execute(
            select(Notification)
            .where(Notification.id == notification_id)
            .execution_options(populate_existing=True)
        )
        notification = result.scalar_one_or_none()
        if notification is None:
            raise NotificationNotFoundError(notification_id)
        return notification

    async def get(self, session: AsyncSession, notification_id: int, user_id: Optional[str] = None) -> Notification:
        """Get a notification; with ``user_id`` only the owner's record is visible."""
        notification = await self._load(session, notification_id)
        if user_id is not None and notification.user_id != user_id:
            raise NotificationNotFoundError(notification_id)
        return notification

    async def list_for_user(
        self,
        session: AsyncSession,
        user_id: str,
        category: Optional[str] = None,
        status: Optional[str] = None,
        priority: Optional[str] = None,
        unread_only: bool = False,
        limit: int = 50,
        skip: int = 0,
    ) -> List[Notification]:
        """Get a user's notifications, newest first."""
        if status is not None and status not in NOTIFICATION_STATUSES:
            raise NotificationValidationError(f"Unknown status: {status!r}")

        query = select(Notification).where(Notification.user_id == user_id)
        if category:
            query = query.where(Notification.category == category)
        if status:
            query = query.where(Notification.status == status)
        if priority:
            query = query.where(Notification.priority == priority)
        if unread_only:
            query = query.where(Notification.is_read.is_(False))

        result = await session.execute(
            query.order_by(Notification.created_at.desc(), Notification.id.desc()).offset(skip).limit(limit)
        )
        return list(result.scalars().all())

    async def list_due(self, session: AsyncSession, now: Optional[datetime] = None) -> List[int]:
        """Ids of pending records whose scheduled time has come, oldest first."""
        now = as_naive_utc(now) if now else utcnow()
        result = await session.execute(
            select(Notification.id)
            .where(
                Notification.status == STATUS_PENDING,
                (Notification.scheduled_for.is_(None)) | (Notification.scheduled_for <= now),
            )
            .order_by(Notification.created_at, Notification.id)
        )
        return list(result.scalars().all())


# Global instance
notification_service = NotificationService(
    batch_size=settings.bulk_batch_size,
    batch_cooldown_seconds=settings.bulk_cooldown_seconds,
)
