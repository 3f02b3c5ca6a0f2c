"""Aggregator - folds per-device delivery results into a notification record.

One DeliveryAggregator owns every write to a record's target entries while
it is being dispatched. Sends run concurrently, but their results reach the
database one at a time through ``collect``, so two devices finishing at the
same instant cannot overwrite each other's entry.
"""
import asyncio
import logging
from dataclasses import dataclass, asdict
from typing import Optional, Iterable, Awaitable, Tuple, List, Dict

from sqlalchemy.ext.asyncio import AsyncSession

from ..models.notification import (
    Notification,
    NotificationTarget,
    NotificationError,
    STATUS_DELIVERED,
    STATUS_FAILED,
    TERMINAL_TARGET_STATUSES,
)
from ..utils.db_utils import utcnow
from .dispatcher import DeliveryResult

logger = logging.getLogger(__name__)


def resolve_overall_status(current: str, sub_statuses: Iterable[str]) -> str:
    """Derive a record's overall status from its target sub-statuses.

    While any entry is still pending (or only sent), the record keeps
    ``current``. Once every entry is terminal the record is ``delivered``
    if at least one device got it and ``failed`` otherwise.
    """
    statuses = list(sub_statuses)
    if any(status not in TERMINAL_TARGET_STATUSES for status in statuses):
        return current
    return STATUS_DELIVERED if STATUS_DELIVERED in statuses else STATUS_FAILED


@dataclass
class DeviceOutcome:
    """Per-device line of a dispatch result."""
    device_id: str
    platform: str
    provider: Optional[str]
    success: bool
    status: str
    provider_message_id: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_target(cls, target: NotificationTarget, error_code: Optional[str] = None) -> "DeviceOutcome":
        return cls(
            device_id=target.device_id,
            platform=target.platform,
            provider=target.provider,
            success=target.status == STATUS_DELIVERED,
            status=target.status,
            provider_message_id=target.provider_message_id,
            error=target.error,
            error_code=error_code,
        )


class DeliveryAggregator:
    """Single writer for one notification's target entries."""

    def __init__(self, session: AsyncSession, notification: Notification, registry=None):
        self.session = session
        self.notification = notification
        self.registry = registry
        self._targets: Dict[int, NotificationTarget] = {target.id: target for target in notification.targets}
        self._error_codes: Dict[int, Optional[str]] = {}

    def apply(self, target_id: int, result: DeliveryResult) -> NotificationTarget:
        """Write one device's result onto its target entry."""
        target = self._targets[target_id]
        if target.status in TERMINAL_TARGET_STATUSES:
            logger.warning(
                f"Ignoring second result for device {target.device_id} "
                f"on notification {self.notification.id}"
            )
            return target

        now = utcnow()
        target.sent_at = now
        if result.provider:
            target.provider = result.provider

        if result.success:
            target.status = STATUS_DELIVERED
            target.delivered_at = now
            target.provider_message_id = result.provider_message_id
            target.error = None
        else:
            target.status = STATUS_FAILED
            target.error = result.error or "unknown error"
            self.notification.errors.append(NotificationError(
                device_id=target.device_id,
                error=target.error,
                code=result.error_code,
                timestamp=now,
                retry_count=0,
            ))

        self._error_codes[target_id] = result.error_code
        return target

    async def collect(self, sends: Iterable[Awaitable[Tuple[int, DeliveryResult]]]) -> List[DeviceOutcome]:
        """Await every send and apply results in completion order.

        Returns only after all sends have finished; each send is expected to
        resolve to (target_id, result) and never raise.
        """
        for next_done in asyncio.as_completed(list(sends)):
            target_id, result = await next_done
            target = self.apply(target_id, result)
            await self.session.flush()

            if target.status == STATUS_DELIVERED and self.registry is not None:
                await self.registry.record_interaction(self.session, target.device_id, "received", commit=False)

        return self.outcomes()

    def resolve(self) -> str:
        """Set and return the record's overall status once all entries are terminal."""
        status = resolve_overall_status(
            self.notification.status,
            [target.status for target in self.notification.targets],
        )
        if status != self.notification.status:
            self.notification.status = status
            if status == STATUS_DELIVERED:
                self.notification.delivered_at = utcnow()
        return status

    def outcomes(self) -> List[DeviceOutcome]:
        """Per-device outcomes in target order."""
        return [
            DeviceOutcome.from_target(target, self._error_codes.get(target.id))
            for target in self.notification.targets
        ]
