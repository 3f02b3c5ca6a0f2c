"""Scheduler service - delivers scheduled notifications and sweeps idle devices.

Ticks never overlap (max_instances=1). Each tick dispatches due records one
after another; a failure on one record is logged and the tick moves on.
Records are claimed before dispatch, so a second scheduler process running
against the same database skips anything already taken.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, List, Callable

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from ..config import settings
from ..database import async_session
from ..exceptions import NotificationStateError, SchedulerTickError
from ..utils.db_utils import utcnow
from .notifications import NotificationService, notification_service
from .registry import DeviceRegistry, device_registry

logger = logging.getLogger(__name__)


@dataclass
class TickReport:
    """What one scheduler tick did."""
    due: int = 0
    dispatched: int = 0
    skipped: int = 0
    errors: List[SchedulerTickError] = field(default_factory=list)


class SchedulerService:
    """Service for periodic delivery of scheduled notifications."""

    def __init__(
        self,
        service: NotificationService = notification_service,
        registry: DeviceRegistry = device_registry,
        session_factory: Callable = async_session,
        tick_seconds: int = 60,
        cleanup_interval_hours: int = 24,
        inactive_device_days: int = 90,
    ):
        self.service = service
        self.registry = registry
        self.session_factory = session_factory
        self.tick_seconds = tick_seconds
        self.cleanup_interval_hours = cleanup_interval_hours
        self.inactive_device_days = inactive_device_days
        self.scheduler: Optional[AsyncIOScheduler] = None
        self._running = False

    def start(self):
        """Start the scheduler."""
        if self._running:
            return

        self.scheduler = AsyncIOScheduler()

        self.scheduler.add_job(
            self._run_tick,
            trigger=IntervalTrigger(seconds=self.tick_seconds),
            id="deliver_scheduled",
            replace_existing=True,
            max_instances=1,
            misfire_grace_time=self.tick_seconds,
        )

        self.scheduler.add_job(
            self._cleanup_inactive_devices,
            trigger=IntervalTrigger(hours=self.cleanup_interval_hours),
            id="cleanup_inactive_devices",
            replace_existing=True,
            max_instances=1,
        )

        self.scheduler.start()
        self._running = True
        logger.info(f"Scheduler started (tick={self.tick_seconds}s, cleanup every {self.cleanup_interval_hours}h)")

    def stop(self):
        """Stop the scheduler."""
        if self.scheduler and self._running:
            self.scheduler.shutdown(wait=False)
            self._running = False
            logger.info("Scheduler stopped")

    @property
    def running(self) -> bool:
        return self._running

    async def tick(self, now: Optional[datetime] = None) -> TickReport:
        """Dispatch every pending record whose scheduled time has come."""
        now = now or utcnow()
        report = TickReport()

        async with self.session_factory() as session:
            due_ids = await self.service.list_due(session, now)
        report.due = len(due_ids)
        if not due_ids:
            return report

        logger.debug(f"Delivering {len(due_ids)} due notifications")

        for notification_id in due_ids:
            try:
                async with self.session_factory() as session:
                    await self.service.deliver(session, notification_id)
                report.dispatched += 1
            except NotificationStateError as e:
                # Claimed by another worker or cancelled since the query
                logger.debug(f"Skipping notification {notification_id}: {e}")
                report.skipped += 1
            except Exception as e:
                error = SchedulerTickError(notification_id, e)
                logger.error(str(error))
                report.errors.append(error)

        logger.info(
            f"Scheduler tick: {report.dispatched} dispatched, "
            f"{report.skipped} skipped, {len(report.errors)} failed"
        )
        return report

    async def _run_tick(self):
        try:
            await self.tick()
        except Exception as e:
            logger.error(f"Error running scheduler tick: {e}")

    async def _cleanup_inactive_devices(self):
        """Deactivate devices idle for longer than the configured window."""
        try:
            async with self.session_factory() as session:
                count = await self.registry.cleanup_inactive(session, self.inactive_device_days)
                logger.info(f"Inactive device sweep deactivated {count} devices")
        except Exception as e:
            logger.error(f"Error cleaning up inactive devices: {e}")


# Global instance
scheduler_service = SchedulerService(
    tick_seconds=settings.scheduler_tick_seconds,
    cleanup_interval_hours=settings.cleanup_interval_hours,
    inactive_device_days=settings.inactive_device_days,
)
