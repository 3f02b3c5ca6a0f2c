"""Services for device registration, delivery, scheduling and batching."""
from .registry import DeviceRegistry
from .dispatcher import PlatformDispatcher, PushAdapter
from .notifications import NotificationService
from .scheduler import SchedulerService
from .batch import BatchCoordinator

__all__ = [
    "DeviceRegistry",
    "PlatformDispatcher",
    "PushAdapter",
    "NotificationService",
    "SchedulerService",
    "BatchCoordinator",
]
