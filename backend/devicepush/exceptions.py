"""Exception types raised by the registry and delivery services."""
from typing import Optional


class PushError(Exception):
    """Base class for push delivery errors."""


class RegistrationError(PushError):
    """Malformed device, platform, token or preference input."""


class DeviceNotFoundError(PushError):
    """No device with the given device_id."""

    def __init__(self, device_id: str):
        super().__init__(f"Device not found: {device_id}")
        self.device_id = device_id


class NotificationNotFoundError(PushError):
    """No notification with the given id (for the given owner)."""

    def __init__(self, notification_id: int):
        super().__init__(f"Notification not found: {notification_id}")
        self.notification_id = notification_id


class NotificationValidationError(PushError):
    """Notification content or targeting is invalid."""


class NotificationStateError(PushError):
    """Operation not allowed in the record's current status.

    Raised for example when cancelling a record that has already been
    claimed for dispatch. The record is left unchanged.
    """

    def __init__(self, notification_id: int, status: str, operation: str):
        super().__init__(f"Cannot {operation} notification {notification_id} in status '{status}'")
        self.notification_id = notification_id
        self.status = status
        self.operation = operation


class DispatchError(PushError):
    """A provider rejected a send for one device.

    Never propagated to sibling sends; the aggregator records it on the
    target entry and in the record's error log.
    """

    def __init__(self, device_id: str, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.device_id = device_id
        self.code = code


class SchedulerTickError(PushError):
    """Dispatching one scheduled record failed during a tick."""

    def __init__(self, notification_id: int, cause: BaseException):
        super().__init__(f"Scheduled notification {notification_id} failed: {type(cause).__name__}: {cause}")
        self.notification_id = notification_id
        self.cause = cause


class AggregationInconsistency(PushError):
    """A notification request resolved to zero deliverable devices."""
