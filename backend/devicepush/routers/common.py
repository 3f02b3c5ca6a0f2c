"""Shared router helpers: caller identity and error translation."""
from fastapi import Header, HTTPException

from ..exceptions import (
    PushError,
    RegistrationError,
    DeviceNotFoundError,
    NotificationNotFoundError,
    NotificationValidationError,
    NotificationStateError,
)

# Exception type -> HTTP status
ERROR_STATUS = (
    (DeviceNotFoundError, 404),
    (NotificationNotFoundError, 404),
    (NotificationStateError, 409),
    (RegistrationError, 400),
    (NotificationValidationError, 400),
)


async def get_current_user(x_user_id: str = Header(None)) -> str:
    """Caller identity from the X-User-Id header, trusted as given."""
    if not x_user_id:
        raise HTTPException(status_code=401, detail="X-User-Id header required")
    return x_user_id


def http_error(error: PushError) -> HTTPException:
    """Translate a service exception into an HTTPException."""
    for error_type, status_code in ERROR_STATUS:
        if isinstance(error, error_type):
            return HTTPException(status_code=status_code, detail=str(error))
    return HTTPException(status_code=500, detail=str(error))
