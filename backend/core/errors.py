"""Structured error codes shared by every appointment endpoint."""

from enum import Enum

from fastapi import HTTPException, status

GENERIC_ERROR_MESSAGE = 'Something went wrong. Please try again.'


class ErrorCode(str, Enum):
    INVALID_PAYLOAD = 'invalid_payload'
    FORBIDDEN_ACTION = 'forbidden_action'
    APPOINTMENT_NOT_FOUND = 'appointment_not_found'
    APPOINTMENT_CONFLICT = 'appointment_conflict'
    INVALID_STATUS_TRANSITION = 'invalid_status_transition'
    STATUS_UPDATE_FAILED = 'status_update_failed'
    CALENDAR_PROVIDER_UNSUPPORTED = 'calendar_provider_unsupported'


ERROR_STATUS_CODES = {
    ErrorCode.INVALID_PAYLOAD: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ErrorCode.FORBIDDEN_ACTION: status.HTTP_403_FORBIDDEN,
    ErrorCode.APPOINTMENT_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorCode.APPOINTMENT_CONFLICT: status.HTTP_409_CONFLICT,
    ErrorCode.INVALID_STATUS_TRANSITION: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ErrorCode.STATUS_UPDATE_FAILED: status.HTTP_400_BAD_REQUEST,
    ErrorCode.CALENDAR_PROVIDER_UNSUPPORTED: status.HTTP_422_UNPROCESSABLE_ENTITY,
}

ERROR_CODE_MESSAGES = {
    ErrorCode.APPOINTMENT_NOT_FOUND: 'That appointment could not be found. Refresh and try again.',
    ErrorCode.APPOINTMENT_CONFLICT: 'Scheduling this appointment would create a scheduling conflict.',
    ErrorCode.INVALID_STATUS_TRANSITION: 'This appointment cannot be reviewed in its current state.',
    ErrorCode.STATUS_UPDATE_FAILED: 'Unable to update the status. Please try again.',
    ErrorCode.FORBIDDEN_ACTION: 'You do not have permission to change this appointment.',
    ErrorCode.CALENDAR_PROVIDER_UNSUPPORTED: 'That calendar provider is not supported.',
}


class AppointmentError(HTTPException):
    """HTTP error whose detail is the `{error, code}` payload clients map on."""

    def __init__(self, code: ErrorCode, message: str, status_code: int | None = None):
        self.code = code
        self.message = message
        super().__init__(
            status_code=status_code or ERROR_STATUS_CODES[code],
            detail={'error': message, 'code': code.value},
        )


def describe_error(code: str | None, fallback: str = GENERIC_ERROR_MESSAGE) -> str:
    """Return the user-facing message for an error code, matched by code only."""
    if code is None:
        return fallback

    try:
        return ERROR_CODE_MESSAGES.get(ErrorCode(code), fallback)
    except ValueError:
        return fallback
