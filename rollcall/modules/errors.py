"""
Error Taxonomy - Rollcall QR Attendance

Every failure a manager can report is one of the exceptions below. Managers
raise them; the HTTP layer catches them at the action boundary and turns them
into a user-facing message with the matching status code.
"""

from typing import Any, Dict, Optional


class AttendanceError(Exception):
    """Base class for all application errors."""

    status_code = 500
    error_type = 'system_error'
    default_message = 'An unexpected error occurred'

    def __init__(self, message: Optional[str] = None, **details: Any):
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        payload = {
            'success': False,
            'message': self.message,
            'error_type': self.error_type
        }
        if self.details:
            payload['details'] = self.details
        return payload


class AuthenticationError(AttendanceError):
    status_code = 401
    error_type = 'authentication_error'
    default_message = 'Please log in first.'


class PermissionDeniedError(AttendanceError):
    status_code = 403
    error_type = 'permission_denied'
    default_message = 'You do not have permission to perform this action.'


class NotFoundError(AttendanceError):
    status_code = 404
    error_type = 'not_found'
    default_message = 'The requested record was not found.'


class InvalidTokenError(AttendanceError):
    """The scanned text is malformed or names no session."""

    status_code = 400
    error_type = 'invalid_token'
    default_message = 'Invalid QR Code'


class ExpiredTokenError(AttendanceError):
    """The scanned token names a session whose window has closed."""

    status_code = 410
    error_type = 'expired_token'
    default_message = 'This QR Code has expired. Ask your teacher for a new one.'


class ConflictError(AttendanceError):
    """A uniqueness constraint in the store rejected an insert."""

    status_code = 409
    error_type = 'conflict'
    default_message = 'This record already exists.'


class AlreadyEnrolledError(ConflictError):
    error_type = 'already_enrolled'
    default_message = 'You are already enrolled in this class!'


class ValidationError(AttendanceError):
    status_code = 400
    error_type = 'validation_error'
    default_message = 'Invalid input.'


class BackendError(AttendanceError):
    """Network, permission or other failure reported by the store."""

    status_code = 502
    error_type = 'backend_error'
    default_message = 'The attendance service is unavailable. Please try again.'
