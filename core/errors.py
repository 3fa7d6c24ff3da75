# core/errors.py
"""
Exception hierarchy for the review verification service
"""

from typing import Any, Dict, Optional


class ReviewSystemError(Exception):
    """Base error carrying a machine-readable code and an HTTP status"""

    code = 'INTERNAL_SERVER_ERROR'
    status_code = 500

    def __init__(self, message: str, code: Optional[str] = None,
                 status_code: Optional[int] = None, details: Any = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        if status_code is not None:
            self.status_code = status_code
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        payload = {'success': False, 'error': self.code, 'message': self.message}
        if self.details is not None:
            payload['details'] = self.details
        return payload


class ValidationError(ReviewSystemError):
    code = 'VALIDATION_ERROR'
    status_code = 400


class SpamDetectedError(ValidationError):
    code = 'SPAM_DETECTED'


class VerificationError(ReviewSystemError):
    code = 'VERIFICATION_FAILED'
    status_code = 400


class TokenError(VerificationError):
    code = 'INVALID_TOKEN'


class TransitionError(ReviewSystemError):
    code = 'INVALID_TRANSITION'
    status_code = 400


class NotFoundError(ReviewSystemError):
    code = 'NOT_FOUND'
    status_code = 404


class StorageError(ReviewSystemError):
    code = 'STORAGE_ERROR'


class CorruptFileError(StorageError):
    code = 'CORRUPT_FILE'


class EmailSenderError(ReviewSystemError):
    code = 'EMAIL_SEND_FAILED'
    status_code = 502


class EmailTransportError(EmailSenderError):
    """Raised when the email provider rejects or cannot be reached"""

    def __init__(self, message: str, status: Optional[int] = None, retryable: bool = False):
        super().__init__(message)
        self.status = status
        self.retryable = retryable


class InvalidSortFieldError(ValidationError):
    code = 'INVALID_SORT_FIELD'
