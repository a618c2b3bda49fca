from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    NOT_FOUND = 'not_found'
    ILLEGAL_TRANSITION = 'illegal_transition'
    VALIDATION = 'validation'
    FORBIDDEN = 'forbidden'
    PERSISTENCE = 'persistence'


class MarksError(Exception):
    """Base class for business-rule failures raised by the marks services."""

    kind: ErrorKind = ErrorKind.VALIDATION

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFoundError(MarksError, LookupError):
    kind = ErrorKind.NOT_FOUND


class IllegalTransitionError(MarksError, ValueError):
    """Raised when a guard of the marksheet or batch-job state machine is violated."""

    kind = ErrorKind.ILLEGAL_TRANSITION


class MarksValidationError(MarksError, ValueError):
    kind = ErrorKind.VALIDATION


class PermissionDeniedError(MarksError, PermissionError):
    kind = ErrorKind.FORBIDDEN
