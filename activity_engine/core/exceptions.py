"""
Custom exceptions for the activity engine

This module contains all custom exceptions used throughout the engine. The API
layer maps each class to an HTTP status code (see ``api/main.py``).
"""


class ActivityEngineException(Exception):
    """Base exception for all activity engine exceptions"""

    code = "internal_error"


class ConfigurationError(ActivityEngineException):
    """Raised when there's a configuration error"""

    code = "configuration_error"


class ValidationError(ActivityEngineException):
    """Raised when input is malformed. Never retried."""

    code = "validation_error"


class InvalidCodeError(ValidationError):
    """Raised when an enrollment code is unknown, cleared or expired"""

    code = "invalid_code"


class NotFoundError(ActivityEngineException):
    """Raised when an entity does not exist"""

    code = "not_found"


class ActivityNotFoundError(NotFoundError):
    code = "activity_not_found"


class StudentNotFoundError(NotFoundError):
    code = "student_not_found"


class ClassroomNotFoundError(NotFoundError):
    code = "classroom_not_found"


class AttemptNotFoundError(NotFoundError):
    code = "attempt_not_found"


class NotEnrolledError(NotFoundError):
    """Raised when unenrolling a student without an active enrollment"""

    code = "not_enrolled"


class AuthorizationError(ActivityEngineException):
    """Raised when the session may not act on the target entity"""

    code = "not_authorized"


class ConflictError(ActivityEngineException):
    """Raised when an operation collides with already-recorded state"""

    code = "conflict"


class AlreadyGradedError(ConflictError):
    code = "already_graded"


class AlreadyAppliedError(ConflictError):
    code = "already_applied"


class AlreadyEnrolledError(ConflictError):
    code = "already_enrolled"


class StaleTransitionError(ConflictError):
    """Raised when a review transition arrives after a newer one was applied"""

    code = "stale_transition"


class TransientExternalError(ActivityEngineException):
    """Feedback generator timeout, rate limit or 5xx. Retried."""

    code = "external_unavailable"


class TerminalExternalError(ActivityEngineException):
    """Feedback generator rejected the request structurally. Not retried."""

    code = "external_rejected"
