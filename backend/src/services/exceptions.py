"""
Custom exceptions for service layer.

Provides specific exception types for pipeline errors that can be
translated to appropriate HTTP responses or recorded on the affected
event / notification.
"""

from typing import Any, Optional


class ServiceError(Exception):
    """Base exception for service layer errors."""
    pass


class NotFoundError(ServiceError):
    """Raised when a requested resource is not found."""

    def __init__(self, resource: str, identifier: Any):
        self.resource = resource
        self.identifier = identifier
        super().__init__(f"{resource} {identifier} not found")


class ConflictError(ServiceError):
    """Raised when an operation conflicts with existing state."""

    def __init__(self, message: str, current_status: Optional[str] = None):
        self.message = message
        self.current_status = current_status
        super().__init__(message)


class ValidationError(ServiceError):
    """Raised when input validation fails. Never retried."""

    def __init__(self, message: str, field: Optional[str] = None):
        self.message = message
        self.field = field
        super().__init__(message)


class TransientDependencyError(ServiceError):
    """
    Raised when the store or push transport is temporarily unavailable.

    Intake routes the report to the offline queue; delivery schedules a retry.
    """

    def __init__(self, dependency: str, message: str):
        self.dependency = dependency
        self.message = message
        super().__init__(f"{dependency} unavailable: {message}")


class CapacityError(ServiceError):
    """
    Raised when the geofence registry cannot admit a geofence.

    A soft failure: the geofence stays stored and inactive, and no
    higher-priority registration is evicted for it.
    """

    def __init__(self, user_id: str, deferred_guids: list, capacity: int):
        self.user_id = user_id
        self.deferred_guids = list(deferred_guids)
        self.capacity = capacity
        super().__init__(
            f"{len(self.deferred_guids)} geofence(s) deferred; "
            f"user {user_id} is at capacity ({capacity})"
        )


class TerminalDeliveryError(ServiceError):
    """Raised when push delivery retries are exhausted."""

    def __init__(self, notification_guid: str, attempts: int, last_error: Optional[str]):
        self.notification_guid = notification_guid
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"Notification {notification_guid} failed after {attempts} attempts: {last_error}"
        )
