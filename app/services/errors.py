"""
Service-layer exceptions.

Each error carries the HTTP status used by the REST routes and the code sent
in socket `error` frames, so both entry points report failures the same way.
"""
from fastapi import status


class ServiceError(Exception):
    """Base class for failures raised by the chat and notification services."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    code = "INTERNAL_ERROR"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(ServiceError):
    """Malformed payload; raised before any store access."""

    status_code = status.HTTP_400_BAD_REQUEST
    code = "INVALID_MESSAGE"


class NotFoundError(ServiceError):
    """Referenced thread or record does not exist."""

    status_code = status.HTTP_404_NOT_FOUND
    code = "NOT_FOUND"


class PermissionDeniedError(ServiceError):
    """User is not a participant of the thread or does not own the record."""

    status_code = status.HTTP_403_FORBIDDEN
    code = "FORBIDDEN"


class PersistenceError(ServiceError):
    """The store rejected or could not complete a write."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    code = "INTERNAL_ERROR"
