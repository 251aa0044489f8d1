"""Services package initialization."""
from services.errors import (
    ServiceError, ValidationError, NotFoundError, PermissionDeniedError, PersistenceError
)
from services.threads import ThreadKind, get_thread_policy, user_room_key
from services.notifications import LiveNotifier, NotificationService
from services.messaging import MessageService

__all__ = [
    "ServiceError", "ValidationError", "NotFoundError", "PermissionDeniedError", "PersistenceError",
    "ThreadKind", "get_thread_policy", "user_room_key",
    "LiveNotifier", "NotificationService", "MessageService",
]
