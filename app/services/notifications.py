"""
Notification fan-out.

A notification is always written to the store first; only after the commit
succeeds is a live `new_notification` event pushed to the recipient's
personal room. Live delivery is best effort: a missing notifier or a failed
emit is logged and never undoes or blocks the durable record.
"""
import logging
import math
from typing import Any, Optional, Protocol
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from api.metrics import notifications_created_total, notification_delivery_failures_total
from api.schemas import NotificationResponse, NotificationListResponse
from db.models import Notification, NotificationType
from db.repository import Repository
from services.errors import NotFoundError, PermissionDeniedError, PersistenceError

logger = logging.getLogger(__name__)


class LiveNotifier(Protocol):
    """Anything that can push an event to a user's or a room's live connections."""

    async def emit_to_user(self, user_id: int, event: str, payload: Any) -> int:
        ...

    async def emit_to_room(self, room: str, event: str, payload: Any, exclude_connection_id: Optional[str] = None) -> int:
        ...


class NotificationService:
    """Durable notification log with best-effort live delivery."""

    def __init__(self, db: Session, notifier: Optional[LiveNotifier] = None):
        self.db = db
        self.repository = Repository(db)
        self.notifier = notifier

    async def notify(
        self,
        recipient_id: int,
        notification_type: NotificationType,
        message: str,
        url: str,
        task_id: Optional[int] = None,
        bid_id: Optional[int] = None,
        milestone_id: Optional[int] = None
    ) -> Notification:
        """
        Persist a notification, then try to deliver it live.

        Args:
            recipient_id: User receiving the notification
            notification_type: Business event kind
            message: Human-readable text
            url: Frontend link the notification opens
            task_id, bid_id, milestone_id: Related records, if any

        Returns:
            The persisted Notification

        Raises:
            PersistenceError: if the durable write fails (nothing is emitted)
        """
        try:
            notification = self.repository.create_notification(
                user_id=recipient_id,
                notification_type=notification_type,
                message=message,
                url=url,
                task_id=task_id,
                bid_id=bid_id,
                milestone_id=milestone_id
            )
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Failed to persist {notification_type.value} notification for user {recipient_id}: {e}")
            raise PersistenceError("Failed to create notification") from e

        notifications_created_total.labels(type=notification_type.value).inc()
        logger.info(f"Notification {notification.id} ({notification_type.value}) stored for user {recipient_id}")

        await self._deliver(notification)
        return notification

    async def _deliver(self, notification: Notification) -> None:
        if self.notifier is None:
            logger.warning(
                f"No live notifier configured; notification {notification.id} "
                f"for user {notification.user_id} will be picked up on next fetch"
            )
            return

        payload = NotificationResponse.model_validate(notification).model_dump(mode="json")
        try:
            await self.notifier.emit_to_user(notification.user_id, "new_notification", payload)
        except Exception as e:
            notification_delivery_failures_total.inc()
            logger.warning(
                f"Live delivery of notification {notification.id} to user {notification.user_id} failed: {e}"
            )

    def list_notifications(
        self,
        user_id: int,
        is_read: Optional[bool] = None,
        notification_type: Optional[NotificationType] = None,
        page: int = 1,
        limit: int = 10
    ) -> NotificationListResponse:
        """Page through a user's notifications, newest first, optionally filtered."""
        notifications, total = self.repository.list_notifications(
            user_id=user_id,
            is_read=is_read,
            notification_type=notification_type,
            limit=limit,
            offset=(page - 1) * limit
        )
        return NotificationListResponse(
            notifications=[NotificationResponse.model_validate(n) for n in notifications],
            total=total,
            page=page,
            limit=limit,
            total_pages=math.ceil(total / limit)
        )

    def mark_read(self, user_id: int, notification_id: int) -> Notification:
        """
        Mark one notification as read.

        Idempotent: an already-read notification is returned unchanged.

        Raises:
            NotFoundError: no such notification
            PermissionDeniedError: the notification belongs to another user
        """
        notification = self.repository.get_notification_by_id(notification_id)
        if notification is None:
            raise NotFoundError("Notification not found")
        if notification.user_id != user_id:
            raise PermissionDeniedError("You are not authorized to access this notification")
        if notification.is_read:
            return notification

        try:
            return self.repository.mark_notification_read(notification)
        except SQLAlchemyError as e:
            self.db.rollback()
            raise PersistenceError("Failed to update notification") from e

    def mark_all_read(self, user_id: int) -> int:
        """Mark every unread notification of a user as read; returns how many changed."""
        try:
            count = self.repository.mark_all_notifications_read(user_id)
        except SQLAlchemyError as e:
            self.db.rollback()
            raise PersistenceError("Failed to update notifications") from e
        logger.info(f"User {user_id} marked {count} notifications as read")
        return count
