"""
Tests for notification fan-out and read-state operations.
"""
from unittest.mock import AsyncMock
import pytest
from sqlalchemy.exc import OperationalError
from db.models import Notification, NotificationType
from services.errors import NotFoundError, PermissionDeniedError, PersistenceError
from services.notifications import NotificationService


async def _notify(service, user, notification_type=NotificationType.NEW_BID, **kwargs):
    return await service.notify(
        recipient_id=user.id,
        notification_type=notification_type,
        message=kwargs.pop("message", "You received a new bid"),
        url=kwargs.pop("url", "/dashboard/projects/1"),
        **kwargs
    )


class TestNotify:
    """Persist first, then best-effort live delivery."""

    @pytest.mark.asyncio
    async def test_notification_persists_when_live_delivery_fails(self, test_db, users):
        notifier = AsyncMock()
        notifier.emit_to_user.side_effect = RuntimeError("socket layer down")
        service = NotificationService(test_db, notifier)

        notification = await _notify(service, users["client"], task_id=1)

        stored = test_db.query(Notification).filter_by(id=notification.id).one()
        assert stored.user_id == users["client"].id
        assert stored.type == NotificationType.NEW_BID
        assert stored.task_id == 1
        assert stored.is_read is False
        notifier.emit_to_user.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_notification_persists_without_notifier(self, test_db, users):
        notification = await _notify(NotificationService(test_db), users["client"])

        assert test_db.query(Notification).filter_by(id=notification.id).count() == 1

    @pytest.mark.asyncio
    async def test_live_event_reaches_every_connection_of_recipient(
        self, test_db, users, connection_manager, fake_socket, frames_of
    ):
        laptop, phone = fake_socket(), fake_socket()
        connection_manager.register(laptop, users["freelancer"].id)
        connection_manager.register(phone, users["freelancer"].id)
        bystander = fake_socket()
        connection_manager.register(bystander, users["client"].id)

        notification = await _notify(
            NotificationService(test_db, connection_manager),
            users["freelancer"],
            NotificationType.MILESTONE_APPROVED,
            message="Milestone approved",
            milestone_id=12
        )

        for ws in (laptop, phone):
            frame = frames_of(ws)[0]
            assert frame["type"] == "new_notification"
            assert frame["data"]["id"] == notification.id
            assert frame["data"]["type"] == "MILESTONE_APPROVED"
            assert frame["data"]["milestone_id"] == 12
        bystander.send_json.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_store_failure_raises_and_skips_delivery(self, test_db, users, monkeypatch):
        notifier = AsyncMock()
        service = NotificationService(test_db, notifier)

        def broken_create(**kwargs):
            raise OperationalError("INSERT", {}, Exception("database is locked"))

        monkeypatch.setattr(service.repository, "create_notification", broken_create)

        with pytest.raises(PersistenceError):
            await _notify(service, users["client"])
        notifier.emit_to_user.assert_not_awaited()


class TestReadState:
    """markRead / markAllRead."""

    @pytest.mark.asyncio
    async def test_mark_read_is_idempotent(self, test_db, users):
        service = NotificationService(test_db)
        notification = await _notify(service, users["client"])

        first = service.mark_read(users["client"].id, notification.id)
        second = service.mark_read(users["client"].id, notification.id)

        assert first.is_read is True
        assert second.is_read is True

    @pytest.mark.asyncio
    async def test_mark_read_of_someone_elses_notification(self, test_db, users):
        service = NotificationService(test_db)
        notification = await _notify(service, users["client"])

        with pytest.raises(PermissionDeniedError):
            service.mark_read(users["freelancer"].id, notification.id)

        test_db.refresh(notification)
        assert notification.is_read is False

    def test_mark_read_missing_notification(self, test_db, users):
        with pytest.raises(NotFoundError):
            NotificationService(test_db).mark_read(users["client"].id, 999)

    @pytest.mark.asyncio
    async def test_mark_all_read_only_touches_own_unread(self, test_db, users):
        service = NotificationService(test_db)
        for _ in range(3):
            await _notify(service, users["client"])
        already_read = await _notify(service, users["client"])
        service.mark_read(users["client"].id, already_read.id)
        others = await _notify(service, users["freelancer"])

        assert service.mark_all_read(users["client"].id) == 3
        assert service.mark_all_read(users["client"].id) == 0

        test_db.refresh(others)
        assert others.is_read is False


class TestListing:
    """Filtered, paginated listing."""

    @pytest.mark.asyncio
    async def test_filters_and_pagination(self, test_db, users):
        service = NotificationService(test_db)
        client = users["client"]
        for _ in range(4):
            await _notify(service, client, NotificationType.NEW_MESSAGE)
        bid = await _notify(service, client, NotificationType.NEW_BID)
        service.mark_read(client.id, bid.id)
        await _notify(service, users["freelancer"], NotificationType.NEW_MESSAGE)

        page = service.list_notifications(client.id, page=1, limit=2)
        assert page.total == 5
        assert page.total_pages == 3
        assert len(page.notifications) == 2
        assert all(n.user_id == client.id for n in page.notifications)

        unread = service.list_notifications(client.id, is_read=False)
        assert unread.total == 4

        bids = service.list_notifications(client.id, notification_type=NotificationType.NEW_BID)
        assert [n.id for n in bids.notifications] == [bid.id]

        empty = service.list_notifications(client.id, is_read=True, notification_type=NotificationType.NEW_MESSAGE)
        assert empty.total == 0
        assert empty.total_pages == 0

    @pytest.mark.asyncio
    async def test_newest_first(self, test_db, users):
        service = NotificationService(test_db)
        first = await _notify(service, users["client"])
        second = await _notify(service, users["client"])

        listed = service.list_notifications(users["client"].id)
        assert [n.id for n in listed.notifications] == [second.id, first.id]
