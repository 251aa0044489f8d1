"""
Unit tests for database models.
Tests constraints, defaults and derived properties.
"""
import pytest
from sqlalchemy.exc import IntegrityError
from db.models import (
    User, UserRole, Message, MessageType, Notification, NotificationType, ConversationParticipant
)


class TestUserModel:
    """Tests for User model."""

    def test_display_name_prefers_name(self, users):
        assert users["client"].display_name == "Ana Client"

    def test_display_name_falls_back_to_email(self, users):
        assert users["outsider"].display_name == "carla"

    def test_defaults(self, test_db):
        user = User(email="eva@example.com")
        test_db.add(user)
        test_db.commit()

        assert user.role == UserRole.CLIENT
        assert user.is_suspended is False
        assert user.created_at is not None


class TestMessageModel:
    """Tests for Message model."""

    def test_message_in_conversation(self, test_db, users, conversation):
        message = Message(conversation_id=conversation.id, sender_id=users["client"].id, content="Hi")
        test_db.add(message)
        test_db.commit()

        assert message.id is not None
        assert message.message_type == MessageType.TEXT
        assert message.task_id is None
        assert message.sender.id == users["client"].id

    def test_message_needs_exactly_one_thread(self, test_db, users, conversation, task):
        both = Message(
            conversation_id=conversation.id, task_id=task.id, sender_id=users["client"].id, content="x"
        )
        test_db.add(both)
        with pytest.raises(IntegrityError):
            test_db.commit()
        test_db.rollback()

        neither = Message(sender_id=users["client"].id, content="x")
        test_db.add(neither)
        with pytest.raises(IntegrityError):
            test_db.commit()
        test_db.rollback()


class TestConversationParticipantModel:
    """Tests for ConversationParticipant model."""

    def test_participant_is_unique_per_conversation(self, test_db, users, conversation):
        test_db.add(ConversationParticipant(conversation_id=conversation.id, user_id=users["client"].id))
        with pytest.raises(IntegrityError):
            test_db.commit()
        test_db.rollback()

    def test_new_participant_has_no_read_position(self, test_db, users, conversation):
        participant = test_db.query(ConversationParticipant).filter_by(
            conversation_id=conversation.id, user_id=users["freelancer"].id
        ).one()
        assert participant.last_read_at is None


class TestNotificationModel:
    """Tests for Notification model."""

    def test_notification_defaults_to_unread(self, test_db, users):
        notification = Notification(
            user_id=users["client"].id,
            type=NotificationType.BID_ACCEPTED,
            message="Your bid was accepted",
            url="/dashboard/bids/3",
            bid_id=3
        )
        test_db.add(notification)
        test_db.commit()

        assert notification.is_read is False
        assert notification.created_at is not None
        assert notification.task_id is None
