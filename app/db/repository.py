"""
Repository layer for database operations.
Provides high-level methods for the queries the realtime layer needs.
"""
from datetime import datetime
from typing import List, Optional, Tuple
from sqlalchemy import func
from sqlalchemy.orm import Session, joinedload
from db.models import (
    User, Task, Conversation, ConversationParticipant, Message, Notification,
    MessageType, NotificationType, utcnow
)

# Lower bound used as lastReadAt for participants who never opened a thread
EPOCH = datetime(1970, 1, 1)


class Repository:
    """Repository class for database operations."""

    def __init__(self, db: Session):
        """
        Initialize repository with database session.

        Args:
            db: SQLAlchemy database session
        """
        self.db = db

    # User operations
    def get_user_by_id(self, user_id: int) -> Optional[User]:
        """Get user by ID."""
        return self.db.query(User).filter(User.id == user_id).first()

    def get_users_by_ids(self, user_ids: List[int]) -> List[User]:
        """Get all users whose id is in user_ids."""
        if not user_ids:
            return []
        return self.db.query(User).filter(User.id.in_(user_ids)).all()

    # Task operations
    def get_task_by_id(self, task_id: int) -> Optional[Task]:
        """Get task by ID, reloading its columns even if the session already holds it."""
        return self.db.query(Task).populate_existing().filter(Task.id == task_id).first()

    def touch_task(self, task_id: int, when: datetime) -> None:
        """Bump the task's updated_at. Caller commits."""
        self.db.query(Task).filter(Task.id == task_id).update(
            {"updated_at": when}, synchronize_session=False
        )

    # Conversation operations
    def create_conversation(self, participant_ids: List[int], property_id: Optional[int] = None) -> Conversation:
        """Create a conversation and one participant row per user in a single commit."""
        conversation = Conversation(property_id=property_id)
        self.db.add(conversation)
        self.db.flush()

        for user_id in participant_ids:
            self.db.add(ConversationParticipant(conversation_id=conversation.id, user_id=user_id))

        self.db.commit()
        self.db.refresh(conversation)
        return conversation

    def get_conversation_by_id(self, conversation_id: int) -> Optional[Conversation]:
        """Get conversation by ID, reloading its columns even if the session already holds it."""
        return self.db.query(Conversation).populate_existing().filter(
            Conversation.id == conversation_id
        ).first()

    def touch_conversation(self, conversation_id: int, when: datetime) -> None:
        """Bump the conversation's updated_at so it sorts first. Caller commits."""
        self.db.query(Conversation).filter(Conversation.id == conversation_id).update(
            {"updated_at": when}, synchronize_session=False
        )

    def get_participant(self, conversation_id: int, user_id: int) -> Optional[ConversationParticipant]:
        """Get a user's participant row for a conversation."""
        return self.db.query(ConversationParticipant).filter(
            ConversationParticipant.conversation_id == conversation_id,
            ConversationParticipant.user_id == user_id
        ).first()

    def is_conversation_participant(self, conversation_id: int, user_id: int) -> bool:
        """Check if user is a participant of conversation."""
        return self.get_participant(conversation_id, user_id) is not None

    def get_conversation_participant_ids(self, conversation_id: int) -> List[int]:
        """Get the user ids of every participant of a conversation."""
        rows = self.db.query(ConversationParticipant.user_id).filter(
            ConversationParticipant.conversation_id == conversation_id
        ).all()
        return [row.user_id for row in rows]

    def get_conversation_participants(self, conversation_id: int) -> List[User]:
        """Get all participating users of a conversation."""
        return self.db.query(User).join(ConversationParticipant).filter(
            ConversationParticipant.conversation_id == conversation_id
        ).all()

    def list_user_conversations(self, user_id: int, limit: int = 20, offset: int = 0) -> Tuple[List[Conversation], int]:
        """
        List conversations the user participates in, most recently active first.

        Returns:
            (page of conversations, total count)
        """
        query = self.db.query(Conversation).join(ConversationParticipant).filter(
            ConversationParticipant.user_id == user_id
        )
        total = query.count()
        conversations = query.order_by(
            Conversation.updated_at.desc(), Conversation.id.desc()
        ).limit(limit).offset(offset).all()
        return conversations, total

    def update_last_read(self, conversation_id: int, user_id: int, read_at: datetime) -> Optional[ConversationParticipant]:
        """Set a participant's last_read_at and commit. Returns None when the user is not a participant."""
        participant = self.get_participant(conversation_id, user_id)
        if participant is None:
            return None
        participant.last_read_at = read_at
        self.db.commit()
        self.db.refresh(participant)
        return participant

    def count_unread(self, conversation_id: int, user_id: int, since: Optional[datetime]) -> int:
        """Count messages from other senders created strictly after `since`."""
        return self.db.query(func.count(Message.id)).filter(
            Message.conversation_id == conversation_id,
            Message.sender_id != user_id,
            Message.created_at > (since or EPOCH)
        ).scalar()

    # Message operations
    def create_message(
        self,
        sender_id: int,
        content: str,
        message_type: MessageType = MessageType.TEXT,
        conversation_id: Optional[int] = None,
        task_id: Optional[int] = None,
        created_at: Optional[datetime] = None
    ) -> Message:
        """
        Stage a new message.

        Note: Does NOT commit - the caller bumps the parent thread and commits
        both changes together.
        """
        message = Message(
            conversation_id=conversation_id,
            task_id=task_id,
            sender_id=sender_id,
            content=content,
            message_type=message_type,
            created_at=created_at or utcnow()
        )
        self.db.add(message)
        self.db.flush()
        return message

    def get_thread_messages(
        self,
        conversation_id: Optional[int] = None,
        task_id: Optional[int] = None,
        limit: int = 50,
        offset: int = 0
    ) -> Tuple[List[Message], int]:
        """
        Get a page of a thread's messages, newest first (id breaks timestamp ties).

        Returns:
            (page of messages, total message count of the thread)
        """
        query = self.db.query(Message)
        if conversation_id is not None:
            query = query.filter(Message.conversation_id == conversation_id)
        else:
            query = query.filter(Message.task_id == task_id)

        total = query.count()
        messages = query.options(joinedload(Message.sender)).order_by(
            Message.created_at.desc(), Message.id.desc()
        ).limit(limit).offset(offset).all()
        return messages, total

    def get_last_message(self, conversation_id: int) -> Optional[Message]:
        """Get the most recent message of a conversation."""
        return self.db.query(Message).options(joinedload(Message.sender)).filter(
            Message.conversation_id == conversation_id
        ).order_by(Message.created_at.desc(), Message.id.desc()).first()

    # Notification operations
    def create_notification(
        self,
        user_id: int,
        notification_type: NotificationType,
        message: str,
        url: str,
        task_id: Optional[int] = None,
        bid_id: Optional[int] = None,
        milestone_id: Optional[int] = None
    ) -> Notification:
        """Create and commit a notification record."""
        notification = Notification(
            user_id=user_id,
            type=notification_type,
            message=message,
            url=url,
            task_id=task_id,
            bid_id=bid_id,
            milestone_id=milestone_id,
            is_read=False
        )
        self.db.add(notification)
        self.db.commit()
        self.db.refresh(notification)
        return notification

    def get_notification_by_id(self, notification_id: int) -> Optional[Notification]:
        """Get notification by ID."""
        return self.db.query(Notification).filter(Notification.id == notification_id).first()

    def mark_notification_read(self, notification: Notification) -> Notification:
        """Flip a notification to read and commit."""
        notification.is_read = True
        self.db.commit()
        self.db.refresh(notification)
        return notification

    def mark_all_notifications_read(self, user_id: int) -> int:
        """
        Mark every unread notification of a user as read.

        Returns:
            Number of notifications updated
        """
        updated_count = self.db.query(Notification).filter(
            Notification.user_id == user_id,
            Notification.is_read.is_(False)
        ).update({"is_read": True}, synchronize_session=False)

        self.db.commit()
        return updated_count

    def list_notifications(
        self,
        user_id: int,
        is_read: Optional[bool] = None,
        notification_type: Optional[NotificationType] = None,
        limit: int = 10,
        offset: int = 0
    ) -> Tuple[List[Notification], int]:
        """
        Get a page of a user's notifications, newest first.

        Returns:
            (page of notifications, total matching count)
        """
        query = self.db.query(Notification).filter(Notification.user_id == user_id)
        if is_read is not None:
            query = query.filter(Notification.is_read.is_(is_read))
        if notification_type is not None:
            query = query.filter(Notification.type == notification_type)

        total = query.count()
        notifications = query.order_by(
            Notification.created_at.desc(), Notification.id.desc()
        ).limit(limit).offset(offset).all()
        return notifications, total
