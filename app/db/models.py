"""
SQLAlchemy ORM models for the realtime chat and notification layer.
Defines all entities: User, Task, Conversation, ConversationParticipant,
Message, Notification.

User and Task are owned by the marketplace's CRUD services; this layer only
reads them (identity, suspension state, task participants).
"""
import enum
from datetime import datetime, timezone
from sqlalchemy import (
    Column, String, Integer, DateTime, ForeignKey, Text, Boolean,
    Enum as SQLEnum, UniqueConstraint, CheckConstraint, Index
)
from sqlalchemy.orm import relationship
from db.database import Base


def utcnow() -> datetime:
    """Naive UTC timestamp (stored without tz so SQLite and PostgreSQL compare alike)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# ENUM Types
class UserRole(str, enum.Enum):
    """Role of a platform user."""
    CLIENT = "CLIENT"
    FREELANCER = "FREELANCER"
    AGENT = "AGENT"
    ADMIN = "ADMIN"


class MessageType(str, enum.Enum):
    """Kind of content carried by a message."""
    TEXT = "TEXT"
    IMAGE = "IMAGE"
    FILE = "FILE"


class NotificationType(str, enum.Enum):
    """Business events a user can be notified about."""
    NEW_BID = "NEW_BID"
    BID_ACCEPTED = "BID_ACCEPTED"
    MILESTONE_CREATED = "MILESTONE_CREATED"
    MILESTONE_SUBMITTED = "MILESTONE_SUBMITTED"
    MILESTONE_APPROVED = "MILESTONE_APPROVED"
    REVISION_REQUESTED = "REVISION_REQUESTED"
    PAYMENT_SUCCEEDED = "PAYMENT_SUCCEEDED"
    TASK_CANCELLED = "TASK_CANCELLED"
    NEW_MESSAGE = "NEW_MESSAGE"
    EMAIL_VERIFIED = "EMAIL_VERIFIED"
    PASSWORD_RESET = "PASSWORD_RESET"
    STRIPE_ACCOUNT_UPDATED = "STRIPE_ACCOUNT_UPDATED"


# Models
class User(Base):
    """User entity - minimal projection of a platform account."""
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    email = Column(String(255), unique=True, nullable=False, index=True)
    name = Column(String(100), nullable=True)
    avatar_url = Column(String(500), nullable=True)
    role = Column(SQLEnum(UserRole), default=UserRole.CLIENT, nullable=False)
    is_suspended = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    # Relationships
    conversation_participations = relationship("ConversationParticipant", back_populates="user")
    messages = relationship("Message", back_populates="sender")

    @property
    def display_name(self) -> str:
        """Name shown to other users; falls back to the mailbox part of the email."""
        return self.name or self.email.split("@")[0]


class Task(Base):
    """Task entity - a marketplace job shared by a client and (once hired) a freelancer."""
    __tablename__ = "tasks"

    id = Column(Integer, primary_key=True, autoincrement=True)
    title = Column(String(200), nullable=False)
    client_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    freelancer_id = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, nullable=False)


class Conversation(Base):
    """Conversation entity - a direct thread, optionally about a property listing."""
    __tablename__ = "conversations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    property_id = Column(Integer, nullable=True, index=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, nullable=False, index=True)

    # Relationships
    participants = relationship("ConversationParticipant", back_populates="conversation")
    messages = relationship("Message", back_populates="conversation")


class ConversationParticipant(Base):
    """Membership of a user in a conversation, with their read position."""
    __tablename__ = "conversation_participants"
    __table_args__ = (
        UniqueConstraint("conversation_id", "user_id", name="uq_conversation_participant"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    conversation_id = Column(Integer, ForeignKey("conversations.id"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    last_read_at = Column(DateTime, nullable=True)
    joined_at = Column(DateTime, default=utcnow, nullable=False)

    # Relationships
    conversation = relationship("Conversation", back_populates="participants")
    user = relationship("User", back_populates="conversation_participations")


class Message(Base):
    """Message entity - append-only, belongs to exactly one conversation or task."""
    __tablename__ = "messages"
    __table_args__ = (
        CheckConstraint(
            "(conversation_id IS NULL) != (task_id IS NULL)",
            name="ck_message_single_thread"
        ),
        Index("ix_messages_conversation_created", "conversation_id", "created_at"),
        Index("ix_messages_task_created", "task_id", "created_at"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    conversation_id = Column(Integer, ForeignKey("conversations.id"), nullable=True)
    task_id = Column(Integer, ForeignKey("tasks.id"), nullable=True)
    sender_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    content = Column(Text, nullable=False)
    message_type = Column(SQLEnum(MessageType), default=MessageType.TEXT, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    # Relationships
    conversation = relationship("Conversation", back_populates="messages")
    sender = relationship("User", back_populates="messages")


class Notification(Base):
    """Durable notification record - one recipient, append-only apart from is_read."""
    __tablename__ = "notifications"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    type = Column(SQLEnum(NotificationType), nullable=False)
    message = Column(Text, nullable=False)
    url = Column(String(500), nullable=False)
    task_id = Column(Integer, nullable=True)
    bid_id = Column(Integer, nullable=True)
    milestone_id = Column(Integer, nullable=True)
    is_read = Column(Boolean, default=False, nullable=False, index=True)
    created_at = Column(DateTime, default=utcnow, nullable=False, index=True)
