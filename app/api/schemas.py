"""
Pydantic schemas for request/response validation.
Defines the REST data transfer objects and the WebSocket frame shapes.
"""
from datetime import datetime, timezone
from typing import Annotated, Any, Dict, List, Optional
from pydantic import AfterValidator, BaseModel, Field, ConfigDict, PositiveInt, model_validator
from core.config import settings
from db.models import MessageType, NotificationType, UserRole


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _clean_content(value: str) -> str:
    content = value.strip()
    if not content:
        raise ValueError("Message content cannot be empty")
    if len(content) > settings.message_max_length:
        raise ValueError(f"Message cannot exceed {settings.message_max_length} characters")
    return content


MessageContent = Annotated[str, AfterValidator(_clean_content)]


# User Schemas
class UserSummary(BaseModel):
    """
    Denormalized sender/participant summary embedded in messages and conversations.

    Attributes:
        id: User identifier
        name: Display name (falls back to the email's mailbox part)
        avatar_url: Avatar image URL, if any
        role: Platform role
    """
    id: int = Field(..., description="User identifier")
    name: str = Field(..., description="Display name")
    avatar_url: Optional[str] = Field(None, description="Avatar image URL")
    role: UserRole = Field(..., description="Platform role")


# Message Schemas
class MessageCreate(BaseModel):
    """
    Request schema for sending a message over REST.

    Attachment flows upload the file elsewhere and send its URL as `content`
    with `message_type` IMAGE or FILE.

    Example:
        ```json
        {
            "content": "https://cdn.example.com/uploads/floorplan.pdf",
            "message_type": "FILE"
        }
        ```
    """
    content: MessageContent = Field(..., description="Message text or attachment URL")
    message_type: MessageType = Field(MessageType.TEXT, description="TEXT, IMAGE or FILE")


class MessageResponse(BaseModel):
    """
    A persisted message as broadcast to rooms and returned by REST.

    Attributes:
        id: Message identifier
        conversation_id: Parent conversation (null for task chat)
        task_id: Parent task (null for conversations)
        sender_id: Sender's user ID
        content: Message text or attachment URL
        message_type: TEXT, IMAGE or FILE
        created_at: Creation timestamp (UTC)
        sender: Sender summary
    """
    id: int = Field(..., description="Message identifier")
    conversation_id: Optional[int] = Field(None, description="Parent conversation ID")
    task_id: Optional[int] = Field(None, description="Parent task ID")
    sender_id: int = Field(..., description="Sender's user ID")
    content: str = Field(..., description="Message content")
    message_type: MessageType = Field(..., description="Message type")
    created_at: datetime = Field(..., description="Creation timestamp (UTC)")
    sender: UserSummary = Field(..., description="Sender summary")


class MessageListResponse(BaseModel):
    """Page of a thread's messages, oldest first for display."""
    messages: List[MessageResponse]
    total: int
    page: int
    limit: int
    total_pages: int


# Conversation Schemas
class ConversationCreate(BaseModel):
    """
    Request schema for creating a conversation.

    The caller is always added as a participant, so at least one other
    participant must be listed.

    Example:
        ```json
        {
            "participant_ids": [2],
            "property_id": 15
        }
        ```
    """
    participant_ids: List[PositiveInt] = Field(..., min_length=1, description="Other participants' user IDs")
    property_id: Optional[PositiveInt] = Field(None, description="Property listing the conversation is about")


class ConversationResponse(BaseModel):
    """Response schema for a conversation."""
    id: int = Field(..., description="Conversation identifier")
    property_id: Optional[int] = Field(None, description="Related property listing")
    created_at: datetime = Field(..., description="Creation timestamp (UTC)")
    updated_at: datetime = Field(..., description="Last activity timestamp (UTC)")
    participants: List[UserSummary] = Field(..., description="Conversation participants")


class ConversationListItem(BaseModel):
    """
    Single conversation item in list response.

    Attributes:
        conversation_id: Conversation identifier
        property_id: Related property listing
        participants: Conversation participants
        last_message: Most recent message, if any
        unread_count: Messages from others newer than the caller's last read
        updated_at: Last activity timestamp
    """
    conversation_id: int = Field(..., description="Conversation identifier")
    property_id: Optional[int] = Field(None, description="Related property listing")
    participants: List[UserSummary] = Field(..., description="Conversation participants")
    last_message: Optional[MessageResponse] = Field(None, description="Most recent message")
    unread_count: int = Field(0, description="Unread message count")
    updated_at: datetime = Field(..., description="Last activity timestamp")


class ConversationListResponse(BaseModel):
    """Response schema for conversation list with pagination."""
    items: List[ConversationListItem] = Field(..., description="Conversation items")
    total: int = Field(..., description="Total conversation count")
    limit: int = Field(..., description="Items per page")
    offset: int = Field(..., description="Items skipped")
    has_more: bool = Field(..., description="Whether more pages available")


class ReadReceipt(BaseModel):
    """Payload of `messages_read` events and of the mark-as-read REST response."""
    user_id: int
    conversation_id: int
    read_at: datetime


class OnlineParticipantsResponse(BaseModel):
    """Participants of a conversation that currently hold a live connection."""
    conversation_id: int
    online_user_ids: List[int]


# Notification Schemas
class NotificationResponse(BaseModel):
    """A durable notification record."""
    id: int
    user_id: int
    type: NotificationType
    message: str
    url: str
    task_id: Optional[int] = None
    bid_id: Optional[int] = None
    milestone_id: Optional[int] = None
    is_read: bool
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class NotificationListResponse(BaseModel):
    """Page of a user's notifications, newest first."""
    notifications: List[NotificationResponse]
    total: int
    page: int
    limit: int
    total_pages: int


class MarkAllReadResponse(BaseModel):
    """Result of marking every notification as read."""
    updated: int
    message: str


# WebSocket Frame Schemas
class WSEvent(BaseModel):
    """Server → client frame."""
    type: str = Field(..., description="Event name")
    data: Any = Field(None, description="Event payload")
    timestamp: datetime = Field(default_factory=_utcnow, description="Event timestamp")


class WSError(BaseModel):
    """WebSocket event: Error notification."""
    type: str = Field(default="error", description="Event type")
    message: str = Field(..., description="Human-readable error message")
    code: Optional[str] = Field(None, description="Error code")
    timestamp: datetime = Field(default_factory=_utcnow, description="Event timestamp")


class WSThreadRef(BaseModel):
    """
    WebSocket command referring to one thread
    (join_conversation, join_room, leave_*, mark_as_read, typing_*).
    Exactly one of conversation_id / task_id must be given.
    """
    action: str
    conversation_id: Optional[PositiveInt] = None
    task_id: Optional[PositiveInt] = None

    @model_validator(mode="after")
    def _exactly_one_thread(self):
        if (self.conversation_id is None) == (self.task_id is None):
            raise ValueError("Provide exactly one of conversation_id or task_id")
        return self


class WSSendMessage(WSThreadRef):
    """WebSocket command: send a message to a thread."""
    content: MessageContent
    message_type: MessageType = MessageType.TEXT


def frame(event: str, data: Any = None) -> Dict[str, Any]:
    """Build a JSON-ready server frame."""
    return WSEvent(type=event, data=data).model_dump(mode="json")
