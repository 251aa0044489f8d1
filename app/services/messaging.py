"""
Chat message pipeline shared by task chats and conversations.

Every inbound message goes through the same steps regardless of its
thread kind:

1. payload validation (pydantic, before any store access)
2. thread lookup and participant check
3. insert + thread touch in one commit
4. broadcast of the stored message to the thread's room
5. for task chats, a durable NEW_MESSAGE notification to the other side

Step 5 never fails the send: the message is already stored and broadcast.
"""
import logging
import math
import time
from typing import List, Optional
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from api.metrics import messages_created_total, message_processing_duration_seconds
from api.schemas import (
    UserSummary, MessageResponse, MessageListResponse, ConversationResponse,
    ConversationListItem, ConversationListResponse, ReadReceipt
)
from core.audit_logger import audit_logger
from db.models import Message, MessageType, NotificationType, User, utcnow
from db.repository import Repository
from services.errors import (
    NotFoundError, PermissionDeniedError, PersistenceError, ServiceError, ValidationError
)
from services.notifications import LiveNotifier, NotificationService
from services.threads import Thread, ThreadKind, ThreadPolicy, get_thread_policy, user_room_key

logger = logging.getLogger(__name__)


def summarize_user(user: User) -> UserSummary:
    """Sender/participant summary embedded in outbound payloads."""
    return UserSummary(id=user.id, name=user.display_name, avatar_url=user.avatar_url, role=user.role)


def serialize_message(message: Message, sender: Optional[User] = None) -> MessageResponse:
    """Wire form of a stored message with its sender summary."""
    return MessageResponse(
        id=message.id,
        conversation_id=message.conversation_id,
        task_id=message.task_id,
        sender_id=message.sender_id,
        content=message.content,
        message_type=message.message_type,
        created_at=message.created_at,
        sender=summarize_user(sender or message.sender)
    )


class MessageService:
    """Authorizes, stores and fans out chat messages."""

    def __init__(self, db: Session, notifier: Optional[LiveNotifier] = None):
        self.db = db
        self.repository = Repository(db)
        self.notifier = notifier

    # Authorization
    def require_participant(self, user_id: int, kind: ThreadKind, thread_id: int, action: str = "access"):
        """
        Load a thread and check that the user participates in it.

        Returns:
            (policy, thread)

        Raises:
            NotFoundError: the thread does not exist
            PermissionDeniedError: the user is not a participant
        """
        policy = get_thread_policy(kind)
        thread = policy.load(self.repository, thread_id)
        if thread is None:
            raise NotFoundError(f"{policy.kind.value.capitalize()} not found")

        if not policy.is_participant(self.repository, thread, user_id):
            audit_logger.log_authorization_denied(
                user_id=user_id,
                resource=policy.room_key(thread_id),
                action=action,
                reason="not a participant"
            )
            raise PermissionDeniedError(f"You are not a participant of this {policy.kind.value}")

        return policy, thread

    def authorize_join(self, user_id: int, kind: ThreadKind, thread_id: int) -> bool:
        """Whether the user may join the thread's room. Missing threads are not joinable."""
        try:
            self.require_participant(user_id, kind, thread_id, action="join")
        except (NotFoundError, PermissionDeniedError):
            return False
        return True

    # Sending
    async def send_message(
        self,
        sender: User,
        kind: ThreadKind,
        thread_id: int,
        content: str,
        message_type: MessageType = MessageType.TEXT
    ) -> MessageResponse:
        """
        Store a message and fan it out to the thread's room.

        `content` is expected to be validated already (MessageCreate /
        WSSendMessage); it is only re-checked for emptiness here.

        Raises:
            ValidationError: empty content
            NotFoundError: thread does not exist
            PermissionDeniedError: sender is not a participant
            PersistenceError: the insert or the thread touch failed
        """
        started = time.perf_counter()
        if not content or not content.strip():
            raise ValidationError("Message content cannot be empty")

        policy, thread = self.require_participant(sender.id, kind, thread_id, action="send_message")

        now = utcnow()
        try:
            message = self.repository.create_message(
                sender_id=sender.id,
                content=content,
                message_type=message_type,
                created_at=now,
                **policy.thread_filter(thread_id)
            )
            policy.touch(self.repository, thread_id, now)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Failed to store message in {policy.room_key(thread_id)} from user {sender.id}: {e}")
            raise PersistenceError("Failed to send message") from e

        messages_created_total.labels(thread_kind=policy.kind.value).inc()
        payload = serialize_message(message, sender)
        logger.info(f"Message {message.id} stored in {policy.room_key(thread_id)} by user {sender.id}")

        await self._broadcast(policy, thread_id, payload)

        if policy.notify_on_message:
            await self._notify_participants(policy, thread, sender)

        message_processing_duration_seconds.labels(thread_kind=policy.kind.value).observe(
            time.perf_counter() - started
        )
        return payload

    async def _broadcast(self, policy: ThreadPolicy, thread_id: int, payload: MessageResponse) -> None:
        if self.notifier is None:
            logger.warning(f"No live notifier configured; message {payload.id} not broadcast")
            return
        try:
            await self.notifier.emit_to_room(
                policy.room_key(thread_id), policy.message_event, payload.model_dump(mode="json")
            )
        except Exception as e:
            logger.error(f"Broadcast of message {payload.id} to {policy.room_key(thread_id)} failed: {e}")

    async def _notify_participants(self, policy: ThreadPolicy, thread: Thread, sender: User) -> None:
        description = policy.describe_message(thread, sender)
        if description is None:
            return

        notifications = NotificationService(self.db, self.notifier)
        for recipient_id in policy.participant_ids(self.repository, thread):
            if recipient_id == sender.id:
                continue
            try:
                await notifications.notify(
                    recipient_id=recipient_id,
                    notification_type=NotificationType.NEW_MESSAGE,
                    message=description["message"],
                    url=description["url"],
                    task_id=thread.id if policy.kind == ThreadKind.TASK else None
                )
            except ServiceError as e:
                logger.error(
                    f"Message notification for user {recipient_id} in {policy.room_key(thread.id)} failed: {e.message}"
                )

    # History
    def get_messages(
        self,
        user: User,
        kind: ThreadKind,
        thread_id: int,
        page: int = 1,
        limit: int = 50
    ) -> MessageListResponse:
        """
        Page through a thread's history, newest page first, each page in
        chronological order.

        Fetching a conversation's history also marks it read for the caller.

        Raises:
            PersistenceError: the read position could not be stored
        """
        policy, _ = self.require_participant(user.id, kind, thread_id, action="read_history")

        messages, total = self.repository.get_thread_messages(
            limit=limit,
            offset=(page - 1) * limit,
            **policy.thread_filter(thread_id)
        )

        response = MessageListResponse(
            messages=[serialize_message(m) for m in reversed(messages)],
            total=total,
            page=page,
            limit=limit,
            total_pages=math.ceil(total / limit)
        )

        if policy.kind == ThreadKind.CONVERSATION:
            try:
                self.repository.update_last_read(thread_id, user.id, utcnow())
            except SQLAlchemyError as e:
                self.db.rollback()
                logger.error(f"Failed to update read position of user {user.id} in conversation {thread_id}: {e}")
                raise PersistenceError("Failed to update read position") from e

        return response

    # Read state
    async def mark_as_read(
        self,
        user: User,
        conversation_id: int,
        exclude_connection_id: Optional[str] = None
    ) -> ReadReceipt:
        """
        Move the caller's read position to now and tell the room.

        The `messages_read` event skips the originating socket when
        `exclude_connection_id` is given.
        """
        policy, _ = self.require_participant(user.id, ThreadKind.CONVERSATION, conversation_id, action="mark_as_read")

        read_at = utcnow()
        try:
            self.repository.update_last_read(conversation_id, user.id, read_at)
        except SQLAlchemyError as e:
            self.db.rollback()
            raise PersistenceError("Failed to mark messages as read") from e

        receipt = ReadReceipt(user_id=user.id, conversation_id=conversation_id, read_at=read_at)
        if self.notifier is not None:
            try:
                await self.notifier.emit_to_room(
                    policy.room_key(conversation_id),
                    "messages_read",
                    receipt.model_dump(mode="json"),
                    exclude_connection_id=exclude_connection_id
                )
            except Exception as e:
                logger.error(f"messages_read broadcast for conversation {conversation_id} failed: {e}")
        return receipt

    def unread_count(self, user_id: int, conversation_id: int) -> int:
        """Messages from other participants newer than the user's last read."""
        participant = self.repository.get_participant(conversation_id, user_id)
        if participant is None:
            return 0
        return self.repository.count_unread(conversation_id, user_id, participant.last_read_at)

    # Conversations
    def list_conversations(self, user: User, limit: int = 20, offset: int = 0) -> ConversationListResponse:
        """The caller's conversations, most recently active first, with unread counts."""
        conversations, total = self.repository.list_user_conversations(user.id, limit=limit, offset=offset)

        items: List[ConversationListItem] = []
        for conversation in conversations:
            last_message = self.repository.get_last_message(conversation.id)
            items.append(ConversationListItem(
                conversation_id=conversation.id,
                property_id=conversation.property_id,
                participants=[
                    summarize_user(u) for u in self.repository.get_conversation_participants(conversation.id)
                ],
                last_message=serialize_message(last_message) if last_message else None,
                unread_count=self.unread_count(user.id, conversation.id),
                updated_at=conversation.updated_at
            ))

        return ConversationListResponse(
            items=items,
            total=total,
            limit=limit,
            offset=offset,
            has_more=offset + len(items) < total
        )

    async def create_conversation(
        self,
        creator: User,
        participant_ids: List[int],
        property_id: Optional[int] = None
    ) -> ConversationResponse:
        """
        Open a conversation between the creator and the listed users.

        The other participants get a `new_conversation` event on their
        personal rooms.

        Raises:
            ValidationError: fewer than two distinct participants
            NotFoundError: a listed user does not exist
        """
        unique_ids = [creator.id] + [uid for uid in dict.fromkeys(participant_ids) if uid != creator.id]
        if len(unique_ids) < 2:
            raise ValidationError("A conversation needs at least one other participant")

        users = self.repository.get_users_by_ids(unique_ids)
        found = {u.id for u in users}
        missing = [uid for uid in unique_ids if uid not in found]
        if missing:
            raise NotFoundError(f"Users not found: {missing}")

        try:
            conversation = self.repository.create_conversation(unique_ids, property_id=property_id)
        except SQLAlchemyError as e:
            self.db.rollback()
            raise PersistenceError("Failed to create conversation") from e

        by_id = {u.id: u for u in users}
        response = ConversationResponse(
            id=conversation.id,
            property_id=conversation.property_id,
            created_at=conversation.created_at,
            updated_at=conversation.updated_at,
            participants=[summarize_user(by_id[uid]) for uid in unique_ids]
        )
        logger.info(f"Conversation {conversation.id} created by user {creator.id} with {len(unique_ids)} participants")

        if self.notifier is not None:
            payload = response.model_dump(mode="json")
            for uid in unique_ids[1:]:
                try:
                    await self.notifier.emit_to_room(user_room_key(uid), "new_conversation", payload)
                except Exception as e:
                    logger.error(f"new_conversation delivery to user {uid} failed: {e}")

        return response

    def conversation_participant_ids(self, user: User, conversation_id: int) -> List[int]:
        """Participant IDs of a conversation the caller belongs to."""
        policy, thread = self.require_participant(user.id, ThreadKind.CONVERSATION, conversation_id)
        return policy.participant_ids(self.repository, thread)
