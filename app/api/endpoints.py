"""
API endpoint implementations.
Defines the REST endpoints for conversations, task chat and notifications,
plus the WebSocket endpoint that carries the realtime protocol.
"""
import logging
from typing import Optional
from fastapi import APIRouter, Depends, HTTPException, Query, WebSocket, WebSocketDisconnect, status
from sqlalchemy.orm import Session
from api.dependencies import (
    HandshakeError, extract_token, get_connection_manager, get_current_user, get_db, resolve_identity
)
from api.metrics import websocket_handshake_rejections_total
from api.schemas import (
    ConversationCreate, ConversationResponse, ConversationListResponse,
    MessageCreate, MessageResponse, MessageListResponse, ReadReceipt, OnlineParticipantsResponse,
    NotificationResponse, NotificationListResponse, MarkAllReadResponse
)
from api.websocket_handlers import SocketSession
from api.websocket_manager import ConnectionManager
from core.audit_logger import AuditEventType, audit_logger
from core.logging_config import request_id_var
from db.models import NotificationType, User
from services.errors import ServiceError
from services.messaging import MessageService
from services.notifications import NotificationService
from services.threads import ThreadKind

logger = logging.getLogger(__name__)

# Create routers
conversations_router = APIRouter()
tasks_router = APIRouter()
notifications_router = APIRouter()
websocket_router = APIRouter()


def _http_error(error: ServiceError) -> HTTPException:
    """Map a service-layer error onto the matching HTTP response."""
    return HTTPException(status_code=error.status_code, detail=error.message)


# Conversation Endpoints
@conversations_router.post("", response_model=ConversationResponse, status_code=status.HTTP_201_CREATED)
async def create_conversation(
    request: ConversationCreate,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    manager: ConnectionManager = Depends(get_connection_manager)
):
    """
    Create a new conversation.

    The caller is always a participant; every other listed participant
    receives a live `new_conversation` event on their personal room.

    Args:
        request: Participant IDs and optional property ID
        current_user: Authenticated user (injected)
        db: Database session (injected)
        manager: Live connection manager (injected)

    Returns:
        ConversationResponse: Created conversation with participants

    Raises:
        HTTPException: 400 if no other participant is given
        HTTPException: 404 if a participant does not exist

    Example Request:
        ```json
        {
            "participant_ids": [2],
            "property_id": 15
        }
        ```
    """
    try:
        return await MessageService(db, manager).create_conversation(
            current_user, request.participant_ids, request.property_id
        )
    except ServiceError as e:
        raise _http_error(e) from e


@conversations_router.get("", response_model=ConversationListResponse, status_code=status.HTTP_200_OK)
def list_conversations(
    limit: int = Query(20, ge=1, le=100, description="Maximum items per page"),
    offset: int = Query(0, ge=0, description="Number of items to skip"),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """
    List conversations for the current user with pagination.

    Sorted by last activity descending. Each item carries a last-message
    preview and the caller's unread count.

    Example Response:
        ```json
        {
            "items": [
                {
                    "conversation_id": 1,
                    "property_id": null,
                    "participants": [{"id": 1, "name": "Ana", "avatar_url": null, "role": "CLIENT"}],
                    "last_message": {"id": 10, "content": "Hi!", "...": "..."},
                    "unread_count": 2,
                    "updated_at": "2025-12-02T10:30:00"
                }
            ],
            "total": 1,
            "limit": 20,
            "offset": 0,
            "has_more": false
        }
        ```
    """
    return MessageService(db).list_conversations(current_user, limit=limit, offset=offset)


@conversations_router.get("/{conversation_id}/messages", response_model=MessageListResponse)
def get_conversation_messages(
    conversation_id: int,
    page: int = Query(1, ge=1, description="Page number, 1 is the newest page"),
    limit: int = Query(50, ge=1, le=100, description="Messages per page"),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """
    Get a page of conversation history in chronological order.

    Side effect: marks the conversation read for the caller.
    """
    try:
        return MessageService(db).get_messages(current_user, ThreadKind.CONVERSATION, conversation_id, page, limit)
    except ServiceError as e:
        raise _http_error(e) from e


@conversations_router.post(
    "/{conversation_id}/messages", response_model=MessageResponse, status_code=status.HTTP_201_CREATED
)
async def send_conversation_message(
    conversation_id: int,
    request: MessageCreate,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    manager: ConnectionManager = Depends(get_connection_manager)
):
    """
    Send a message to a conversation over REST.

    Used by attachment flows: the file is uploaded elsewhere and its URL
    sent as `content` with `message_type` IMAGE or FILE. The stored message
    is broadcast to `conversation:<id>` exactly as a socket send would be.

    Raises:
        HTTPException: 403 if the caller is not a participant
        HTTPException: 404 if the conversation does not exist
        HTTPException: 500 if the message could not be stored
    """
    try:
        return await MessageService(db, manager).send_message(
            current_user, ThreadKind.CONVERSATION, conversation_id, request.content, request.message_type
        )
    except ServiceError as e:
        raise _http_error(e) from e


@conversations_router.post("/{conversation_id}/read", response_model=ReadReceipt, status_code=status.HTTP_200_OK)
async def mark_conversation_as_read(
    conversation_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    manager: ConnectionManager = Depends(get_connection_manager)
):
    """
    Mark a conversation as read for the caller.

    Other sockets in `conversation:<id>` receive a `messages_read` event:
        ```json
        {
            "type": "messages_read",
            "data": {"user_id": 5, "conversation_id": 1, "read_at": "2025-12-02T10:30:00"},
            "timestamp": "2025-12-02T10:30:00.123Z"
        }
        ```
    """
    try:
        return await MessageService(db, manager).mark_as_read(current_user, conversation_id)
    except ServiceError as e:
        raise _http_error(e) from e


@conversations_router.get("/{conversation_id}/online", response_model=OnlineParticipantsResponse)
def get_online_participants(
    conversation_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    manager: ConnectionManager = Depends(get_connection_manager)
):
    """Participants of the conversation that currently hold a live connection."""
    try:
        participant_ids = MessageService(db).conversation_participant_ids(current_user, conversation_id)
    except ServiceError as e:
        raise _http_error(e) from e

    return OnlineParticipantsResponse(
        conversation_id=conversation_id,
        online_user_ids=[uid for uid in participant_ids if manager.is_online(uid)]
    )


# Task Chat Endpoints
@tasks_router.get("/{task_id}/messages", response_model=MessageListResponse)
def get_task_messages(
    task_id: int,
    page: int = Query(1, ge=1, description="Page number, 1 is the newest page"),
    limit: int = Query(50, ge=1, le=100, description="Messages per page"),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Get a page of task chat history in chronological order."""
    try:
        return MessageService(db).get_messages(current_user, ThreadKind.TASK, task_id, page, limit)
    except ServiceError as e:
        raise _http_error(e) from e


@tasks_router.post("/{task_id}/messages", response_model=MessageResponse, status_code=status.HTTP_201_CREATED)
async def send_task_message(
    task_id: int,
    request: MessageCreate,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    manager: ConnectionManager = Depends(get_connection_manager)
):
    """
    Send a task chat message over REST.

    Broadcasts `receive_message` to `task:<id>` and stores a NEW_MESSAGE
    notification for the other side of the task.
    """
    try:
        return await MessageService(db, manager).send_message(
            current_user, ThreadKind.TASK, task_id, request.content, request.message_type
        )
    except ServiceError as e:
        raise _http_error(e) from e


# Notification Endpoints
@notifications_router.get("", response_model=NotificationListResponse)
def list_notifications(
    is_read: Optional[bool] = Query(None, description="Filter by read state"),
    notification_type: Optional[NotificationType] = Query(None, alias="type", description="Filter by type"),
    page: int = Query(1, ge=1, description="Page number"),
    limit: int = Query(10, ge=1, le=100, description="Notifications per page"),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """
    List the caller's notifications, newest first.

    Example Request:
        ```
        GET /v1/notifications?is_read=false&type=NEW_MESSAGE&page=1&limit=10
        Authorization: Bearer <token>
        ```
    """
    return NotificationService(db).list_notifications(
        current_user.id, is_read=is_read, notification_type=notification_type, page=page, limit=limit
    )


@notifications_router.patch("/read-all", response_model=MarkAllReadResponse)
def mark_all_notifications_read(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Mark every unread notification of the caller as read."""
    try:
        updated = NotificationService(db).mark_all_read(current_user.id)
    except ServiceError as e:
        raise _http_error(e) from e
    return MarkAllReadResponse(updated=updated, message=f"{updated} notifications marked as read")


@notifications_router.patch("/{notification_id}/read", response_model=NotificationResponse)
def mark_notification_read(
    notification_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """
    Mark one notification as read. Repeating the call is a no-op.

    Raises:
        HTTPException: 403 if the notification belongs to another user
        HTTPException: 404 if the notification does not exist
    """
    try:
        notification = NotificationService(db).mark_read(current_user.id, notification_id)
    except ServiceError as e:
        raise _http_error(e) from e
    return NotificationResponse.model_validate(notification)


# WebSocket Endpoint
@websocket_router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket, db: Session = Depends(get_db)):
    """
    WebSocket endpoint for realtime chat and notifications.

    Connection Flow:
        1. Client connects with a token (Authorization header, `accessToken`
           cookie, or `?token=` query parameter)
        2. Server validates it and accepts or closes the socket (4001/4002)
        3. The socket joins `user:<id>` automatically and receives `connected`
        4. Client joins thread rooms: {"action": "join_conversation", "conversation_id": 1}
        5. Server pushes `new_message` / `receive_message`, `new_notification`,
           `messages_read`, typing events and periodic `ping`s
        6. Client answers pings with {"action": "pong"}

    WebSocket Commands (Client → Server):
        - join_conversation / join_room: {"conversation_id": 1} or {"task_id": 7}
        - leave_conversation / leave_room: same fields
        - send_message: {"task_id": 7, "content": "hello", "message_type": "TEXT"}
        - mark_as_read: {"conversation_id": 1}
        - typing_start / typing_stop: {"conversation_id": 1}
        - pong

    Close Codes:
        - 4001: Authentication failed (reason: no token / invalid token / unauthorized)
        - 4002: Connection limit reached
        - 1000: Normal closure or heartbeat timeout
    """
    ip_address = websocket.client.host if websocket.client else None
    token = extract_token(websocket.headers, websocket.cookies, websocket.query_params)

    try:
        user = resolve_identity(token, db)
    except HandshakeError as e:
        audit_logger.log_handshake_rejected(ip_address, e.reason)
        websocket_handshake_rejections_total.labels(reason=e.reason).inc()
        logger.warning(f"WebSocket handshake rejected from {ip_address}: {e.reason}")
        await websocket.close(code=4001, reason=e.reason)
        return

    manager: ConnectionManager = websocket.app.state.connection_manager
    connection = await manager.connect(websocket, user.id, user.role.value)
    if connection is None:
        audit_logger.log_connection_limit(user.id, ip_address, manager.max_connections_per_user)
        websocket_handshake_rejections_total.labels(reason="connection limit").inc()
        await websocket.close(code=4002, reason="Connection limit reached")
        return

    request_id_var.set(connection.id)
    audit_logger.log_event(
        event_type=AuditEventType.HANDSHAKE_ACCEPTED,
        user_id=user.id,
        ip_address=ip_address,
        success=True,
        metadata={"connection_id": connection.id}
    )

    session = SocketSession(connection, user, MessageService(db, manager), manager)
    try:
        await manager.send(connection.id, "connected", {
            "connection_id": connection.id,
            "user_id": user.id,
            "role": user.role.value
        })

        while True:
            raw = await websocket.receive_text()
            await session.handle(raw)

    except WebSocketDisconnect:
        logger.info(f"User {user.id} disconnected from WebSocket ({connection.id})")
    except Exception as e:
        logger.error(f"WebSocket error for user {user.id}: {e}")
    finally:
        manager.disconnect(connection.id)
