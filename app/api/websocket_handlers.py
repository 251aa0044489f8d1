"""
Per-connection dispatcher for client WebSocket frames.

Each frame is a JSON object whose `action` selects a handler. Handler
failures become `error` frames on the originating socket; the connection
itself stays open.
"""
import json
import logging
from typing import Any, Awaitable, Callable, Dict, Tuple
from pydantic import ValidationError as PydanticValidationError
from api.metrics import websocket_frames_received_total
from api.schemas import WSSendMessage, WSThreadRef
from api.websocket_manager import Connection, ConnectionManager
from db.models import User
from services.errors import PermissionDeniedError, ServiceError, ValidationError
from services.messaging import MessageService
from services.threads import ThreadKind, get_thread_policy

logger = logging.getLogger(__name__)


def thread_of(ref: WSThreadRef) -> Tuple[ThreadKind, int]:
    """Thread kind and id named by a frame."""
    if ref.conversation_id is not None:
        return ThreadKind.CONVERSATION, ref.conversation_id
    return ThreadKind.TASK, ref.task_id


def _validation_message(error: PydanticValidationError) -> str:
    first = error.errors()[0]
    location = ".".join(str(part) for part in first.get("loc", ()))
    return f"{location}: {first['msg']}" if location else first["msg"]


class SocketSession:
    """Handles the frames of one authenticated connection."""

    def __init__(self, connection: Connection, user: User, messages: MessageService, manager: ConnectionManager):
        self.connection = connection
        self.user = user
        self.messages = messages
        self.manager = manager
        self._handlers: Dict[str, Callable[[Dict[str, Any]], Awaitable[None]]] = {
            "join_conversation": self.on_join,
            "join_room": self.on_join,
            "leave_conversation": self.on_leave,
            "leave_room": self.on_leave,
            "send_message": self.on_send_message,
            "mark_as_read": self.on_mark_as_read,
            "typing_start": self.on_typing_start,
            "typing_stop": self.on_typing_stop,
            "pong": self.on_pong,
        }

    async def handle(self, raw: str) -> None:
        """Parse one text frame and run its handler, answering failures with an `error` frame."""
        connection_id = self.connection.id
        self.manager.touch_heartbeat(connection_id)

        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            await self.manager.send_error(connection_id, "Invalid JSON format", "INVALID_JSON")
            return

        if not isinstance(data, dict):
            await self.manager.send_error(connection_id, "Frame must be a JSON object", "INVALID_MESSAGE")
            return

        action = data.get("action")
        handler = self._handlers.get(action) if isinstance(action, str) else None
        if handler is None:
            websocket_frames_received_total.labels(action="unknown").inc()
            await self.manager.send_error(connection_id, f"Unknown action: {action}", "INVALID_ACTION")
            return

        websocket_frames_received_total.labels(action=action).inc()
        try:
            await handler(data)
        except PydanticValidationError as e:
            await self.manager.send_error(connection_id, _validation_message(e), "INVALID_MESSAGE")
        except ServiceError as e:
            await self.manager.send_error(connection_id, e.message, e.code)
        except Exception as e:
            logger.exception(f"Error processing {action} from user {self.user.id}: {e}")
            await self.manager.send_error(connection_id, "Internal server error", "INTERNAL_ERROR")

    async def on_join(self, data: Dict[str, Any]) -> None:
        kind, thread_id = thread_of(WSThreadRef.model_validate(data))
        policy, _ = self.messages.require_participant(self.user.id, kind, thread_id, action="join")

        room = policy.room_key(thread_id)
        self.manager.join(self.connection.id, room)
        await self.manager.send(self.connection.id, "joined_room", {"room": room, **policy.thread_filter(thread_id)})
        logger.info(f"User {self.user.id} joined {room}")

    async def on_leave(self, data: Dict[str, Any]) -> None:
        kind, thread_id = thread_of(WSThreadRef.model_validate(data))
        policy = get_thread_policy(kind)

        room = policy.room_key(thread_id)
        self.manager.leave(self.connection.id, room)
        await self.manager.send(self.connection.id, "left_room", {"room": room, **policy.thread_filter(thread_id)})

    async def on_send_message(self, data: Dict[str, Any]) -> None:
        command = WSSendMessage.model_validate(data)
        kind, thread_id = thread_of(command)
        await self.messages.send_message(self.user, kind, thread_id, command.content, command.message_type)

    async def on_mark_as_read(self, data: Dict[str, Any]) -> None:
        ref = WSThreadRef.model_validate(data)
        if ref.conversation_id is None:
            raise ValidationError("mark_as_read requires conversation_id")
        await self.messages.mark_as_read(self.user, ref.conversation_id, exclude_connection_id=self.connection.id)

    async def on_typing_start(self, data: Dict[str, Any]) -> None:
        await self._relay_typing(data, "user_typing")

    async def on_typing_stop(self, data: Dict[str, Any]) -> None:
        await self._relay_typing(data, "user_stopped_typing")

    async def _relay_typing(self, data: Dict[str, Any], event: str) -> None:
        # Transient: never stored, only relayed to rooms this socket has joined
        kind, thread_id = thread_of(WSThreadRef.model_validate(data))
        policy = get_thread_policy(kind)
        room = policy.room_key(thread_id)
        if not self.manager.is_member(self.connection.id, room):
            raise PermissionDeniedError(f"Join {room} before sending typing events")

        await self.manager.emit_to_room(
            room,
            event,
            {"user_id": self.user.id, **policy.thread_filter(thread_id)},
            exclude_connection_id=self.connection.id
        )

    async def on_pong(self, data: Dict[str, Any]) -> None:
        self.manager.touch_heartbeat(self.connection.id)
