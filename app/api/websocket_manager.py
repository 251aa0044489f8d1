"""
WebSocket Connection Manager for realtime chat and notifications.

Tracks live connections per user and room membership per connection, and
fans events out to every socket in a room. One instance is created by the
application lifespan and shared through `app.state`; services reach it only
through the emit methods.
"""
import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Set
from uuid import uuid4
from fastapi import WebSocket
from api.metrics import (
    websocket_connections_total, websocket_disconnections_total,
    websocket_frames_sent_total, update_websocket_metrics
)
from api.schemas import WSError, frame
from db.models import utcnow
from services.threads import user_room_key

logger = logging.getLogger(__name__)


@dataclass
class Connection:
    """One authenticated socket and the identity it was opened with."""
    id: str
    user_id: int
    role: str
    websocket: WebSocket
    connected_at: datetime = field(default_factory=utcnow)


class ConnectionManager:
    """
    Registry of live connections and the rooms they have joined.

    Features:
    - Multiple connections per user (tabs/devices), capped per user
    - Every connection joins its user's personal room on connect
    - Room broadcast with optional exclusion of the originating socket
    - Sockets that fail a send are dropped from every room
    - Heartbeat bookkeeping for the stale-connection sweep

    All mutation happens on the event loop thread; there are no awaits
    between reading and updating the membership maps.
    """

    def __init__(self, max_connections_per_user: int = 5):
        self.max_connections_per_user = max_connections_per_user

        # {connection_id: Connection}
        self.connections: Dict[str, Connection] = {}

        # {user_id: Set[connection_id]}
        self.user_connections: Dict[int, Set[str]] = defaultdict(set)

        # {room_key: Set[connection_id]}
        self.rooms: Dict[str, Set[str]] = defaultdict(set)

        # {connection_id: Set[room_key]} - reverse index for cleanup
        self.connection_rooms: Dict[str, Set[str]] = defaultdict(set)

        # {connection_id: datetime} - last pong (or connect) time
        self.last_heartbeat: Dict[str, datetime] = {}

        logger.info(f"ConnectionManager initialized (max {max_connections_per_user} connections per user)")

    # Connection lifecycle
    def can_accept(self, user_id: int) -> bool:
        """Whether the user is below the per-user connection cap."""
        return len(self.user_connections.get(user_id, ())) < self.max_connections_per_user

    def register(
        self,
        websocket: WebSocket,
        user_id: int,
        role: str = "CLIENT",
        connection_id: Optional[str] = None
    ) -> Connection:
        """
        Track an already-accepted socket and auto-join the user's personal room.

        Idempotent per connection_id: registering a known ID returns the
        existing Connection unchanged.

        Args:
            websocket: Accepted WebSocket
            user_id: Authenticated user ID
            role: User role captured at handshake
            connection_id: Explicit ID; generated when omitted

        Returns:
            The Connection
        """
        if connection_id is not None and connection_id in self.connections:
            return self.connections[connection_id]

        connection = Connection(id=connection_id or str(uuid4()), user_id=user_id, role=role, websocket=websocket)
        self.connections[connection.id] = connection
        self.user_connections[user_id].add(connection.id)
        self.last_heartbeat[connection.id] = utcnow()
        self.join(connection.id, user_room_key(user_id))

        websocket_connections_total.inc()
        update_websocket_metrics(self)

        logger.info(
            f"User {user_id} connected via WebSocket as {connection.id} "
            f"(user connections: {len(self.user_connections[user_id])})"
        )
        return connection

    async def connect(self, websocket: WebSocket, user_id: int, role: str = "CLIENT") -> Optional[Connection]:
        """
        Accept a socket for an authenticated user.

        Returns:
            The Connection, or None when the user already holds the maximum
            number of connections (the socket is left unaccepted)
        """
        if not self.can_accept(user_id):
            logger.warning(
                f"Connection limit reached for user {user_id}: "
                f"{len(self.user_connections[user_id])}/{self.max_connections_per_user}"
            )
            return None

        await websocket.accept()
        return self.register(websocket, user_id, role)

    def disconnect(self, connection_id: str, reason: str = "normal") -> Optional[Connection]:
        """
        Forget a connection: leave every room and drop heartbeat tracking.

        Safe to call more than once for the same connection.
        """
        connection = self.connections.pop(connection_id, None)
        if connection is None:
            return None

        for room in self.connection_rooms.pop(connection_id, set()):
            members = self.rooms.get(room)
            if members is not None:
                members.discard(connection_id)
                if not members:
                    del self.rooms[room]

        user_sockets = self.user_connections.get(connection.user_id)
        if user_sockets is not None:
            user_sockets.discard(connection_id)
            if not user_sockets:
                del self.user_connections[connection.user_id]

        self.last_heartbeat.pop(connection_id, None)

        websocket_disconnections_total.labels(reason=reason).inc()
        update_websocket_metrics(self)

        logger.info(
            f"User {connection.user_id} disconnected ({reason}) "
            f"(remaining connections: {len(self.user_connections.get(connection.user_id, ()))})"
        )
        return connection

    # Room membership
    def join(self, connection_id: str, room: str) -> bool:
        """Add a connection to a room. Returns False for an unknown connection."""
        if connection_id not in self.connections:
            return False
        self.rooms[room].add(connection_id)
        self.connection_rooms[connection_id].add(room)
        logger.debug(f"Connection {connection_id} joined {room}")
        return True

    def leave(self, connection_id: str, room: str) -> bool:
        """Remove a connection from a room. Returns whether it was a member."""
        members = self.rooms.get(room)
        if members is None or connection_id not in members:
            return False
        members.discard(connection_id)
        if not members:
            del self.rooms[room]
        self.connection_rooms[connection_id].discard(room)
        logger.debug(f"Connection {connection_id} left {room}")
        return True

    def is_member(self, connection_id: str, room: str) -> bool:
        return connection_id in self.rooms.get(room, ())

    def room_members(self, room: str) -> Set[str]:
        return set(self.rooms.get(room, ()))

    def get_connection(self, connection_id: str) -> Optional[Connection]:
        return self.connections.get(connection_id)

    def is_online(self, user_id: int) -> bool:
        """Whether the user holds at least one live connection."""
        return bool(self.user_connections.get(user_id))

    # Delivery
    async def send(self, connection_id: str, event: str, payload: Any = None) -> bool:
        """Send one event to a single connection. Drops the connection if the send fails."""
        return await self._send_raw(connection_id, frame(event, payload), event)

    async def send_error(self, connection_id: str, message: str, code: str) -> bool:
        """Send an `error` frame to a single connection."""
        error = WSError(message=message, code=code).model_dump(mode="json")
        return await self._send_raw(connection_id, error, "error")

    async def _send_raw(self, connection_id: str, message: Dict[str, Any], event: str) -> bool:
        connection = self.connections.get(connection_id)
        if connection is None:
            return False
        try:
            await connection.websocket.send_json(message)
        except Exception as e:
            logger.error(f"Error sending {event} to connection {connection_id}: {e}")
            self.disconnect(connection_id, reason="send_error")
            return False
        websocket_frames_sent_total.labels(event=event).inc()
        return True

    async def emit_to_room(
        self,
        room: str,
        event: str,
        payload: Any,
        exclude_connection_id: Optional[str] = None
    ) -> int:
        """
        Send an event to every connection in a room.

        Args:
            room: Room key (user:<id>, task:<id>, conversation:<id>)
            event: Event name
            payload: JSON-serializable event data
            exclude_connection_id: Connection to skip (typically the sender's)

        Returns:
            Number of sockets the event was delivered to
        """
        message = frame(event, payload)
        delivered = 0
        for connection_id in list(self.rooms.get(room, ())):
            if connection_id == exclude_connection_id:
                continue
            if await self._send_raw(connection_id, message, event):
                delivered += 1

        if delivered:
            logger.debug(f"Broadcast {event} to {room}: {delivered} connections")
        return delivered

    async def emit_to_user(self, user_id: int, event: str, payload: Any) -> int:
        """Send an event to every connection of a user (their personal room)."""
        return await self.emit_to_room(user_room_key(user_id), event, payload)

    # Heartbeat
    def touch_heartbeat(self, connection_id: str) -> None:
        """Record a pong (or any sign of life) from a connection."""
        if connection_id in self.connections:
            self.last_heartbeat[connection_id] = utcnow()

    def get_stale_connections(self, timeout_seconds: int = 40) -> List[str]:
        """IDs of connections whose last heartbeat is older than the timeout."""
        cutoff = utcnow() - timedelta(seconds=timeout_seconds)
        return [
            connection_id for connection_id, last_beat in self.last_heartbeat.items()
            if last_beat < cutoff
        ]

    # Stats
    def get_connection_count(self) -> int:
        return len(self.connections)

    def get_user_count(self) -> int:
        return len(self.user_connections)

    def get_membership_count(self) -> int:
        return sum(len(members) for members in self.rooms.values())


async def heartbeat_monitor(manager: ConnectionManager, interval_seconds: int = 30, timeout_seconds: int = 40):
    """
    Background task that pings every connection and closes silent ones.

    Sends a `ping` every `interval_seconds`; clients answer with a `pong`
    action. Connections with no pong for `timeout_seconds` are closed and
    removed from all rooms.

    Args:
        manager: ConnectionManager to sweep
        interval_seconds: Seconds between pings
        timeout_seconds: Seconds without heartbeat before closing
    """
    logger.info(f"Heartbeat monitor started (interval={interval_seconds}s, timeout={timeout_seconds}s)")

    while True:
        await asyncio.sleep(interval_seconds)

        try:
            for connection_id in list(manager.connections):
                await manager.send(connection_id, "ping")

            for connection_id in manager.get_stale_connections(timeout_seconds):
                connection = manager.get_connection(connection_id)
                if connection is None:
                    continue
                logger.warning(f"Closing stale connection {connection_id} for user {connection.user_id}")
                try:
                    await connection.websocket.close(code=1000, reason="Connection timeout")
                except Exception as e:
                    logger.debug(f"Close of stale connection {connection_id} failed: {e}")
                manager.disconnect(connection_id, reason="timeout")

            update_websocket_metrics(manager)
            logger.info(
                f"Heartbeat complete: {manager.get_connection_count()} connections, "
                f"{manager.get_user_count()} users"
            )

        except Exception as e:
            logger.error(f"Error in heartbeat monitor: {e}")
