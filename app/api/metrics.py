"""
Prometheus metrics for the realtime service.

Tracks WebSocket connections, room membership, frame traffic and
notification fan-out. Metrics live in the default registry so the
`/metrics` endpoint exposed by prometheus-fastapi-instrumentator serves
them next to the HTTP request metrics.
"""
from prometheus_client import Counter, Gauge, Histogram

# WebSocket connection metrics
websocket_connections_active = Gauge(
    "websocket_connections_active",
    "Number of active WebSocket connections"
)

websocket_connections_total = Counter(
    "websocket_connections_total",
    "Total number of WebSocket connections established"
)

websocket_disconnections_total = Counter(
    "websocket_disconnections_total",
    "Total number of WebSocket disconnections",
    labelnames=["reason"]
)

websocket_handshake_rejections_total = Counter(
    "websocket_handshake_rejections_total",
    "WebSocket handshakes refused before accept",
    labelnames=["reason"]
)

websocket_users_connected = Gauge(
    "websocket_users_connected",
    "Number of unique users currently connected"
)

websocket_room_memberships = Gauge(
    "websocket_room_memberships",
    "Total number of (connection, room) memberships"
)

websocket_frames_received_total = Counter(
    "websocket_frames_received_total",
    "Total number of client frames received",
    labelnames=["action"]
)

websocket_frames_sent_total = Counter(
    "websocket_frames_sent_total",
    "Total number of server frames delivered to sockets",
    labelnames=["event"]
)

# Chat metrics
messages_created_total = Counter(
    "messages_created_total",
    "Total number of chat messages persisted",
    labelnames=["thread_kind"]
)

message_processing_duration_seconds = Histogram(
    "message_processing_duration_seconds",
    "Time from receiving a message to finishing its fan-out",
    labelnames=["thread_kind"],
    buckets=[0.001, 0.005, 0.01, 0.025, 0.05, 0.075, 0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0]
)

# Notification metrics
notifications_created_total = Counter(
    "notifications_created_total",
    "Total number of notifications persisted",
    labelnames=["type"]
)

notification_delivery_failures_total = Counter(
    "notification_delivery_failures_total",
    "Live notification emits that raised after the record was stored"
)


def update_websocket_metrics(connection_manager):
    """
    Refresh the WebSocket gauges from connection manager state.

    Called from the heartbeat loop and after connects/disconnects.

    Args:
        connection_manager: ConnectionManager instance
    """
    websocket_connections_active.set(connection_manager.get_connection_count())
    websocket_users_connected.set(connection_manager.get_user_count())
    websocket_room_memberships.set(connection_manager.get_membership_count())
