"""
Prometheus metrics for the chat core.

Tracks WebSocket connections, message acceptance, fan-out delivery and
backpressure. Metrics live in the default registry so the ``/metrics``
endpoint exposed by the instrumentator publishes them alongside HTTP metrics.
"""
from prometheus_client import Counter, Histogram, Gauge

# WebSocket connection metrics
websocket_connections_active = Gauge(
    "chat_websocket_connections_active",
    "Number of active WebSocket connections"
)

websocket_connections_total = Counter(
    "chat_websocket_connections_total",
    "Total number of WebSocket connections registered"
)

websocket_disconnections_total = Counter(
    "chat_websocket_disconnections_total",
    "Total number of WebSocket disconnections",
    labelnames=["reason"]
)

websocket_users_connected = Gauge(
    "chat_websocket_users_connected",
    "Number of unique users currently connected"
)

room_subscriptions_active = Gauge(
    "chat_room_subscriptions_active",
    "Number of (connection, room) subscriptions"
)

websocket_frames_received_total = Counter(
    "chat_websocket_frames_received_total",
    "Inbound frames by action",
    labelnames=["action"]
)

# Message pipeline metrics
messages_accepted_total = Counter(
    "chat_messages_accepted_total",
    "Messages persisted and handed to the broadcaster",
    labelnames=["type"]
)

messages_failed_total = Counter(
    "chat_messages_failed_total",
    "Messages that failed persistence after retry"
)

message_processing_duration_seconds = Histogram(
    "chat_message_processing_duration_seconds",
    "Time from submit to persisted message",
    labelnames=["status"],
    buckets=[0.001, 0.005, 0.01, 0.025, 0.05, 0.075, 0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0]
)

# Fan-out metrics
fanout_deliveries_total = Counter(
    "chat_fanout_deliveries_total",
    "Per-connection pushes by outcome",
    labelnames=["event_type", "outcome"]
)

broadcast_latency_seconds = Histogram(
    "chat_broadcast_latency_seconds",
    "Time to push one event to every connection of a room",
    labelnames=["event_type"],
    buckets=[0.001, 0.005, 0.01, 0.025, 0.05, 0.075, 0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0]
)

# Backpressure and presence
rate_limit_rejections_total = Counter(
    "chat_rate_limit_rejections_total",
    "Actions rejected by the rate limiter",
    labelnames=["action_kind"]
)

presence_transitions_total = Counter(
    "chat_presence_transitions_total",
    "Presence status transitions",
    labelnames=["status"]
)


def update_websocket_metrics(registry) -> None:
    """
    Refresh connection gauges from the connection registry.

    Called from the heartbeat loop so the gauges stay current.

    Args:
        registry: ConnectionRegistry instance
    """
    stats = registry.stats()
    websocket_connections_active.set(stats["connections"])
    websocket_users_connected.set(stats["users"])
    room_subscriptions_active.set(stats["subscriptions"])
