"""
Prometheus metrics for API service.

Tracks WebSocket connections, fan-out activity, and business metrics.
Collectors live in the default registry so they are served by the /metrics
endpoint exposed by prometheus-fastapi-instrumentator.
"""
from prometheus_client import Counter, Gauge

# WebSocket connection metrics
websocket_connections_active = Gauge(
    "websocket_connections_active",
    "Number of active WebSocket connections",
    labelnames=["instance"]
)

websocket_connections_total = Counter(
    "websocket_connections_total",
    "Total number of WebSocket connections established",
    labelnames=["instance"]
)

websocket_disconnections_total = Counter(
    "websocket_disconnections_total",
    "Total number of WebSocket disconnections",
    labelnames=["instance", "reason"]
)

websocket_messages_sent_total = Counter(
    "websocket_messages_sent_total",
    "Total number of frames sent via WebSocket",
    labelnames=["message_type", "instance"]
)

websocket_messages_received_total = Counter(
    "websocket_messages_received_total",
    "Total number of client commands received via WebSocket",
    labelnames=["action", "instance"]
)

websocket_subscriptions_total = Gauge(
    "websocket_subscriptions_total",
    "Total number of active broadcast group subscriptions",
    labelnames=["instance"]
)

websocket_users_connected = Gauge(
    "websocket_users_connected",
    "Number of unique users currently connected",
    labelnames=["instance"]
)

# Fan-out metrics
fanout_events_emitted_total = Counter(
    "fanout_events_emitted_total",
    "Total number of events emitted to broadcast groups",
    labelnames=["event", "instance"]
)

fanout_delivery_failures_total = Counter(
    "fanout_delivery_failures_total",
    "Total number of frames that could not be delivered to an endpoint",
    labelnames=["instance"]
)

# API business metrics
conversations_created_total = Counter(
    "conversations_created_total",
    "Total number of conversations created",
    labelnames=["with_message", "instance"]
)

messages_created_total = Counter(
    "messages_created_total",
    "Total number of messages created",
    labelnames=["instance"]
)


def update_websocket_metrics(connection_manager):
    """
    Update WebSocket gauges from connection manager state.

    Called periodically by the heartbeat monitor to keep gauges current.

    Args:
        connection_manager: ConnectionManager instance
    """
    websocket_connections_active.labels(instance="api").set(connection_manager.get_connection_count())
    websocket_users_connected.labels(instance="api").set(connection_manager.get_user_count())
    websocket_subscriptions_total.labels(instance="api").set(connection_manager.get_subscription_count())
