"""
WebSocket Connection Manager for real-time fan-out.

Maintains broadcast groups keyed by user id (personal groups) and by
conversation id, and delivers named events to every endpoint currently
subscribed to a group. Delivery is best effort: no confirmation, no queuing
for disconnected endpoints, no retry.
"""
import asyncio
import logging
import threading
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional, Set
from fastapi import WebSocket
from fastapi.encoders import jsonable_encoder

from api.metrics import (
    websocket_connections_total, websocket_disconnections_total,
    websocket_messages_sent_total, fanout_events_emitted_total,
    fanout_delivery_failures_total, update_websocket_metrics
)
from core.exceptions import BroadcasterNotReadyError

logger = logging.getLogger(__name__)

# Event names emitted to broadcast groups
EVENT_NEW_MESSAGE = "message.created"
EVENT_UPDATE_MESSAGE = "message.updated"
EVENT_DELETE_MESSAGE = "message.deleted"
EVENT_NEW_CONVERSATION = "conversation.created"


def user_group(user_id: str) -> str:
    """Key of a user's personal broadcast group."""
    return f"user:{user_id}"


def conversation_group(conversation_id: str) -> str:
    """Key of a conversation's broadcast group."""
    return f"conversation:{conversation_id}"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _current_task() -> Optional[asyncio.Task]:
    try:
        return asyncio.current_task()
    except RuntimeError:
        return None


class ConnectionManager:
    """
    Manages active WebSocket connections and their broadcast groups.

    Features:
    - Every connection joins its user's personal group on connect
    - Conversation groups joined/left on request (idempotent)
    - Enforces connection limits per user
    - Per-connection outbound queue drained by a writer task, so frames reach
      each endpoint in the order they were emitted
    - Handles graceful disconnection and stale connection cleanup

    Membership tables are guarded by a lock: emit() is called from threadpool
    workers while connect/join/leave/disconnect run on the event loop.
    """

    def __init__(self, max_connections_per_user: int = 5):
        """Initialize connection manager with empty connection tracking."""
        # {group_key: Set[WebSocket]} - endpoints subscribed to each group
        self.groups: Dict[str, Set[WebSocket]] = defaultdict(set)

        # {WebSocket: Set[group_key]} - reverse index used on disconnect
        self.memberships: Dict[WebSocket, Set[str]] = {}

        # {WebSocket: user_id} - authenticated identity per connection
        self.connection_to_user: Dict[WebSocket, str] = {}

        # {WebSocket: datetime} - tracks last heartbeat received
        self.last_heartbeat: Dict[WebSocket, datetime] = {}

        self.max_connections_per_user = max_connections_per_user

        self._outboxes: Dict[WebSocket, asyncio.Queue] = {}
        self._writers: Dict[WebSocket, asyncio.Task] = {}
        self._lock = threading.RLock()
        self._loop: Optional[asyncio.AbstractEventLoop] = None

        logger.info("ConnectionManager initialized")

    @property
    def is_started(self) -> bool:
        return self._loop is not None

    async def start(self) -> None:
        """Bind the manager to the running event loop; required before any emission."""
        self._loop = asyncio.get_running_loop()
        logger.info("ConnectionManager started")

    async def shutdown(self) -> None:
        """Close every connection and unbind from the event loop."""
        for websocket in list(self.connection_to_user):
            try:
                await websocket.close(code=1001, reason="Server shutdown")
            except Exception as e:
                logger.debug(f"Error closing WebSocket during shutdown: {e}")
            self.disconnect(websocket, reason="shutdown")
        self._loop = None
        logger.info("ConnectionManager stopped")

    def _require_loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            raise BroadcasterNotReadyError("ConnectionManager has not been started")
        return self._loop

    async def connect(self, websocket: WebSocket, user_id: str) -> bool:
        """
        Accept a new WebSocket connection for a user.

        The connection is subscribed to the user's personal group. Enforces
        the per-user connection limit; if reached, the socket is not accepted.
        The slot is reserved before the handshake is awaited, so concurrent
        connects for one user can never exceed the limit.

        Args:
            websocket: WebSocket connection to accept
            user_id: ID of the authenticated user

        Returns:
            True if connection accepted, False if limit reached
        """
        loop = self._require_loop()

        personal = user_group(user_id)
        queue: asyncio.Queue = asyncio.Queue()
        with self._lock:
            current_connections = len(self.groups.get(personal, ()))
            if current_connections >= self.max_connections_per_user:
                logger.warning(
                    f"Connection limit reached for user {user_id}: "
                    f"{current_connections}/{self.max_connections_per_user}"
                )
                return False

            self.connection_to_user[websocket] = user_id
            self.memberships[websocket] = set()
            self.last_heartbeat[websocket] = _utcnow()
            self._outboxes[websocket] = queue
            self._add_to_group(websocket, personal)
            total = len(self.groups[personal])

        try:
            await websocket.accept()
        except Exception:
            self.disconnect(websocket, reason="accept_failed")
            raise

        # Frames emitted during the handshake are already queued
        self._writers[websocket] = loop.create_task(self._writer(websocket, queue))

        websocket_connections_total.labels(instance="api").inc()
        logger.info(f"User {user_id} connected via WebSocket (total connections: {total})")
        return True

    def disconnect(self, websocket: WebSocket, reason: str = "normal") -> None:
        """
        Remove a WebSocket connection from every group it belongs to.

        Unknown connections and connections with no memberships are ignored.

        Args:
            websocket: WebSocket connection to remove
            reason: Disconnection reason recorded in metrics
        """
        with self._lock:
            user_id = self.connection_to_user.pop(websocket, None)
            for group in self.memberships.pop(websocket, set()):
                members = self.groups.get(group)
                if members is None:
                    continue
                members.discard(websocket)
                if not members:
                    del self.groups[group]
            self.last_heartbeat.pop(websocket, None)
            self._outboxes.pop(websocket, None)
            writer = self._writers.pop(websocket, None)

        if writer is not None and writer is not _current_task():
            writer.cancel()

        if user_id is not None:
            websocket_disconnections_total.labels(instance="api", reason=reason).inc()
            logger.info(f"User {user_id} disconnected from WebSocket ({reason})")

    def _add_to_group(self, websocket: WebSocket, group: str) -> bool:
        members = self.groups[group]
        if websocket in members:
            return False
        members.add(websocket)
        self.memberships[websocket].add(group)
        return True

    def join(self, websocket: WebSocket, conversation_id: str) -> bool:
        """
        Subscribe a connection to a conversation's broadcast group.

        Joining a group twice is a no-op.

        Returns:
            True if the subscription was added, False if it already existed
            or the connection is unknown
        """
        group = conversation_group(conversation_id)
        with self._lock:
            if websocket not in self.memberships:
                return False
            added = self._add_to_group(websocket, group)
            user_id = self.connection_to_user.get(websocket)
        if added:
            logger.debug(f"User {user_id} joined {group}")
        return added

    def leave(self, websocket: WebSocket, conversation_id: str) -> bool:
        """
        Unsubscribe a connection from a conversation's broadcast group.

        Leaving a group the connection is not in is a no-op.

        Returns:
            True if a subscription was removed
        """
        group = conversation_group(conversation_id)
        with self._lock:
            groups = self.memberships.get(websocket)
            if not groups or group not in groups:
                return False
            groups.discard(group)
            members = self.groups.get(group)
            if members is not None:
                members.discard(websocket)
                if not members:
                    del self.groups[group]
            user_id = self.connection_to_user.get(websocket)
        logger.debug(f"User {user_id} left {group}")
        return True

    def evict(self, conversation_id: str, user_ids: Optional[Iterable[str]] = None) -> int:
        """
        Drop subscriptions to a conversation's broadcast group.

        Called after participants are removed from a conversation, or after
        the conversation is deleted. The connections themselves stay open.

        Args:
            conversation_id: Conversation whose group is pruned
            user_ids: Only evict these users' connections; None evicts everyone

        Returns:
            Number of subscriptions removed
        """
        group = conversation_group(conversation_id)
        wanted = None if user_ids is None else set(user_ids)
        with self._lock:
            members = self.groups.get(group)
            if not members:
                return 0
            evicted = [
                websocket for websocket in members
                if wanted is None or self.connection_to_user.get(websocket) in wanted
            ]
            for websocket in evicted:
                members.discard(websocket)
                self.memberships.get(websocket, set()).discard(group)
            if not members:
                del self.groups[group]

        if evicted:
            logger.info(f"Evicted {len(evicted)} subscriptions from {group}")
        return len(evicted)

    def emit(self, group: str, event: str, payload: Any) -> int:
        """
        Emit an event to every endpoint currently subscribed to a group.

        Returns immediately: frames are handed to the event loop and written by
        each connection's writer task. Safe to call from any thread.

        Args:
            group: Broadcast group key (see user_group / conversation_group)
            event: Event name
            payload: JSON-serializable payload (pydantic models allowed)

        Returns:
            Number of endpoints the event was handed to

        Raises:
            BroadcasterNotReadyError: If start() has not been called
        """
        loop = self._require_loop()
        message = {
            "type": event,
            "payload": jsonable_encoder(payload),
            "timestamp": _utcnow().isoformat()
        }

        with self._lock:
            targets = list(self.groups.get(group, ()))

        fanout_events_emitted_total.labels(event=event, instance="api").inc()
        if not targets:
            logger.debug(f"No subscribers for {group}, dropping {event}")
            return 0

        try:
            loop.call_soon_threadsafe(self._enqueue, targets, message)
        except RuntimeError as e:
            # Event loop already closed (process shutting down)
            logger.error(f"Could not hand {event} for {group} to event loop: {e}")
            return 0

        logger.debug(f"Emitted {event} to {group}: {len(targets)} connections")
        return len(targets)

    def send_to_connection(self, websocket: WebSocket, message: dict) -> None:
        """Queue a frame for a single connection (acknowledgements, pings, errors)."""
        self._enqueue([websocket], jsonable_encoder(message))

    def _enqueue(self, targets: List[WebSocket], message: dict) -> None:
        with self._lock:
            queues = [self._outboxes.get(websocket) for websocket in targets]
        for queue in queues:
            # Disconnected since the snapshot was taken
            if queue is not None:
                queue.put_nowait(message)

    async def _writer(self, websocket: WebSocket, queue: asyncio.Queue) -> None:
        """Drain a connection's outbound queue in FIFO order."""
        while True:
            message = await queue.get()
            try:
                await websocket.send_json(message)
                websocket_messages_sent_total.labels(
                    message_type=message.get("type", "unknown"),
                    instance="api"
                ).inc()
            except Exception as e:
                user_id = self.connection_to_user.get(websocket)
                logger.error(f"Error sending {message.get('type', 'unknown')} to user {user_id}: {e}")
                fanout_delivery_failures_total.labels(instance="api").inc()
                self.disconnect(websocket, reason="send_error")
                return

    async def update_heartbeat(self, websocket: WebSocket) -> None:
        """
        Update last heartbeat timestamp for a connection.

        Called when a pong is received in response to a ping.
        """
        with self._lock:
            if websocket in self.last_heartbeat:
                self.last_heartbeat[websocket] = _utcnow()
            user_id = self.connection_to_user.get(websocket)
        logger.debug(f"Heartbeat updated for user {user_id}")

    def get_stale_connections(self, timeout_seconds: int = 40) -> List[WebSocket]:
        """
        Find connections that haven't sent a heartbeat recently.

        Args:
            timeout_seconds: Seconds since last heartbeat to consider stale

        Returns:
            List of stale WebSocket connections
        """
        now = _utcnow()
        timeout_delta = timedelta(seconds=timeout_seconds)
        with self._lock:
            return [
                connection for connection, last_beat in self.last_heartbeat.items()
                if now - last_beat > timeout_delta
            ]

    def get_group_members(self, group: str) -> Set[WebSocket]:
        """Snapshot of the endpoints subscribed to a group."""
        with self._lock:
            return set(self.groups.get(group, ()))

    def get_connection_groups(self, websocket: WebSocket) -> Set[str]:
        """Snapshot of the groups a connection belongs to."""
        with self._lock:
            return set(self.memberships.get(websocket, ()))

    def get_connection_count(self) -> int:
        """Get total number of active connections across all users."""
        with self._lock:
            return len(self.connection_to_user)

    def get_user_count(self) -> int:
        """Get number of unique users currently connected."""
        with self._lock:
            return len(set(self.connection_to_user.values()))

    def get_subscription_count(self) -> int:
        """Get total number of group subscriptions across all connections."""
        with self._lock:
            return sum(len(groups) for groups in self.memberships.values())


async def heartbeat_monitor(
    connection_manager: ConnectionManager,
    interval_seconds: int = 30,
    timeout_seconds: int = 40
):
    """
    Background task to send heartbeat pings and detect stale connections.

    Sends a ping to every connection each interval and closes connections that
    haven't answered with a pong within timeout_seconds. Also refreshes the
    Prometheus gauges.

    Args:
        connection_manager: Manager whose connections are monitored
        interval_seconds: Seconds between ping messages
        timeout_seconds: Seconds without heartbeat before closing
    """
    logger.info(f"Heartbeat monitor started (interval={interval_seconds}s, timeout={timeout_seconds}s)")

    while True:
        await asyncio.sleep(interval_seconds)

        try:
            ping_message = {"type": "ping", "timestamp": _utcnow().isoformat()}
            for connection in list(connection_manager.connection_to_user):
                connection_manager.send_to_connection(connection, ping_message)

            for connection in connection_manager.get_stale_connections(timeout_seconds):
                user_id = connection_manager.connection_to_user.get(connection)
                logger.warning(f"Closing stale connection for user {user_id}")
                try:
                    await connection.close(code=1000, reason="Connection timeout")
                except Exception as e:
                    logger.debug(f"Error closing stale connection: {e}")
                connection_manager.disconnect(connection, reason="timeout")

            update_websocket_metrics(connection_manager)

            logger.info(
                f"Heartbeat complete: {connection_manager.get_connection_count()} connections, "
                f"{connection_manager.get_user_count()} users"
            )
        except Exception as e:
            logger.error(f"Error in heartbeat monitor: {e}")
