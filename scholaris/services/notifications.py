"""
Real-time notification fan-out.

``ConnectionRegistry`` owns the mapping between connected users and their
socket connections. ``NotificationEmitter`` publishes ``{type, payload}``
messages to in-process listeners and to the sockets; delivery is best-effort
and never raises into the operation that triggered it.
"""

import asyncio
import logging
import threading
from typing import Any, Dict, List, Optional, Set, Union

from ..core.enums import EventType
from ..core.interfaces import NotificationListener

logger = logging.getLogger(__name__)


class ConnectionRegistry:
    """Bidirectional user <-> connection map.

    A user has at most one live connection; binding a new one replaces the
    old binding. Removal is keyed by connection id.
    """

    def __init__(self):
        self._connections: Dict[str, Any] = {}
        self._user_by_connection: Dict[str, str] = {}
        self._connection_by_user: Dict[str, str] = {}
        self._lock = threading.RLock()

    def register(self, connection_id: str, connection: Any) -> None:
        """Track a freshly accepted connection that has not identified itself yet."""
        with self._lock:
            self._connections[connection_id] = connection

    def bind(self, connection_id: str, user_id: str) -> None:
        """Associate a connection with the user it belongs to."""
        with self._lock:
            if connection_id not in self._connections:
                raise KeyError(connection_id)

            previous_user = self._user_by_connection.get(connection_id)
            if previous_user is not None and self._connection_by_user.get(previous_user) == connection_id:
                del self._connection_by_user[previous_user]

            previous_connection = self._connection_by_user.get(user_id)
            if previous_connection is not None and previous_connection != connection_id:
                self._user_by_connection.pop(previous_connection, None)

            self._user_by_connection[connection_id] = user_id
            self._connection_by_user[user_id] = connection_id

    def unregister(self, connection_id: str) -> Optional[str]:
        """Forget a connection; returns the user it was bound to, if any."""
        with self._lock:
            self._connections.pop(connection_id, None)
            user_id = self._user_by_connection.pop(connection_id, None)
            if user_id is not None and self._connection_by_user.get(user_id) == connection_id:
                del self._connection_by_user[user_id]
            return user_id

    def connection_for(self, user_id: str) -> Optional[str]:
        with self._lock:
            return self._connection_by_user.get(user_id)

    def user_for(self, connection_id: str) -> Optional[str]:
        with self._lock:
            return self._user_by_connection.get(connection_id)

    def get(self, connection_id: str) -> Optional[Any]:
        with self._lock:
            return self._connections.get(connection_id)

    def snapshot(self) -> Dict[str, Any]:
        """Copy of connection id -> connection, safe to iterate while others connect."""
        with self._lock:
            return dict(self._connections)

    def connected_users(self) -> List[str]:
        with self._lock:
            return list(self._connection_by_user.keys())

    def __len__(self) -> int:
        with self._lock:
            return len(self._connections)


class NotificationEmitter:
    """Fire-and-forget publisher of state-change events."""

    def __init__(self, registry: ConnectionRegistry):
        self._registry = registry
        self._listeners: List[NotificationListener] = []
        self._pending: Set[asyncio.Future] = set()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._published = 0
        self._failed_deliveries = 0
        self._lock = threading.RLock()

    @property
    def registry(self) -> ConnectionRegistry:
        return self._registry

    def attach_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        """Event loop that owns the sockets; used when publishing from worker threads."""
        self._loop = loop

    def add_listener(self, listener: NotificationListener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def remove_listener(self, listener: NotificationListener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def publish(self, event_type: Union[EventType, str], payload: Dict[str, Any],
                recipient: Optional[str] = None, fallback_broadcast: bool = False) -> None:
        """Publish an event.

        With ``recipient`` set, only that user's connection receives it; if the
        user is not connected the socket delivery is dropped unless
        ``fallback_broadcast`` asks for a broadcast instead.
        """
        name = event_type.value if isinstance(event_type, EventType) else str(event_type)
        message = {"type": name, "payload": payload}
        if recipient:
            message["recipient"] = recipient

        with self._lock:
            self._published += 1
            listeners = list(self._listeners)

        for listener in listeners:
            try:
                listener.on_notification(name, payload, recipient)
            except Exception as e:
                logger.warning("Notification listener %s failed on %s: %s",
                               listener.__class__.__name__, name, e)

        targets = self._resolve_targets(recipient, fallback_broadcast)
        for connection_id, connection in targets.items():
            self._schedule(connection_id, connection, message)

    def _resolve_targets(self, recipient: Optional[str], fallback_broadcast: bool) -> Dict[str, Any]:
        if not recipient:
            return self._registry.snapshot()
        connection_id = self._registry.connection_for(recipient)
        if connection_id is not None:
            connection = self._registry.get(connection_id)
            return {connection_id: connection} if connection is not None else {}
        if fallback_broadcast:
            return self._registry.snapshot()
        return {}

    def _schedule(self, connection_id: str, connection: Any, message: Dict[str, Any]) -> None:
        coroutine = self._deliver(connection_id, connection, message)
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None

        if loop is not None:
            task = loop.create_task(coroutine)
        elif self._loop is not None and self._loop.is_running():
            task = asyncio.run_coroutine_threadsafe(coroutine, self._loop)
        else:
            coroutine.close()
            logger.debug("No running event loop; dropped %s for connection %s",
                         message["type"], connection_id)
            return

        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _deliver(self, connection_id: str, connection: Any, message: Dict[str, Any]) -> None:
        try:
            await connection.send_json(message)
        except Exception as e:
            with self._lock:
                self._failed_deliveries += 1
            logger.warning("Dropping connection %s after failed delivery of %s: %s",
                           connection_id, message["type"], e)
            self._registry.unregister(connection_id)

    def get_statistics(self) -> Dict[str, Any]:
        with self._lock:
            return {
                'published': self._published,
                'failed_deliveries': self._failed_deliveries,
                'pending_deliveries': len(self._pending),
                'connections': len(self._registry),
                'listeners': len(self._listeners),
            }
