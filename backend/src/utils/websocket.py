"""
WebSocket Connection Manager for geofence-specs-changed updates.

Each user's devices subscribe to a per-user channel. Whenever the registry
produces a new active geofence set, the set is pushed to that channel so
the on-device registration layer can (re)register OS-level geofences.

Usage:
    manager = get_connection_manager()

    # In WebSocket endpoint
    await manager.connect(manager.user_channel(user_id), websocket)
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        manager.disconnect(manager.user_channel(user_id), websocket)

    # Publish from synchronous service code (any thread)
    manager.publish_threadsafe(manager.user_channel(user_id), {...})
"""

import asyncio
from typing import Dict, Set, Any, Optional

from fastapi import WebSocket

from backend.src.utils.logging_config import get_logger

logger = get_logger("websocket")


class ConnectionManager:
    """
    Manages WebSocket connections grouped by channel.

    Synchronous services run in worker threads (FastAPI sync endpoints and
    background sweeps), so they publish through publish_threadsafe(), which
    hands the coroutine to the event loop bound in the application lifespan.
    """

    USER_CHANNEL_PREFIX = "user:"

    def __init__(self):
        """Initialize the connection manager with empty connection registry."""
        self._connections: Dict[str, Set[WebSocket]] = {}
        self._lock = asyncio.Lock()
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    def bind_loop(self, loop: Optional[asyncio.AbstractEventLoop]) -> None:
        """Bind (or unbind, with None) the loop used for thread-safe publishing."""
        self._loop = loop

    def user_channel(self, user_id: str) -> str:
        return f"{self.USER_CHANNEL_PREFIX}{user_id}"

    async def connect(self, channel: str, websocket: WebSocket) -> None:
        """
        Accept and register a WebSocket connection for a channel.

        Multiple connections per channel are supported (one per device).
        """
        await websocket.accept()
        async with self._lock:
            self._connections.setdefault(channel, set()).add(websocket)
            logger.debug(
                f"WebSocket registered for channel {channel}. "
                f"Total connections: {len(self._connections[channel])}"
            )

    def disconnect(self, channel: str, websocket: WebSocket) -> None:
        """
        Unregister a WebSocket connection.

        Synchronous for use in exception handlers.
        """
        if channel in self._connections:
            self._connections[channel].discard(websocket)
            if not self._connections[channel]:
                del self._connections[channel]

    async def broadcast(self, channel: str, data: Dict[str, Any]) -> None:
        """
        Broadcast a message to all clients of a channel.

        Failed connections are removed; the broadcast continues to the rest.
        """
        if channel not in self._connections:
            return

        connections = self._connections[channel].copy()
        disconnected: Set[WebSocket] = set()

        for connection in connections:
            try:
                await connection.send_json(data)
            except Exception as e:
                logger.debug(f"Failed to send to WebSocket: {e}")
                disconnected.add(connection)

        for conn in disconnected:
            self.disconnect(channel, conn)

    def publish_threadsafe(self, channel: str, data: Dict[str, Any]) -> bool:
        """
        Schedule a broadcast from synchronous code.

        Returns:
            True if the broadcast was scheduled, False when no loop is bound
            or the channel has no listeners
        """
        if channel not in self._connections:
            return False

        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None

        if running is not None:
            running.create_task(self.broadcast(channel, data))
            return True

        if self._loop is None or self._loop.is_closed():
            logger.debug(f"No event loop bound; dropping message for {channel}")
            return False

        asyncio.run_coroutine_threadsafe(self.broadcast(channel, data), self._loop)
        return True

    def get_connection_count(self, channel: Optional[str] = None) -> int:
        """Number of active connections, for one channel or in total."""
        if channel:
            return len(self._connections.get(channel, set()))
        return sum(len(conns) for conns in self._connections.values())


# Singleton instance
_connection_manager: Optional[ConnectionManager] = None


def get_connection_manager() -> ConnectionManager:
    """
    Get the singleton ConnectionManager instance.

    Creates the instance on first call.
    """
    global _connection_manager
    if _connection_manager is None:
        _connection_manager = ConnectionManager()
    return _connection_manager
