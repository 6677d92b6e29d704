"""WebSocket connection hub for presence and conversation fan-out.

This module owns every piece of process-local real-time state: the set of
live connections, the presence registry and the conversation broadcast
groups. Nothing outside this class touches those maps directly; callers go
through intent-revealing operations (connect, disconnect, join, broadcast).

Lifecycle:
    The hub is created in the application lifespan (``set_manager``) and
    shut down there as well (``shutdown`` closes every socket). It is
    process-local: a second server process has its own hub and does not see
    this one's connections.

Thread Safety:
    This implementation is designed for async/await usage with a single event loop.
    It is NOT thread-safe for concurrent access from multiple threads.

Performance Notes:
    - Broadcasting uses asyncio.gather() for concurrent message delivery
    - Failed connections are dropped from every conversation group during broadcast
    - Uvicorn handles ping/pong at the protocol level (default 20s interval)
"""
import asyncio
import logging
from typing import Dict, List, Optional

from fastapi import WebSocket

from messenger.store import MessagingStore

from .events import ServerEvent
from .presence import PresenceRegistry
from .rooms import ConversationRouter

logger = logging.getLogger(__name__)

# Close code sent to clients when the server shuts down
GOING_AWAY = 1001


class ConnectionManager:
    """Manages authenticated WebSocket connections, presence and rooms.

    Attributes:
        presence: user id -> live connection.
        rooms: conversation id -> subscribed connections.
        _connections: every accepted connection -> its user id.
    """

    def __init__(self, store: MessagingStore) -> None:
        self.store = store
        self.presence = PresenceRegistry()
        self.rooms = ConversationRouter(store.is_participant)
        self._connections: Dict[WebSocket, str] = {}

    # =========================================================================
    # Connection lifecycle
    # =========================================================================

    async def connect(self, websocket: WebSocket, user_id: str) -> List[str]:
        """Accept an authenticated connection and announce the user online.

        Args:
            websocket: The WebSocket connection to accept.
            user_id: Identity verified at handshake.

        Returns:
            Ids of all users online after this connection was registered.
        """
        await websocket.accept()
        self._connections[websocket] = user_id
        self.presence.register(user_id, websocket)
        logger.info(f"[Hub] {user_id} connected ({len(self._connections)} connections)")

        await self.broadcast_all(
            {"type": ServerEvent.USER_ONLINE.value, "userId": user_id},
            exclude_websocket=websocket,
        )
        return self.presence.online_user_ids()

    async def disconnect(self, websocket: WebSocket) -> Optional[str]:
        """Forget a connection, its room memberships and (maybe) its presence.

        Returns:
            The user id of the connection, or None if it was unknown.
        """
        user_id = self._connections.pop(websocket, None)
        if user_id is None:
            return None

        left = self.rooms.remove_connection(websocket)
        went_offline = self.presence.unregister(user_id, websocket)
        logger.info(
            f"[Hub] {user_id} disconnected (rooms={len(left)}, offline={went_offline})"
        )

        if went_offline:
            await self.broadcast_all({"type": ServerEvent.USER_OFFLINE.value, "userId": user_id})
        return user_id

    async def shutdown(self) -> None:
        """Close every connection and clear all state."""
        connections = list(self._connections)
        for websocket in connections:
            try:
                await websocket.close(code=GOING_AWAY)
            except Exception as e:
                logger.debug(f"Failed to close connection during shutdown: {e}")
        self._connections.clear()
        self.presence.clear()
        self.rooms.clear()
        logger.info(f"[Hub] Shut down, closed {len(connections)} connections")

    # =========================================================================
    # Rooms
    # =========================================================================

    def join(self, websocket: WebSocket, conversation_id: str) -> bool:
        """Subscribe a connection to a conversation it participates in."""
        user_id = self._connections.get(websocket)
        if user_id is None:
            return False
        return self.rooms.join(websocket, user_id, conversation_id)

    def leave(self, websocket: WebSocket, conversation_id: str) -> bool:
        return self.rooms.leave(websocket, conversation_id)

    def is_in_room(self, websocket: WebSocket, conversation_id: str) -> bool:
        return self.rooms.is_member(websocket, conversation_id)

    # =========================================================================
    # Delivery
    # =========================================================================

    async def broadcast(self, message: dict, conversation_id: str) -> None:
        """Send a message to every connection in a conversation's group."""
        await self._deliver(self.rooms.connections(conversation_id), message)

    async def broadcast_except(
        self, message: dict, conversation_id: str, exclude_websocket: WebSocket
    ) -> None:
        """Send to a conversation's group, skipping one connection."""
        connections = [
            conn for conn in self.rooms.connections(conversation_id)
            if conn is not exclude_websocket
        ]
        await self._deliver(connections, message)

    async def broadcast_all(
        self, message: dict, exclude_websocket: Optional[WebSocket] = None
    ) -> None:
        """Send to every live connection (presence events)."""
        connections = [
            conn for conn in self._connections
            if conn is not exclude_websocket
        ]
        await self._deliver(connections, message)

    async def send_personal(self, websocket: WebSocket, message: dict) -> bool:
        """Send to exactly one connection."""
        success = await self._safe_send(websocket, message)
        if not success:
            self._cleanup_connections([websocket])
        return success

    async def _deliver(self, connections: List[WebSocket], message: dict) -> None:
        if not connections:
            return

        # Send to all connections concurrently
        results = await asyncio.gather(
            *[self._safe_send(conn, message) for conn in connections],
            return_exceptions=True
        )

        # Remove failed connections
        failed_connections = [
            conn for conn, success in zip(connections, results)
            if success is not True
        ]
        self._cleanup_connections(failed_connections)

    async def _safe_send(self, connection: WebSocket, message: dict) -> bool:
        """Send a message to a WebSocket connection with error handling.

        Returns:
            True if successful, False if connection failed.
        """
        try:
            await connection.send_json(message)
            return True
        except Exception as e:
            logger.debug(f"Failed to send to connection: {e}")
            return False

    def _cleanup_connections(self, failed_connections: List[WebSocket]) -> None:
        """Drop dead connections from every conversation group.

        Presence is left alone; the connection's receive loop ends shortly
        after and runs the full ``disconnect``.
        """
        for conn in failed_connections:
            removed = self.rooms.remove_connection(conn)
            if removed:
                logger.debug(f"Removed dead connection from rooms {removed}")

    # =========================================================================
    # Introspection
    # =========================================================================

    def online_user_ids(self) -> List[str]:
        return self.presence.online_user_ids()

    def is_online(self, user_id: str) -> bool:
        return self.presence.is_online(user_id)

    def get_room_size(self, conversation_id: str) -> int:
        return self.rooms.room_size(conversation_id)

    def connection_count(self) -> int:
        return len(self._connections)


_manager: Optional[ConnectionManager] = None


def get_manager() -> Optional[ConnectionManager]:
    """Get the global connection hub."""
    return _manager


def set_manager(manager: Optional[ConnectionManager]) -> None:
    """Set (or clear) the global connection hub."""
    global _manager
    _manager = manager
