"""In-memory presence tracking.

Maps each online user to the connection that most recently authenticated as
them. Presence is best-effort and never persisted: a restart shows everybody
offline until their clients reconnect.
"""
import logging
from typing import Dict, List, Optional

from fastapi import WebSocket

logger = logging.getLogger(__name__)


class PresenceRegistry:
    """User id -> connection handle, one handle per user.

    A second connection from the same user replaces the first for presence
    purposes. When the replaced connection later closes it does not take the
    user offline, because the mapping no longer points at it.
    """

    def __init__(self) -> None:
        self._connections: Dict[str, WebSocket] = {}

    def register(self, user_id: str, websocket: WebSocket) -> bool:
        """Record ``websocket`` as the user's live connection.

        Returns:
            True if the user was offline before this call.
        """
        was_offline = user_id not in self._connections
        self._connections[user_id] = websocket
        logger.debug("[Presence] %s online (replaced=%s)", user_id, not was_offline)
        return was_offline

    def unregister(self, user_id: str, websocket: WebSocket) -> bool:
        """Drop the mapping if it still points at ``websocket``.

        Returns:
            True if the user is now offline.
        """
        if self._connections.get(user_id) is not websocket:
            return False
        del self._connections[user_id]
        logger.debug("[Presence] %s offline", user_id)
        return True

    def is_online(self, user_id: str) -> bool:
        return user_id in self._connections

    def connection_for(self, user_id: str) -> Optional[WebSocket]:
        return self._connections.get(user_id)

    def online_user_ids(self) -> List[str]:
        return sorted(self._connections)

    def clear(self) -> None:
        self._connections.clear()

    def __len__(self) -> int:
        return len(self._connections)
