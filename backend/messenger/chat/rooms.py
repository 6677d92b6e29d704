"""Conversation broadcast groups.

A connection joins the group of every conversation it opens; it is never
required to leave one group to join another. Membership of the underlying
conversation is checked against the store on every join.
"""
import logging
from typing import Callable, Dict, List, Set

from fastapi import WebSocket

logger = logging.getLogger(__name__)

# (conversation_id, user_id) -> is the user a participant?
MembershipCheck = Callable[[str, str], bool]


class ConversationRouter:
    """Tracks which connections are subscribed to which conversations.

    Attributes:
        _members: conversation_id -> connections in that conversation's group.
        _joined: connection -> conversation ids it has joined.
    """

    def __init__(self, is_participant: MembershipCheck) -> None:
        self._is_participant = is_participant
        self._members: Dict[str, Set[WebSocket]] = {}
        self._joined: Dict[WebSocket, Set[str]] = {}

    def join(self, websocket: WebSocket, user_id: str, conversation_id: str) -> bool:
        """Add the connection to a conversation group if the user participates.

        Raises:
            PersistenceError: The membership lookup failed.

        Returns:
            True if the connection is now in the group.
        """
        if not self._is_participant(conversation_id, user_id):
            logger.info("[Rooms] %s is not a participant of %s; join ignored", user_id, conversation_id)
            return False
        self._members.setdefault(conversation_id, set()).add(websocket)
        self._joined.setdefault(websocket, set()).add(conversation_id)
        logger.debug("[Rooms] %s joined %s (%d in group)", user_id, conversation_id, self.room_size(conversation_id))
        return True

    def leave(self, websocket: WebSocket, conversation_id: str) -> bool:
        members = self._members.get(conversation_id)
        if not members or websocket not in members:
            return False
        members.discard(websocket)
        if not members:
            del self._members[conversation_id]
        joined = self._joined.get(websocket)
        if joined is not None:
            joined.discard(conversation_id)
            if not joined:
                del self._joined[websocket]
        return True

    def remove_connection(self, websocket: WebSocket) -> List[str]:
        """Drop a connection from every group it joined.

        Returns:
            The conversation ids it was removed from.
        """
        conversation_ids = sorted(self._joined.pop(websocket, set()))
        for conversation_id in conversation_ids:
            members = self._members.get(conversation_id)
            if members is None:
                continue
            members.discard(websocket)
            if not members:
                del self._members[conversation_id]
        return conversation_ids

    def connections(self, conversation_id: str) -> List[WebSocket]:
        return list(self._members.get(conversation_id, ()))

    def is_member(self, websocket: WebSocket, conversation_id: str) -> bool:
        return websocket in self._members.get(conversation_id, ())

    def conversations_of(self, websocket: WebSocket) -> List[str]:
        return sorted(self._joined.get(websocket, ()))

    def room_size(self, conversation_id: str) -> int:
        return len(self._members.get(conversation_id, ()))

    def clear(self) -> None:
        self._members.clear()
        self._joined.clear()
