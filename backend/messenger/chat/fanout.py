"""Message fan-out: send, react, delete and typing over the real-time channel.

Each handler follows the same shape:
    1. Check the sender is a participant of the conversation (store lookup,
       never cached).
    2. Persist the change.
    3. Broadcast the resulting state to the conversation's group, or to the
       requesting connection only for "delete for me".

Requests that fail a check are dropped. By default nothing is sent back; with
``report_errors`` the requester gets an ``error`` event naming the dropped
event. Store failures are logged and abandon the operation without a
broadcast. Nothing is retried; clients reconcile through the REST history.
"""
import json
import logging
from typing import Awaitable, Callable, Dict, Optional, Tuple, Type

from fastapi import WebSocket
from pydantic import BaseModel, ValidationError

from messenger.errors import PersistenceError
from messenger.store import Message, MessageView, MessagingStore

from .events import (
    ClientEvent,
    ConversationEvent,
    DeleteMessageEvent,
    ReactMessageEvent,
    SendMessageEvent,
    ServerEvent,
)
from .manager import ConnectionManager

logger = logging.getLogger(__name__)

Handler = Callable[[WebSocket, str, BaseModel], Awaitable[None]]


class FanoutEngine:
    """Validates, persists and broadcasts inbound real-time events."""

    def __init__(
        self,
        manager: ConnectionManager,
        store: MessagingStore,
        report_errors: bool = False,
    ) -> None:
        self.manager = manager
        self.store = store
        self.report_errors = report_errors
        self._handlers: Dict[str, Tuple[Type[BaseModel], Handler]] = {
            ClientEvent.JOIN_CONVERSATION.value: (ConversationEvent, self.join_conversation),
            ClientEvent.LEAVE_CONVERSATION.value: (ConversationEvent, self.leave_conversation),
            ClientEvent.SEND_MESSAGE.value: (SendMessageEvent, self.send_message),
            ClientEvent.REACT_MESSAGE.value: (ReactMessageEvent, self.react_message),
            ClientEvent.DELETE_MESSAGE.value: (DeleteMessageEvent, self.delete_message),
            ClientEvent.TYPING.value: (ConversationEvent, self.typing),
        }

    async def dispatch_text(self, websocket: WebSocket, user_id: str, text: str) -> None:
        """Decode one raw text frame and dispatch it. Undecodable frames are dropped."""
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            logger.debug("[Fanout] Undecodable frame from %s: %s", user_id, e)
            await self._drop(websocket, user_id, "", "Invalid payload")
            return
        await self.dispatch(websocket, user_id, data)

    async def dispatch(self, websocket: WebSocket, user_id: str, data: dict) -> None:
        """Route one inbound JSON event to its handler."""
        if not isinstance(data, dict):
            await self._drop(websocket, user_id, "", "Invalid payload")
            return

        event_type = str(data.get("type", ""))
        entry = self._handlers.get(event_type)
        if entry is None:
            await self._drop(websocket, user_id, event_type, "Unknown event type")
            return

        model, handler = entry
        try:
            payload = model.model_validate(data)
        except ValidationError as e:
            logger.debug("[Fanout] Invalid %s payload: %s", event_type, e)
            await self._drop(websocket, user_id, event_type, "Invalid payload")
            return

        try:
            await handler(websocket, user_id, payload)
        except PersistenceError as e:
            logger.error(f"[Fanout] {event_type} from {user_id} abandoned: {e.message}")
            await self._drop(websocket, user_id, event_type, "Operation failed")

    # =========================================================================
    # Handlers
    # =========================================================================

    async def join_conversation(self, websocket: WebSocket, user_id: str, payload: ConversationEvent) -> None:
        if not self.manager.join(websocket, payload.conversationId):
            await self._drop(websocket, user_id, ClientEvent.JOIN_CONVERSATION.value, "Not a participant")
            return
        await self.manager.send_personal(websocket, {
            "type": ServerEvent.JOINED_CONVERSATION.value,
            "conversationId": payload.conversationId,
        })

    async def leave_conversation(self, websocket: WebSocket, user_id: str, payload: ConversationEvent) -> None:
        self.manager.leave(websocket, payload.conversationId)

    async def send_message(self, websocket: WebSocket, user_id: str, payload: SendMessageEvent) -> Optional[MessageView]:
        """Persist a message and broadcast it to the conversation, sender included."""
        conversation_id = payload.conversationId
        if not self.store.is_participant(conversation_id, user_id):
            await self._drop(websocket, user_id, ClientEvent.SEND_MESSAGE.value, "Not a participant")
            return None

        message = self.store.create_message(conversation_id, user_id, payload.content)
        view = self.store.materialize(message)

        logger.info(f"[Fanout] new_message {message.id} in {conversation_id} "
                    f"to {self.manager.get_room_size(conversation_id)} connections")
        await self.manager.broadcast(
            {"type": ServerEvent.NEW_MESSAGE.value, **view.model_dump(mode="json")},
            conversation_id,
        )
        return view

    async def react_message(self, websocket: WebSocket, user_id: str, payload: ReactMessageEvent) -> None:
        """Set or clear the user's reaction, then broadcast the full reaction set."""
        message = await self._authorized_message(
            websocket, user_id, ClientEvent.REACT_MESSAGE.value, payload.conversationId, payload.messageId
        )
        if message is None:
            return

        if payload.reaction:
            self.store.set_reaction(message.id, user_id, payload.reaction)
        else:
            self.store.remove_reaction(message.id, user_id)

        reactions = self.store.list_reactions(message.id)
        await self.manager.broadcast({
            "type": ServerEvent.MESSAGE_REACTION_UPDATED.value,
            "messageId": message.id,
            "reactions": [r.model_dump() for r in reactions],
        }, payload.conversationId)

    async def delete_message(self, websocket: WebSocket, user_id: str, payload: DeleteMessageEvent) -> None:
        """Tombstone a message for everyone (sender only) or for the requester."""
        event_type = ClientEvent.DELETE_MESSAGE.value
        message = await self._authorized_message(
            websocket, user_id, event_type, payload.conversationId, payload.messageId
        )
        if message is None:
            return

        if payload.forEveryone and message.sender_id != user_id:
            await self._drop(websocket, user_id, event_type, "Only the sender can delete for everyone")
            return

        self.store.mark_deleted(message.id, user_id, payload.forEveryone)
        event = {
            "type": ServerEvent.MESSAGE_DELETED.value,
            "messageId": message.id,
            "deletedForEveryone": payload.forEveryone,
        }
        if payload.forEveryone:
            await self.manager.broadcast(event, payload.conversationId)
        else:
            await self.manager.send_personal(websocket, event)

    async def typing(self, websocket: WebSocket, user_id: str, payload: ConversationEvent) -> None:
        # Only connections that joined the group may signal typing into it.
        if not self.manager.is_in_room(websocket, payload.conversationId):
            return
        await self.manager.broadcast_except(
            {
                "type": ServerEvent.USER_TYPING.value,
                "userId": user_id,
                "conversationId": payload.conversationId,
            },
            payload.conversationId,
            exclude_websocket=websocket,
        )

    # =========================================================================
    # Helpers
    # =========================================================================

    async def _authorized_message(
        self,
        websocket: WebSocket,
        user_id: str,
        event_type: str,
        conversation_id: str,
        message_id: str,
    ) -> Optional[Message]:
        """Load a message the user may act on, or drop the event."""
        if not self.store.is_participant(conversation_id, user_id):
            await self._drop(websocket, user_id, event_type, "Not a participant")
            return None
        message = self.store.get_message(message_id)
        if message is None or message.conversation_id != conversation_id:
            await self._drop(websocket, user_id, event_type, "Message not found")
            return None
        return message

    async def _drop(self, websocket: WebSocket, user_id: str, event_type: str, reason: str) -> None:
        logger.info(f"[Fanout] Dropped {event_type or '?'} from {user_id}: {reason}")
        if self.report_errors:
            await self.manager.send_personal(websocket, {
                "type": ServerEvent.ERROR.value,
                "event": event_type,
                "error": reason,
            })


_fanout: Optional[FanoutEngine] = None


def get_fanout() -> Optional[FanoutEngine]:
    """Get the global fan-out engine."""
    return _fanout


def set_fanout(engine: Optional[FanoutEngine]) -> None:
    """Set (or clear) the global fan-out engine."""
    global _fanout
    _fanout = engine
