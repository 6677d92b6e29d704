"""Inbound WebSocket event payloads.

Clients send JSON objects with a ``type`` field plus the fields below (in
camelCase, matching the web client). Unknown extra fields are ignored.
"""
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, field_validator


class ClientEvent(str, Enum):
    """Event types a client may send."""
    JOIN_CONVERSATION = "join_conversation"
    LEAVE_CONVERSATION = "leave_conversation"
    SEND_MESSAGE = "send_message"
    REACT_MESSAGE = "react_message"
    DELETE_MESSAGE = "delete_message"
    TYPING = "typing"


class ServerEvent(str, Enum):
    """Event types the server emits."""
    PRESENCE = "presence"
    USER_ONLINE = "user_online"
    USER_OFFLINE = "user_offline"
    JOINED_CONVERSATION = "joined_conversation"
    NEW_MESSAGE = "new_message"
    MESSAGE_REACTION_UPDATED = "message_reaction_updated"
    MESSAGE_DELETED = "message_deleted"
    USER_TYPING = "user_typing"
    ERROR = "error"


class ConversationEvent(BaseModel):
    """Payload of join_conversation, leave_conversation and typing."""
    conversationId: str = Field(..., min_length=1)


class SendMessageEvent(BaseModel):
    conversationId: str = Field(..., min_length=1)
    content: str

    @field_validator("content")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("content is required")
        return value


class ReactMessageEvent(BaseModel):
    """``reaction`` of None (or empty) removes the user's reaction.

    The kind is not checked against the reaction vocabulary here.
    """
    messageId: str = Field(..., min_length=1)
    conversationId: str = Field(..., min_length=1)
    reaction: Optional[str] = None


class DeleteMessageEvent(BaseModel):
    messageId: str = Field(..., min_length=1)
    conversationId: str = Field(..., min_length=1)
    forEveryone: bool = False
