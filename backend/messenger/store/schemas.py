"""Pydantic schemas for records held in the messaging store.

These models are what the store hands back to callers. The real-time layer
dumps them with ``model_dump(mode="json")`` before broadcasting, and the REST
layer returns them directly.
"""
from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, Field


# Reaction vocabulary accepted by the REST layer. The WebSocket layer stores
# whatever kind the client sends.
ReactionKind = Literal["heart", "laugh", "wow", "sad", "angry", "like"]
REACTION_KINDS = ("heart", "laugh", "wow", "sad", "angry", "like")


class UserPublic(BaseModel):
    """Public profile fields denormalised into messages and member lists."""
    id: str
    first_name: str
    last_name: str
    avatar_url: Optional[str] = None


class Conversation(BaseModel):
    """A direct (two-party) or group conversation.

    Attributes:
        direct_key: Sorted ``"<user>:<user>"`` pair for direct conversations,
            unique across the store. ``None`` for groups.
    """
    id: str
    is_group: bool = False
    name: Optional[str] = None
    photo_url: Optional[str] = None
    created_at: datetime
    direct_key: Optional[str] = None


class Participant(BaseModel):
    """Standing membership of a user in a conversation."""
    conversation_id: str
    user_id: str
    nickname: Optional[str] = None
    is_admin: bool = False
    is_muted: bool = False
    joined_at: datetime


class Message(BaseModel):
    """A persisted message row. Content never changes after insert."""
    id: str
    conversation_id: str
    sender_id: str
    content: str
    created_at: datetime


class ReactionEntry(BaseModel):
    """One user's reaction on a message."""
    user_id: str
    reaction: str


class MessageView(BaseModel):
    """A message as delivered to clients, with sender and reactions."""
    id: str
    conversation_id: str
    sender_id: str
    content: str
    created_at: datetime
    sender: Optional[UserPublic] = None
    reactions: List[ReactionEntry] = Field(default_factory=list)
    deleted_for_everyone: bool = False


class LastMessage(BaseModel):
    content: str
    created_at: datetime
    sender_id: str


class ConversationMember(UserPublic):
    """A participant joined with their public profile."""
    nickname: Optional[str] = None
    is_admin: bool = False
    joined_at: Optional[datetime] = None


class ConversationSummary(BaseModel):
    """Row of the viewer's conversation list."""
    id: str
    is_group: bool
    name: Optional[str] = None
    photo_url: Optional[str] = None
    created_at: datetime
    participants: List[ConversationMember] = Field(default_factory=list)
    last_message: Optional[LastMessage] = None
    is_muted: bool = False
    member_count: int = 0


class ConversationInfo(BaseModel):
    """Conversation metadata as seen by one participant."""
    id: str
    is_group: bool
    name: Optional[str] = None
    photo_url: Optional[str] = None
    created_at: datetime
    members: List[ConversationMember] = Field(default_factory=list)
    is_muted: bool = False
    my_nickname: Optional[str] = None
    is_admin: bool = False
