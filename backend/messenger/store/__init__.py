"""Persistent store for users, conversations and messages."""

from .schemas import (
    REACTION_KINDS,
    Conversation,
    ConversationInfo,
    ConversationMember,
    ConversationSummary,
    Message,
    MessageView,
    Participant,
    ReactionEntry,
    ReactionKind,
    UserPublic,
)
from .service import MessagingStore, direct_key_for

__all__ = [
    "REACTION_KINDS",
    "Conversation",
    "ConversationInfo",
    "ConversationMember",
    "ConversationSummary",
    "Message",
    "MessageView",
    "MessagingStore",
    "Participant",
    "ReactionEntry",
    "ReactionKind",
    "UserPublic",
    "direct_key_for",
]
