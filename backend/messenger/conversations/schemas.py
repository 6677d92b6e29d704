"""Request/response bodies for the conversation REST endpoints."""
from typing import List, Optional

from pydantic import BaseModel, Field

from messenger.store import ReactionKind


class GroupCreate(BaseModel):
    """Request body for creating a group conversation."""
    name: Optional[str] = Field(default=None, max_length=255)
    userIds: List[str] = Field(default_factory=list)


class ConversationCreated(BaseModel):
    conversationId: str
    created: bool = True


class RenameRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)


class PhotoRequest(BaseModel):
    photoUrl: Optional[str] = None


class AddMemberRequest(BaseModel):
    userId: str = Field(..., min_length=1)


class MuteRequest(BaseModel):
    muted: bool


class NicknameRequest(BaseModel):
    userId: str = Field(..., min_length=1)
    nickname: Optional[str] = Field(default=None, max_length=100)


class ReactionRequest(BaseModel):
    """A reaction from the fixed vocabulary, or null to remove it."""
    reaction: Optional[ReactionKind] = None


class DeleteRequest(BaseModel):
    forEveryone: bool = False


class StatusResponse(BaseModel):
    message: str
