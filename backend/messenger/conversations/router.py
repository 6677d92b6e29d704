"""Conversation REST API.

These endpoints hydrate the client before it goes real-time and handle the
membership changes the WebSocket channel does not cover.

Endpoints (all require ``Authorization: Bearer <token>``):
    GET    /messages/conversations                       - viewer's conversation list
    GET    /messages/conversation/{id}                   - deletion-reconciled history
    GET    /messages/conversation/{id}/info              - metadata and members
    POST   /messages/conversation/start/{user_id}        - find-or-create direct conversation
    POST   /messages/conversation/group                  - create a group
    PUT    /messages/conversation/{id}/name              - rename group (admin)
    PUT    /messages/conversation/{id}/photo             - set group photo (admin)
    POST   /messages/conversation/{id}/members           - add member (admin)
    DELETE /messages/conversation/{id}/members/{user_id} - remove member (admin)
    POST   /messages/conversation/{id}/leave             - leave a conversation
    PUT    /messages/conversation/{id}/mute              - mute / unmute
    PUT    /messages/conversation/{id}/nickname          - set a member's nickname
    POST   /messages/message/{id}/reaction               - set / clear reaction
    DELETE /messages/message/{id}                        - delete for me / everyone
"""
import logging
from typing import List

from fastapi import APIRouter, Depends

from messenger.auth import get_current_user_id
from messenger.chat.events import ServerEvent
from messenger.chat.manager import get_manager
from messenger.config import get_config
from messenger.errors import AuthorizationError, MessengerError, NotFoundError
from messenger.store import (
    ConversationInfo,
    ConversationSummary,
    Message,
    MessageView,
    MessagingStore,
    Participant,
)

from .schemas import (
    AddMemberRequest,
    ConversationCreated,
    DeleteRequest,
    GroupCreate,
    MuteRequest,
    NicknameRequest,
    PhotoRequest,
    ReactionRequest,
    RenameRequest,
    StatusResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/messages", tags=["messages"])


def _store() -> MessagingStore:
    return MessagingStore.get_instance()


def _require_participant(conversation_id: str, user_id: str) -> Participant:
    participant = _store().get_participant(conversation_id, user_id)
    if participant is None:
        raise AuthorizationError("Not a participant of this conversation")
    return participant


def _require_admin(conversation_id: str, user_id: str) -> Participant:
    participant = _require_participant(conversation_id, user_id)
    conversation = _store().get_conversation(conversation_id)
    if conversation is None:
        raise NotFoundError("Conversation not found")
    if not conversation.is_group:
        raise MessengerError("Only group conversations can be managed", status_code=400)
    if not participant.is_admin:
        raise AuthorizationError("Only group admins can do that")
    return participant


def _require_message(message_id: str, user_id: str) -> Message:
    message = _store().get_message(message_id)
    if message is None:
        raise NotFoundError("Message not found")
    _require_participant(message.conversation_id, user_id)
    return message


# =============================================================================
# Conversations
# =============================================================================


@router.get("/conversations", response_model=List[ConversationSummary])
async def list_conversations(user_id: str = Depends(get_current_user_id)) -> List[ConversationSummary]:
    """List the caller's conversations, most recently active first."""
    return _store().list_conversations(user_id)


@router.get("/conversation/{conversation_id}", response_model=List[MessageView])
async def get_history(
    conversation_id: str,
    user_id: str = Depends(get_current_user_id),
) -> List[MessageView]:
    """Return the conversation's messages, oldest first.

    Messages the caller deleted for themselves are left out; messages
    deleted for everyone show the configured placeholder.
    """
    _require_participant(conversation_id, user_id)
    placeholder = get_config().realtime.deleted_placeholder
    return _store().get_history(conversation_id, user_id, placeholder=placeholder)


@router.get("/conversation/{conversation_id}/info", response_model=ConversationInfo)
async def get_conversation_info(
    conversation_id: str,
    user_id: str = Depends(get_current_user_id),
) -> ConversationInfo:
    """Return metadata, members and the caller's own flags."""
    _require_participant(conversation_id, user_id)
    info = _store().get_conversation_info(conversation_id, user_id)
    if info is None:
        raise NotFoundError("Conversation not found")
    return info


@router.post("/conversation/start/{target_id}", response_model=ConversationCreated)
async def start_direct_conversation(
    target_id: str,
    user_id: str = Depends(get_current_user_id),
) -> ConversationCreated:
    """Find or create the direct conversation between the caller and ``target_id``."""
    if target_id == user_id:
        raise MessengerError("Cannot start a conversation with yourself", status_code=400)
    if _store().get_user_public(target_id) is None:
        raise NotFoundError("User not found")
    conversation_id, created = _store().get_or_create_direct_conversation(user_id, target_id)
    if created:
        logger.info("[messages] %s started direct conversation %s with %s", user_id, conversation_id, target_id)
    return ConversationCreated(conversationId=conversation_id, created=created)


@router.post("/conversation/group", response_model=ConversationCreated)
async def create_group(
    body: GroupCreate,
    user_id: str = Depends(get_current_user_id),
) -> ConversationCreated:
    """Create a group; the caller becomes its admin."""
    conversation_id = _store().create_group_conversation(user_id, body.name, body.userIds)
    return ConversationCreated(conversationId=conversation_id)


@router.put("/conversation/{conversation_id}/name", response_model=StatusResponse)
async def rename_group(
    conversation_id: str,
    body: RenameRequest,
    user_id: str = Depends(get_current_user_id),
) -> StatusResponse:
    _require_admin(conversation_id, user_id)
    _store().update_conversation(conversation_id, name=body.name)
    return StatusResponse(message="Group name updated")


@router.put("/conversation/{conversation_id}/photo", response_model=StatusResponse)
async def set_group_photo(
    conversation_id: str,
    body: PhotoRequest,
    user_id: str = Depends(get_current_user_id),
) -> StatusResponse:
    _require_admin(conversation_id, user_id)
    _store().update_conversation(conversation_id, photo_url=body.photoUrl)
    return StatusResponse(message="Group photo updated")


@router.post("/conversation/{conversation_id}/members", response_model=StatusResponse)
async def add_member(
    conversation_id: str,
    body: AddMemberRequest,
    user_id: str = Depends(get_current_user_id),
) -> StatusResponse:
    _require_admin(conversation_id, user_id)
    if _store().get_user_public(body.userId) is None:
        raise NotFoundError("User not found")
    _store().add_participant(conversation_id, body.userId)
    return StatusResponse(message="Member added")


@router.delete("/conversation/{conversation_id}/members/{member_id}", response_model=StatusResponse)
async def remove_member(
    conversation_id: str,
    member_id: str,
    user_id: str = Depends(get_current_user_id),
) -> StatusResponse:
    _require_admin(conversation_id, user_id)
    if not _store().remove_participant(conversation_id, member_id):
        raise NotFoundError("Member not found")
    return StatusResponse(message="Member removed")


@router.post("/conversation/{conversation_id}/leave", response_model=StatusResponse)
async def leave_conversation(
    conversation_id: str,
    user_id: str = Depends(get_current_user_id),
) -> StatusResponse:
    _require_participant(conversation_id, user_id)
    _store().remove_participant(conversation_id, user_id)
    return StatusResponse(message="Left conversation")


@router.put("/conversation/{conversation_id}/mute", response_model=StatusResponse)
async def set_mute(
    conversation_id: str,
    body: MuteRequest,
    user_id: str = Depends(get_current_user_id),
) -> StatusResponse:
    _require_participant(conversation_id, user_id)
    _store().set_muted(conversation_id, user_id, body.muted)
    return StatusResponse(message="Muted" if body.muted else "Unmuted")


@router.put("/conversation/{conversation_id}/nickname", response_model=StatusResponse)
async def set_nickname(
    conversation_id: str,
    body: NicknameRequest,
    user_id: str = Depends(get_current_user_id),
) -> StatusResponse:
    _require_participant(conversation_id, user_id)
    if not _store().is_participant(conversation_id, body.userId):
        raise NotFoundError("Member not found")
    _store().set_nickname(conversation_id, body.userId, body.nickname)
    return StatusResponse(message="Nickname updated")


# =============================================================================
# Messages
# =============================================================================


@router.post("/message/{message_id}/reaction", response_model=StatusResponse)
async def react_to_message(
    message_id: str,
    body: ReactionRequest,
    user_id: str = Depends(get_current_user_id),
) -> StatusResponse:
    """Set or clear the caller's reaction, then push the new set to live clients."""
    message = _require_message(message_id, user_id)
    if body.reaction:
        _store().set_reaction(message_id, user_id, body.reaction)
    else:
        _store().remove_reaction(message_id, user_id)

    manager = get_manager()
    if manager is not None:
        reactions = _store().list_reactions(message_id)
        await manager.broadcast({
            "type": ServerEvent.MESSAGE_REACTION_UPDATED.value,
            "messageId": message_id,
            "reactions": [r.model_dump() for r in reactions],
        }, message.conversation_id)
    return StatusResponse(message="Reaction updated")


@router.delete("/message/{message_id}", response_model=StatusResponse)
async def delete_message(
    message_id: str,
    body: DeleteRequest,
    user_id: str = Depends(get_current_user_id),
) -> StatusResponse:
    """Delete a message for the caller, or for everyone if the caller sent it."""
    message = _require_message(message_id, user_id)
    if body.forEveryone and message.sender_id != user_id:
        raise AuthorizationError("Can only delete your own messages for everyone")
    _store().mark_deleted(message_id, user_id, body.forEveryone)

    manager = get_manager()
    if manager is not None and body.forEveryone:
        await manager.broadcast({
            "type": ServerEvent.MESSAGE_DELETED.value,
            "messageId": message_id,
            "deletedForEveryone": True,
        }, message.conversation_id)
    return StatusResponse(message="Message deleted")
