"""Real-time router providing the WebSocket channel and presence lookup.

This module provides:
    - WebSocket /ws: authenticated real-time channel
    - GET /presence: ids of users currently online in this process

Handshake:
    The session token is presented once, at connection time, either as the
    ``token`` query parameter or as an ``Authorization: Bearer`` header. A
    missing or invalid token closes the socket with 1008 (Policy Violation)
    before it is accepted and before any presence or room state changes.

Protocol Message Types (client -> server):
    - join_conversation: {conversationId}
    - leave_conversation: {conversationId}
    - send_message: {conversationId, content}
    - react_message: {messageId, conversationId, reaction | null}
    - delete_message: {messageId, conversationId, forEveryone}
    - typing: {conversationId}

Protocol Message Types (server -> client):
    - presence, user_online, user_offline
    - joined_conversation, new_message, message_reaction_updated,
      message_deleted, user_typing, error
"""
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from messenger.auth import TokenVerifier, extract_bearer
from messenger.config import get_config
from messenger.errors import AuthenticationError

from .events import ServerEvent
from .fanout import get_fanout
from .manager import get_manager

logger = logging.getLogger(__name__)

router = APIRouter()

# 1008 = Policy Violation, 1011 = Internal Error
POLICY_VIOLATION = 1008
INTERNAL_ERROR = 1011


@router.get("/presence")
async def get_presence() -> dict:
    """List users currently online.

    Returns:
        dict: ``{"userIds": [...]}``, empty if the hub is not running.
    """
    manager = get_manager()
    return {"userIds": manager.online_user_ids() if manager else []}


@router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket) -> None:
    """WebSocket endpoint for one authenticated client.

    Protocol Flow:
        1. Client connects with a token → server verifies it
           → on failure: close(1008), nothing else happens
        2. Server accepts → sends {type: "presence", userIds: [...]}
           → broadcasts {type: "user_online", userId} to everyone else
        3. Client sends {type: "join_conversation", conversationId}
           → server sends {type: "joined_conversation", conversationId} if allowed
        4. Client sends send/react/delete/typing events → fan-out
        5. On disconnect → server broadcasts {type: "user_offline", userId}
    """
    config = get_config()
    token = (
        websocket.query_params.get(config.auth.query_param)
        or extract_bearer(websocket.headers.get("authorization"))
    )
    try:
        user_id = TokenVerifier.from_config(config).verify(token)
    except AuthenticationError as e:
        logger.warning(f"[WS] Handshake rejected: {e.message}")
        await websocket.close(code=POLICY_VIOLATION)
        return

    manager = get_manager()
    fanout = get_fanout()
    if manager is None or fanout is None:
        logger.error("[WS] Real-time hub is not running; refusing connection")
        await websocket.close(code=INTERNAL_ERROR)
        return

    online = await manager.connect(websocket, user_id)
    try:
        await websocket.send_json({
            "type": ServerEvent.PRESENCE.value,
            "userIds": online,
        })

        # Main message loop
        while True:
            text = await websocket.receive_text()
            logger.debug("[WS] %s sent %s", user_id, text)
            await fanout.dispatch_text(websocket, user_id, text)

    except WebSocketDisconnect:
        logger.info(f"[WS] {user_id} closed the connection")
    finally:
        await manager.disconnect(websocket)
