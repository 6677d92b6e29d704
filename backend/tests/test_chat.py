"""End-to-end tests for the real-time WebSocket channel.

Each client connects with a signed token, receives a ``presence`` snapshot,
joins conversation groups and exchanges send/react/delete/typing events.
Dropped events produce no reply, so tests prove a drop by sending a follow-up
event and checking that its reply is the next frame received.
"""
import pytest
from starlette.websockets import WebSocketDisconnect

from messenger.chat.fanout import get_fanout
from messenger.chat.manager import get_manager

from conftest import auth_headers, make_token, ws_url


def receive_presence(ws):
    """Helper to receive and validate the presence snapshot sent on connect."""
    presence = ws.receive_json()
    assert presence["type"] == "presence"
    return presence["userIds"]


def join(ws, conversation_id):
    ws.send_json({"type": "join_conversation", "conversationId": conversation_id})
    ack = ws.receive_json()
    assert ack == {"type": "joined_conversation", "conversationId": conversation_id}


class TestHandshake:

    def test_missing_token_rejected(self, api_client):
        with pytest.raises(WebSocketDisconnect) as exc_info:
            with api_client.websocket_connect("/ws"):
                pass
        assert exc_info.value.code == 1008

    def test_bad_signature_rejected(self, api_client, users):
        token = make_token("alice", secret="someone-elses-signing-secret-0123456789")
        with pytest.raises(WebSocketDisconnect) as exc_info:
            with api_client.websocket_connect(f"/ws?token={token}"):
                pass
        assert exc_info.value.code == 1008
        assert get_manager().online_user_ids() == []

    def test_expired_token_rejected(self, api_client, users):
        token = make_token("alice", expires_in=-60)
        with pytest.raises(WebSocketDisconnect) as exc_info:
            with api_client.websocket_connect(f"/ws?token={token}"):
                pass
        assert exc_info.value.code == 1008

    def test_bearer_header_accepted(self, api_client, users):
        with api_client.websocket_connect("/ws", headers=auth_headers("alice")) as ws:
            assert receive_presence(ws) == ["alice"]

    def test_rejected_connection_not_announced(self, api_client, users):
        with api_client.websocket_connect(ws_url("alice")) as alice:
            receive_presence(alice)
            with pytest.raises(WebSocketDisconnect):
                with api_client.websocket_connect("/ws?token=garbage"):
                    pass

            with api_client.websocket_connect(ws_url("bob")) as bob:
                receive_presence(bob)
                # The first frame alice sees is bob coming online, nothing before it.
                assert alice.receive_json() == {"type": "user_online", "userId": "bob"}


class TestPresence:

    def test_presence_snapshot_and_online_offline(self, api_client, users):
        with api_client.websocket_connect(ws_url("alice")) as alice:
            assert receive_presence(alice) == ["alice"]

            with api_client.websocket_connect(ws_url("bob")) as bob:
                assert receive_presence(bob) == ["alice", "bob"]
                assert alice.receive_json() == {"type": "user_online", "userId": "bob"}

                response = api_client.get("/presence")
                assert response.json() == {"userIds": ["alice", "bob"]}

            assert alice.receive_json() == {"type": "user_offline", "userId": "bob"}
            assert api_client.get("/presence").json() == {"userIds": ["alice"]}

    def test_second_connection_keeps_user_online(self, api_client, users):
        with api_client.websocket_connect(ws_url("carol")) as carol:
            receive_presence(carol)
            with api_client.websocket_connect(ws_url("alice")) as first:
                receive_presence(first)
                assert carol.receive_json() == {"type": "user_online", "userId": "alice"}

                with api_client.websocket_connect(ws_url("alice")) as second:
                    receive_presence(second)
                    assert carol.receive_json() == {"type": "user_online", "userId": "alice"}
                    first.close()

                    # The stale socket closing does not announce alice offline.
                    assert api_client.get("/presence").json()["userIds"] == ["alice", "carol"]

            assert carol.receive_json() == {"type": "user_offline", "userId": "alice"}

    def test_health_reports_connections(self, api_client, users):
        with api_client.websocket_connect(ws_url("alice")) as alice:
            receive_presence(alice)
            assert api_client.get("/health").json() == {"status": "ok", "connections": 1}


class TestRooms:

    def test_join_acknowledged_for_participant(self, api_client, direct_conversation):
        with api_client.websocket_connect(ws_url("alice")) as alice:
            receive_presence(alice)
            join(alice, direct_conversation)

    def test_non_participant_join_ignored(self, api_client, store, direct_conversation):
        carol_bob, _ = store.get_or_create_direct_conversation("carol", "bob")
        with api_client.websocket_connect(ws_url("carol")) as carol:
            receive_presence(carol)
            carol.send_json({"type": "join_conversation", "conversationId": direct_conversation})
            # No ack for the refused join; the next frame is the ack for the allowed one.
            join(carol, carol_bob)

    def test_non_participant_join_reported_when_enabled(self, api_client, direct_conversation):
        get_fanout().report_errors = True
        with api_client.websocket_connect(ws_url("carol")) as carol:
            receive_presence(carol)
            carol.send_json({"type": "join_conversation", "conversationId": direct_conversation})
            assert carol.receive_json() == {
                "type": "error",
                "event": "join_conversation",
                "error": "Not a participant",
            }


class TestMessaging:

    def test_send_message_reaches_room_members(self, api_client, direct_conversation):
        with api_client.websocket_connect(ws_url("alice")) as alice, \
             api_client.websocket_connect(ws_url("bob")) as bob:
            receive_presence(alice)
            receive_presence(bob)
            assert alice.receive_json()["type"] == "user_online"
            join(alice, direct_conversation)
            join(bob, direct_conversation)

            alice.send_json({"type": "send_message", "conversationId": direct_conversation, "content": "Hi Bob"})

            received_by_alice = alice.receive_json()
            received_by_bob = bob.receive_json()
            assert received_by_alice == received_by_bob
            assert received_by_bob["type"] == "new_message"
            assert received_by_bob["content"] == "Hi Bob"
            assert received_by_bob["conversation_id"] == direct_conversation
            assert received_by_bob["sender"]["id"] == "alice"
            assert received_by_bob["reactions"] == []

    def test_message_not_delivered_outside_room(self, api_client, direct_conversation):
        with api_client.websocket_connect(ws_url("alice")) as alice, \
             api_client.websocket_connect(ws_url("bob")) as bob:
            receive_presence(alice)
            receive_presence(bob)
            alice.receive_json()
            join(alice, direct_conversation)

            # bob is a participant but never joined the group.
            alice.send_json({"type": "send_message", "conversationId": direct_conversation, "content": "ping"})
            assert alice.receive_json()["content"] == "ping"

            join(bob, direct_conversation)

    def test_non_participant_send_not_persisted(self, api_client, store, direct_conversation):
        carol_bob, _ = store.get_or_create_direct_conversation("carol", "bob")
        with api_client.websocket_connect(ws_url("carol")) as carol:
            receive_presence(carol)
            carol.send_json({"type": "send_message", "conversationId": direct_conversation, "content": "intrude"})
            carol.send_json({"type": "typing", "conversationId": direct_conversation})
            carol.send_json({"type": "launch_rockets"})
            carol.send_json({"type": "send_message", "conversationId": direct_conversation})

            join(carol, carol_bob)

        assert store.last_message(direct_conversation) is None

    def test_typing_goes_to_others_only(self, api_client, direct_conversation):
        with api_client.websocket_connect(ws_url("alice")) as alice, \
             api_client.websocket_connect(ws_url("bob")) as bob:
            receive_presence(alice)
            receive_presence(bob)
            alice.receive_json()
            join(alice, direct_conversation)
            join(bob, direct_conversation)

            alice.send_json({"type": "typing", "conversationId": direct_conversation})
            assert bob.receive_json() == {
                "type": "user_typing",
                "userId": "alice",
                "conversationId": direct_conversation,
            }

            # alice's next frame is her own message, not her typing echo.
            alice.send_json({"type": "send_message", "conversationId": direct_conversation, "content": "done"})
            assert alice.receive_json()["type"] == "new_message"

    def test_full_conversation_scenario(self, api_client, store, direct_conversation):
        """Send, react, clear, delete for me and for everyone, then check history."""
        with api_client.websocket_connect(ws_url("alice")) as alice, \
             api_client.websocket_connect(ws_url("bob")) as bob:
            receive_presence(alice)
            receive_presence(bob)
            alice.receive_json()
            join(alice, direct_conversation)
            join(bob, direct_conversation)

            alice.send_json({"type": "send_message", "conversationId": direct_conversation, "content": "first"})
            first = bob.receive_json()
            alice.receive_json()
            bob.send_json({"type": "send_message", "conversationId": direct_conversation, "content": "second"})
            second = alice.receive_json()
            bob.receive_json()

            bob.send_json({
                "type": "react_message", "messageId": first["id"],
                "conversationId": direct_conversation, "reaction": "heart",
            })
            reaction_event = alice.receive_json()
            assert bob.receive_json() == reaction_event
            assert reaction_event == {
                "type": "message_reaction_updated",
                "messageId": first["id"],
                "reactions": [{"user_id": "bob", "reaction": "heart"}],
            }

            bob.send_json({
                "type": "react_message", "messageId": first["id"],
                "conversationId": direct_conversation, "reaction": "laugh",
            })
            assert alice.receive_json()["reactions"] == [{"user_id": "bob", "reaction": "laugh"}]
            bob.receive_json()

            # alice hides bob's message for herself only.
            alice.send_json({
                "type": "delete_message", "messageId": second["id"],
                "conversationId": direct_conversation, "forEveryone": False,
            })
            assert alice.receive_json() == {
                "type": "message_deleted", "messageId": second["id"], "deletedForEveryone": False,
            }

            # bob may not delete alice's message for everyone; the drop is silent.
            bob.send_json({
                "type": "delete_message", "messageId": first["id"],
                "conversationId": direct_conversation, "forEveryone": True,
            })
            alice.send_json({
                "type": "delete_message", "messageId": first["id"],
                "conversationId": direct_conversation, "forEveryone": True,
            })
            expected = {"type": "message_deleted", "messageId": first["id"], "deletedForEveryone": True}
            assert alice.receive_json() == expected
            assert bob.receive_json() == expected

        alice_history = api_client.get(
            f"/messages/conversation/{direct_conversation}", headers=auth_headers("alice")
        ).json()
        assert [m["content"] for m in alice_history] == ["[Message deleted]"]
        assert alice_history[0]["deleted_for_everyone"] is True
        assert alice_history[0]["reactions"] == [{"user_id": "bob", "reaction": "laugh"}]

        bob_history = api_client.get(
            f"/messages/conversation/{direct_conversation}", headers=auth_headers("bob")
        ).json()
        assert [m["content"] for m in bob_history] == ["[Message deleted]", "second"]


def test_direct_conversation_end_to_end(api_client, direct_conversation):
    """alice says hi, bob hearts it, alice deletes it for everyone."""
    with api_client.websocket_connect(ws_url("alice")) as alice, \
         api_client.websocket_connect(ws_url("bob")) as bob:
        receive_presence(alice)
        receive_presence(bob)
        alice.receive_json()
        join(alice, direct_conversation)
        join(bob, direct_conversation)

        alice.send_json({"type": "send_message", "conversationId": direct_conversation, "content": "hi"})
        new_message = bob.receive_json()
        assert new_message["type"] == "new_message"
        assert new_message["content"] == "hi"
        assert new_message["sender_id"] == "alice"
        assert alice.receive_json() == new_message

        bob.send_json({
            "type": "react_message", "messageId": new_message["id"],
            "conversationId": direct_conversation, "reaction": "heart",
        })
        for ws in (alice, bob):
            update = ws.receive_json()
            assert update["type"] == "message_reaction_updated"
            assert update["reactions"] == [{"user_id": "bob", "reaction": "heart"}]

        alice.send_json({
            "type": "delete_message", "messageId": new_message["id"],
            "conversationId": direct_conversation, "forEveryone": True,
        })
        for ws in (alice, bob):
            assert ws.receive_json() == {
                "type": "message_deleted",
                "messageId": new_message["id"],
                "deletedForEveryone": True,
            }

    for headers in (auth_headers("alice"), auth_headers("bob")):
        history = api_client.get(f"/messages/conversation/{direct_conversation}", headers=headers).json()
        assert [m["content"] for m in history] == ["[Message deleted]"]


def test_undecodable_frame_keeps_connection_open(api_client, direct_conversation):
    with api_client.websocket_connect(ws_url("bob")) as bob:
        receive_presence(bob)
        with api_client.websocket_connect(ws_url("alice")) as alice:
            receive_presence(alice)
            assert bob.receive_json() == {"type": "user_online", "userId": "alice"}

            alice.send_text("not json")
            join(alice, direct_conversation)
            assert api_client.get("/presence").json()["userIds"] == ["alice", "bob"]

        # The only offline announcement is the real close.
        assert bob.receive_json() == {"type": "user_offline", "userId": "alice"}


def test_undecodable_frame_reported_when_enabled(api_client, users):
    get_fanout().report_errors = True
    with api_client.websocket_connect(ws_url("alice")) as alice:
        receive_presence(alice)
        alice.send_text("{broken")
        assert alice.receive_json() == {"type": "error", "event": "", "error": "Invalid payload"}
