"""
End-to-end tests for the /ws endpoint through FastAPI's TestClient.
"""
import pytest
from fastapi import WebSocketDisconnect
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session
from core.security import create_access_token
from db.models import Message, Notification, NotificationType, Task


def open_socket(client: TestClient, user, **kwargs):
    """Connect as `user` with a query-string token."""
    return client.websocket_connect(f"/ws?token={create_access_token(user.id, user.role.value)}", **kwargs)


def expect(ws, event: str) -> dict:
    frame = ws.receive_json()
    assert frame["type"] == event, frame
    return frame


def join(ws, **thread) -> dict:
    ws.send_json({"action": "join_room", **thread})
    return expect(ws, "joined_room")


class TestHandshake:
    """Identity resolution before accept."""

    @pytest.mark.parametrize("url,reason", [
        ("/ws", "no token"),
        ("/ws?token=not-a-jwt", "invalid token"),
    ])
    def test_rejects_bad_credentials(self, test_client: TestClient, users, url, reason):
        with pytest.raises(WebSocketDisconnect) as exc:
            with test_client.websocket_connect(url):
                pass

        assert exc.value.code == 4001
        assert exc.value.reason == reason

    def test_rejects_expired_token(self, test_client: TestClient, users):
        token = create_access_token(users["client"].id, expires_minutes=-5)
        with pytest.raises(WebSocketDisconnect) as exc:
            with test_client.websocket_connect(f"/ws?token={token}"):
                pass

        assert exc.value.code == 4001
        assert exc.value.reason == "invalid token"

    def test_rejects_suspended_user(self, test_client: TestClient, users):
        with pytest.raises(WebSocketDisconnect) as exc:
            with open_socket(test_client, users["suspended"]):
                pass

        assert exc.value.code == 4001
        assert exc.value.reason == "unauthorized"
        assert test_client.app.state.connection_manager.get_connection_count() == 0

    def test_rejects_unknown_user(self, test_client: TestClient, users):
        with pytest.raises(WebSocketDisconnect) as exc:
            with test_client.websocket_connect(f"/ws?token={create_access_token(31337)}"):
                pass

        assert exc.value.reason == "unauthorized"

    def test_accepts_authorization_header(self, test_client: TestClient, users, auth_headers):
        with test_client.websocket_connect("/ws", headers=auth_headers(users["client"])) as ws:
            frame = expect(ws, "connected")
            assert frame["data"]["user_id"] == users["client"].id
            assert frame["data"]["role"] == "CLIENT"

    def test_accepts_cookie(self, test_client: TestClient, users):
        token = create_access_token(users["freelancer"].id)
        with test_client.websocket_connect("/ws", headers={"Cookie": f"accessToken={token}"}) as ws:
            assert expect(ws, "connected")["data"]["user_id"] == users["freelancer"].id

    def test_connection_limit(self, test_client: TestClient, users):
        manager = test_client.app.state.connection_manager
        manager.max_connections_per_user = 1

        with open_socket(test_client, users["client"]) as ws:
            expect(ws, "connected")
            with pytest.raises(WebSocketDisconnect) as exc:
                with open_socket(test_client, users["client"]):
                    pass
            assert exc.value.code == 4002

    def test_personal_room_and_cleanup(self, test_client: TestClient, users):
        manager = test_client.app.state.connection_manager
        with open_socket(test_client, users["client"]) as ws:
            connection_id = expect(ws, "connected")["data"]["connection_id"]
            assert manager.is_member(connection_id, f"user:{users['client'].id}")
            assert manager.is_online(users["client"].id)

        assert not manager.is_online(users["client"].id)
        assert manager.get_connection(connection_id) is None


class TestRooms:
    """Joining and leaving thread rooms."""

    def test_task_chat_scenario(self, test_client: TestClient, test_db, users, task):
        client, freelancer = users["client"], users["freelancer"]
        with open_socket(test_client, client) as ws_a, open_socket(test_client, freelancer) as ws_b:
            expect(ws_a, "connected")
            expect(ws_b, "connected")
            assert join(ws_a, task_id=task.id)["data"]["room"] == f"task:{task.id}"
            join(ws_b, task_id=task.id)

            ws_b.send_json({"action": "send_message", "task_id": task.id, "content": "hello"})

            received = expect(ws_a, "receive_message")["data"]
            assert received["content"] == "hello"
            assert received["sender_id"] == freelancer.id
            assert received["sender"]["name"] == "Bruno Freelancer"

            notification_frame = expect(ws_a, "new_notification")["data"]
            assert notification_frame["type"] == "NEW_MESSAGE"
            assert notification_frame["url"] == f"/dashboard/projects/{task.id}"

            expect(ws_b, "receive_message")

        notification = test_db.query(Notification).one()
        assert notification.user_id == client.id
        assert notification.type == NotificationType.NEW_MESSAGE

    def test_outsider_cannot_join(self, test_client: TestClient, test_db, users, conversation):
        manager = test_client.app.state.connection_manager
        with open_socket(test_client, users["outsider"]) as ws:
            connection_id = expect(ws, "connected")["data"]["connection_id"]

            ws.send_json({"action": "join_conversation", "conversation_id": conversation.id})
            error = expect(ws, "error")

            assert error["code"] == "FORBIDDEN"
            assert not manager.is_member(connection_id, f"conversation:{conversation.id}")

            # The connection stays usable after the rejection
            ws.send_json({"action": "send_message", "conversation_id": conversation.id, "content": "sneaky"})
            assert expect(ws, "error")["code"] == "FORBIDDEN"

        assert test_db.query(Message).count() == 0

    def test_reassigned_freelancer_loses_task_room(self, test_client: TestClient, test_db, users, task):
        with open_socket(test_client, users["freelancer"]) as ws:
            expect(ws, "connected")
            join(ws, task_id=task.id)

            with Session(bind=test_db.get_bind()) as other:
                other.query(Task).filter(Task.id == task.id).update({"freelancer_id": users["outsider"].id})
                other.commit()

            ws.send_json({"action": "join_room", "task_id": task.id})
            assert expect(ws, "error")["code"] == "FORBIDDEN"

            ws.send_json({"action": "send_message", "task_id": task.id, "content": "still here?"})
            assert expect(ws, "error")["code"] == "FORBIDDEN"

        assert test_db.query(Message).count() == 0

    def test_join_missing_thread(self, test_client: TestClient, users):
        with open_socket(test_client, users["client"]) as ws:
            expect(ws, "connected")
            ws.send_json({"action": "join_conversation", "conversation_id": 404})
            assert expect(ws, "error")["code"] == "NOT_FOUND"

    def test_leave_room(self, test_client: TestClient, users, conversation):
        manager = test_client.app.state.connection_manager
        with open_socket(test_client, users["client"]) as ws:
            connection_id = expect(ws, "connected")["data"]["connection_id"]
            join(ws, conversation_id=conversation.id)

            ws.send_json({"action": "leave_conversation", "conversation_id": conversation.id})
            left = expect(ws, "left_room")

            assert left["data"]["room"] == f"conversation:{conversation.id}"
            assert not manager.is_member(connection_id, f"conversation:{conversation.id}")


class TestMessaging:
    """Conversation messages, read receipts and typing over the socket."""

    def test_conversation_message_reaches_room(self, test_client: TestClient, test_db, users, conversation):
        with open_socket(test_client, users["client"]) as ws_a, open_socket(test_client, users["freelancer"]) as ws_b:
            expect(ws_a, "connected")
            expect(ws_b, "connected")
            join(ws_a, conversation_id=conversation.id)
            join(ws_b, conversation_id=conversation.id)

            ws_a.send_json({"action": "send_message", "conversation_id": conversation.id, "content": "  hi there "})

            for ws in (ws_a, ws_b):
                data = expect(ws, "new_message")["data"]
                assert data["content"] == "hi there"
                assert data["conversation_id"] == conversation.id

        assert test_db.query(Message).count() == 1
        assert test_db.query(Notification).count() == 0

    def test_rest_send_broadcasts_like_socket_send(self, test_client: TestClient, users, conversation, auth_headers):
        with open_socket(test_client, users["client"]) as ws:
            expect(ws, "connected")
            join(ws, conversation_id=conversation.id)

            response = test_client.post(
                f"/v1/conversations/{conversation.id}/messages",
                json={"content": "https://cdn.example.com/contract.pdf", "message_type": "FILE"},
                headers=auth_headers(users["freelancer"])
            )
            assert response.status_code == 201

            data = expect(ws, "new_message")["data"]
            assert data["id"] == response.json()["id"]
            assert data["message_type"] == "FILE"

    def test_mark_as_read_notifies_others_only(self, test_client: TestClient, users, conversation):
        with open_socket(test_client, users["client"]) as ws_a, open_socket(test_client, users["freelancer"]) as ws_b:
            expect(ws_a, "connected")
            expect(ws_b, "connected")
            join(ws_a, conversation_id=conversation.id)
            join(ws_b, conversation_id=conversation.id)

            ws_a.send_json({"action": "mark_as_read", "conversation_id": conversation.id})

            receipt = expect(ws_b, "messages_read")["data"]
            assert receipt["user_id"] == users["client"].id
            assert receipt["conversation_id"] == conversation.id

            # The reader's own socket gets nothing; the next frame it sees is this error
            ws_a.send_json({"action": "dance"})
            assert expect(ws_a, "error")["code"] == "INVALID_ACTION"

    def test_mark_as_read_requires_conversation(self, test_client: TestClient, users, task):
        with open_socket(test_client, users["client"]) as ws:
            expect(ws, "connected")
            ws.send_json({"action": "mark_as_read", "task_id": task.id})
            assert expect(ws, "error")["code"] == "INVALID_MESSAGE"

    def test_typing_is_relayed_to_others(self, test_client: TestClient, users, task):
        with open_socket(test_client, users["client"]) as ws_a, open_socket(test_client, users["freelancer"]) as ws_b:
            expect(ws_a, "connected")
            expect(ws_b, "connected")
            join(ws_a, task_id=task.id)
            join(ws_b, task_id=task.id)

            ws_a.send_json({"action": "typing_start", "task_id": task.id})
            assert expect(ws_b, "user_typing")["data"] == {"user_id": users["client"].id, "task_id": task.id}

            ws_a.send_json({"action": "typing_stop", "task_id": task.id})
            expect(ws_b, "user_stopped_typing")

    def test_typing_requires_joined_room(self, test_client: TestClient, users, conversation):
        with open_socket(test_client, users["client"]) as ws:
            expect(ws, "connected")
            ws.send_json({"action": "typing_start", "conversation_id": conversation.id})
            assert expect(ws, "error")["code"] == "FORBIDDEN"

    def test_new_conversation_event(self, test_client: TestClient, users, auth_headers):
        with open_socket(test_client, users["freelancer"]) as ws:
            expect(ws, "connected")

            response = test_client.post(
                "/v1/conversations",
                json={"participant_ids": [users["freelancer"].id]},
                headers=auth_headers(users["client"])
            )

            data = expect(ws, "new_conversation")["data"]
            assert data["id"] == response.json()["id"]

    def test_online_participants(self, test_client: TestClient, users, conversation, auth_headers):
        with open_socket(test_client, users["freelancer"]) as ws:
            expect(ws, "connected")

            response = test_client.get(
                f"/v1/conversations/{conversation.id}/online", headers=auth_headers(users["client"])
            )

            assert response.json()["online_user_ids"] == [users["freelancer"].id]


class TestFrameErrors:
    """Malformed frames produce error frames and keep the socket open."""

    @pytest.mark.parametrize("payload,code", [
        ({"action": "fly"}, "INVALID_ACTION"),
        ({"conversation_id": 1}, "INVALID_ACTION"),
        ({"action": "join_room"}, "INVALID_MESSAGE"),
        ({"action": "join_room", "conversation_id": 1, "task_id": 1}, "INVALID_MESSAGE"),
        ({"action": "join_room", "conversation_id": -3}, "INVALID_MESSAGE"),
        ({"action": "send_message", "conversation_id": 1}, "INVALID_MESSAGE"),
        ({"action": "send_message", "conversation_id": 1, "content": "   "}, "INVALID_MESSAGE"),
        ({"action": "send_message", "conversation_id": 1, "content": "x" * 1001}, "INVALID_MESSAGE"),
    ])
    def test_bad_frames(self, test_client: TestClient, test_db, users, conversation, payload, code):
        with open_socket(test_client, users["client"]) as ws:
            expect(ws, "connected")
            ws.send_json(payload)
            assert expect(ws, "error")["code"] == code

            ws.send_json({"action": "join_conversation", "conversation_id": conversation.id})
            expect(ws, "joined_room")

        assert test_db.query(Message).count() == 0

    def test_invalid_json(self, test_client: TestClient, users):
        with open_socket(test_client, users["client"]) as ws:
            expect(ws, "connected")
            ws.send_text("{not json")
            error = expect(ws, "error")
            assert error["code"] == "INVALID_JSON"
            assert error["message"] == "Invalid JSON format"

    def test_pong_refreshes_heartbeat(self, test_client: TestClient, users):
        manager = test_client.app.state.connection_manager
        with open_socket(test_client, users["client"]) as ws:
            connection_id = expect(ws, "connected")["data"]["connection_id"]
            before = manager.last_heartbeat[connection_id]

            ws.send_json({"action": "pong"})
            ws.send_json({"action": "fly"})
            expect(ws, "error")

            assert manager.last_heartbeat[connection_id] >= before
