import uuid
from datetime import datetime, timezone
from types import SimpleNamespace
from unittest.mock import AsyncMock, Mock, patch

import pytest
from starlette.websockets import WebSocketDisconnect

from app.main import app
from app.services.security import create_access_token, get_current_user, get_password_hash
from app.services.socket_manager import emit_after_commit, manager, pending_events
from app.services.state_machine import SessionStatus
from app.services.whatsapp_gateway import GatewayError
from app.services.whatsapp_service import SessionState, registry


class TestHealth:
    def test_api_health(self, anonymous_client):
        response = anonymous_client.get("/api/health")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"
        assert "timestamp" in response.json()

    def test_liveness(self, anonymous_client):
        assert anonymous_client.get("/health").json() == {"status": "ok"}


class TestErrorHandling:
    def test_unknown_route(self, anonymous_client):
        response = anonymous_client.get("/api/does-not-exist")
        assert response.status_code == 404
        assert response.json() == {"message": "Route not found"}

    def test_validation_error(self, anonymous_client):
        response = anonymous_client.post("/api/auth/register", json={"email": "nope"})
        assert response.status_code == 422
        body = response.json()
        assert body["message"] == "Validation failed"
        assert isinstance(body["errors"], list) and body["errors"]

    def test_unauthenticated(self, anonymous_client):
        response = anonymous_client.get("/api/whatsapp/status")
        assert response.status_code == 401
        assert response.json() == {"message": "Authentication required"}

    def test_unhandled_error(self, anonymous_client, user):
        app.dependency_overrides[get_current_user] = lambda: user
        with patch("app.services.whatsapp_service.get_connection_status", side_effect=RuntimeError("boom")):
            response = anonymous_client.get("/api/whatsapp/status")
        assert response.status_code == 500
        assert response.json() == {"message": "Internal server error"}

    def test_gateway_error(self, client, gateway, emit):
        gateway.ensure_instance.side_effect = GatewayError("refused")
        response = client.post("/api/whatsapp/connect")
        assert response.status_code == 502
        assert response.json() == {"message": "WhatsApp gateway unavailable"}


class TestAuthRoutes:
    def test_register_duplicate(self, anonymous_client, db_session, user):
        db_session.query.return_value.filter.return_value.first.return_value = user
        response = anonymous_client.post(
            "/api/auth/register",
            json={
                "email": "owner@example.com",
                "password": "supersecret",
                "fullName": "Shop Owner",
                "companyName": "Example Shop",
            },
        )
        assert response.status_code == 409
        assert response.json() == {"message": "Email is already registered"}
        db_session.rollback.assert_called_once()

    def test_login(self, anonymous_client, db_session, user):
        user.password_hash = get_password_hash("supersecret")
        db_session.query.return_value.filter.return_value.first.return_value = user

        response = anonymous_client.post("/api/auth/login", json={"email": user.email, "password": "supersecret"})

        assert response.status_code == 200
        assert response.json()["user"]["email"] == user.email
        assert response.json()["token"]

    def test_forgot_password_unknown_email(self, anonymous_client, db_session):
        db_session.query.return_value.filter.return_value.first.return_value = None
        response = anonymous_client.post("/api/auth/forgot-password", json={"email": "ghost@example.com"})
        assert response.status_code == 200
        assert response.json() == {"message": "If the email exists, a reset link has been sent"}

    def test_me(self, client, user):
        response = client.get("/api/auth/me")
        assert response.json()["user"]["id"] == str(user.id)

    def test_me_with_bearer_token(self, anonymous_client, db_session, user):
        db_session.query.return_value.filter.return_value.first.return_value = user
        response = anonymous_client.get(
            "/api/auth/me", headers={"Authorization": f"Bearer {create_access_token(user)}"}
        )
        assert response.status_code == 200
        assert response.json()["user"]["email"] == user.email


class TestWhatsAppRoutes:
    def test_status_without_session(self, client):
        response = client.get("/api/whatsapp/status")
        assert response.json() == {"status": "disconnected", "isReady": False, "phoneNumber": None}

    def test_qr_not_available(self, client):
        response = client.get("/api/whatsapp/qr")
        assert response.status_code == 404
        assert response.json() == {"message": "No QR code available"}

    def test_connect_then_qr(self, client, gateway, emit, db_session, user):
        gateway.connect_instance.return_value = {"code": "2@qrpayload", "count": 1}

        response = client.post("/api/whatsapp/connect")
        assert response.json() == {"message": "WhatsApp client initializing"}
        db_session.commit.assert_called()

        assert client.get("/api/whatsapp/status").json()["status"] == "qr"
        qr = client.get("/api/whatsapp/qr").json()
        assert qr["qr"] == "2@qrpayload"
        assert qr["image"].startswith("data:image/png;base64,")

    def test_disconnect(self, client, gateway, emit, user):
        registry.set(
            SessionState(user_id=user.id, instance_name=f"user-{user.id}", status=SessionStatus.READY, is_ready=True)
        )
        with patch("app.services.whatsapp_service.create_notification", new=AsyncMock()):
            response = client.post("/api/whatsapp/disconnect")

        assert response.json() == {"message": "WhatsApp client disconnected"}
        gateway.logout_instance.assert_awaited_once_with(f"user-{user.id}")
        assert registry.get(user.id).status == SessionStatus.DISCONNECTED


    def test_reconnect(self, client, gateway, emit, user):
        registry.set(SessionState(user_id=user.id, status=SessionStatus.DISCONNECTED))

        response = client.post("/api/whatsapp/reconnect")

        assert response.json() == {"message": "WhatsApp client reconnecting"}
        gateway.ensure_instance.assert_awaited_once_with(f"user-{user.id}")
        assert registry.get(user.id).status == SessionStatus.INITIALIZING


class TestSendMessage:
    def test_missing_fields(self, client):
        response = client.post("/api/messages/send", json={"phone": "", "message": "hi"})
        assert response.status_code == 400
        assert response.json() == {"message": "phone and message are required"}

    def test_not_ready(self, client, gateway, emit):
        response = client.post("/api/messages/send", json={"phone": "971501234567", "message": "hi"})
        assert response.status_code == 409
        assert response.json() == {"message": "WhatsApp client not ready"}

    def test_sent(self, client, gateway, user):
        registry.set(SessionState(user_id=user.id, instance_name="user-x", status=SessionStatus.READY, is_ready=True))
        response = client.post("/api/messages/send", json={"phone": "+971 50 123 4567", "message": "hi"})
        assert response.status_code == 200
        assert response.json() == {"message": "Message queued", "result": {"key": {"id": "MSG1"}}}


class TestNotificationRoutes:
    def _notification(self, user, **overrides):
        data = {
            "id": uuid.uuid4(),
            "user_id": user.id,
            "type": "info",
            "title": "New message",
            "message": "From +971501234567",
            "notification_metadata": {"phone": "971501234567"},
            "is_read": False,
            "created_at": datetime(2024, 5, 1, tzinfo=timezone.utc),
        }
        data.update(overrides)
        return SimpleNamespace(**data)

    def test_list(self, client, db_session, user):
        query = db_session.query.return_value.filter.return_value.order_by.return_value
        query.limit.return_value.offset.return_value.all.return_value = [self._notification(user)]

        response = client.get("/api/notifications?limit=10")

        body = response.json()
        assert body["limit"] == 10 and body["offset"] == 0
        assert body["notifications"][0]["metadata"] == {"phone": "971501234567"}
        query.limit.assert_called_once_with(10)

    def test_limit_out_of_range(self, client):
        assert client.get("/api/notifications?limit=500").status_code == 422

    def test_create(self, client, db_session, emit, user):
        def _refresh(notification):
            notification.id = uuid.uuid4()
            notification.created_at = datetime.now(timezone.utc)

        db_session.refresh.side_effect = _refresh
        response = client.post("/api/notifications", json={"title": "Hello", "type": "success"})

        assert response.status_code == 201
        assert response.json()["type"] == "success"
        assert emit.await_args.args[1] == "notification:new"

    def test_mark_read_missing(self, client):
        with patch("app.services.notification_service.mark_as_read", new=AsyncMock(return_value=None)):
            response = client.put(f"/api/notifications/{uuid.uuid4()}/read")
        assert response.status_code == 404
        assert response.json() == {"message": "Notification not found"}

    def test_mark_all_read(self, client):
        with patch("app.services.notification_service.mark_all_as_read", new=AsyncMock(return_value=3)):
            assert client.put("/api/notifications/read-all").json() == {"updated": 3}

    def test_delete(self, client):
        with patch("app.services.notification_service.delete_notification", new=AsyncMock(return_value=True)):
            response = client.delete(f"/api/notifications/{uuid.uuid4()}")
        assert response.status_code == 204

    def test_delete_missing(self, client):
        with patch("app.services.notification_service.delete_notification", new=AsyncMock(return_value=False)):
            assert client.delete(f"/api/notifications/{uuid.uuid4()}").status_code == 404


class TestGatewayWebhook:
    def test_unknown_instance(self, anonymous_client):
        response = anonymous_client.post("/api/whatsapp/webhook", json={"event": "qrcode.updated", "instance": "shop"})
        assert response.status_code == 200
        assert response.json()["success"] is False

    def test_rejects_bad_key(self, anonymous_client):
        with patch("app.routers.webhook.settings", Mock(evolution_webhook_secret="s3cret")):
            response = anonymous_client.post(
                "/api/whatsapp/webhook", json={"event": "qrcode.updated"}, headers={"apikey": "wrong"}
            )
        assert response.status_code == 401
        assert response.json() == {"message": "Invalid webhook key"}

    def test_qr_event(self, anonymous_client, db_session, emit, user):
        db_session.query.return_value.filter.return_value.first.return_value = (user.id,)
        with patch("app.routers.webhook.settings", Mock(evolution_webhook_secret="s3cret")):
            response = anonymous_client.post(
                "/api/whatsapp/webhook",
                json={"event": "QRCODE_UPDATED", "instance": f"user-{user.id}", "data": {"qrcode": {"code": "2@x"}}},
                headers={"Authorization": "Bearer s3cret"},
            )

        assert response.json() == {"success": True, "message": "qr", "event": "QRCODE_UPDATED"}
        assert registry.get(user.id).status == SessionStatus.QR
        db_session.commit.assert_called_once()

    def _upsert_body(self, user, count):
        items = [
            {"key": {"remoteJid": "971501234567@s.whatsapp.net", "fromMe": False, "id": f"M{i}"},
             "message": {"conversation": "hello"}}
            for i in range(count)
        ]
        return {"event": "messages.upsert", "instance": f"user-{user.id}", "data": {"messages": items}}

    def test_events_sent_after_commit(self, anonymous_client, db_session, emit, user):
        db_session.query.return_value.filter.return_value.first.return_value = (user.id,)
        order = []
        db_session.commit.side_effect = lambda: order.append("commit")
        emit.side_effect = lambda user_id, event, data: order.append(event) or 1

        async def _receive(db, user_id, inbound):
            emit_after_commit(db, user_id, "message:new", {"id": inbound.message_id})
            return object()

        with patch("app.services.whatsapp_service.receive_message", new=_receive):
            response = anonymous_client.post("/api/whatsapp/webhook", json=self._upsert_body(user, 1))

        assert response.json()["message"] == "message"
        assert order == ["commit", "message:new"]

    def test_failed_batch_sends_nothing(self, anonymous_client, db_session, emit, user):
        db_session.query.return_value.filter.return_value.first.return_value = (user.id,)
        received = []

        async def _receive(db, user_id, inbound):
            if received:
                raise RuntimeError("insert failed")
            received.append(inbound)
            emit_after_commit(db, user_id, "message:new", {"id": inbound.message_id})
            return object()

        with patch("app.services.whatsapp_service.receive_message", new=_receive):
            response = anonymous_client.post("/api/whatsapp/webhook", json=self._upsert_body(user, 2))

        assert response.status_code == 500
        db_session.rollback.assert_called_once()
        db_session.commit.assert_not_called()
        emit.assert_not_awaited()
        assert pending_events(db_session) == []


class TestWebsocket:
    def test_rejects_missing_token(self, anonymous_client):
        with pytest.raises(WebSocketDisconnect) as exc_info:
            with anonymous_client.websocket_connect("/ws"):
                pass
        assert exc_info.value.code == 4401

    def test_rejects_deleted_user(self, anonymous_client, db_session, user):
        db_session.query.return_value.filter.return_value.first.return_value = None
        with pytest.raises(WebSocketDisconnect) as exc_info:
            with anonymous_client.websocket_connect(f"/ws?token={create_access_token(user)}"):
                pass
        assert exc_info.value.code == 4401

    def test_ping_pong_and_room(self, anonymous_client, db_session, user):
        db_session.query.return_value.filter.return_value.first.return_value = user
        token = create_access_token(user)
        with anonymous_client.websocket_connect(f"/ws?token={token}") as websocket:
            websocket.send_json({"type": "ping", "ts": 1})
            assert websocket.receive_json() == {"event": "pong", "data": {"ts": 1}}
            assert manager.connection_count(user.id) == 1
        assert manager.connection_count(user.id) == 0

    def test_binary_frame_is_skipped(self, anonymous_client, db_session, user):
        db_session.query.return_value.filter.return_value.first.return_value = user
        with anonymous_client.websocket_connect(f"/ws?token={create_access_token(user)}") as websocket:
            websocket.send_bytes(b"\x00\x01")
            websocket.send_text("not json")
            websocket.send_json({"type": "ping", "ts": 2})
            assert websocket.receive_json() == {"event": "pong", "data": {"ts": 2}}
