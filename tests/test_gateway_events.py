import asyncio
import uuid
from unittest.mock import AsyncMock, patch

import pytest

from app.schemas.webhook import GatewayEvent
from app.services.gateway_events import (
    UnknownInstanceError,
    close_reason,
    dispatch_gateway_event,
    normalize_event_name,
    parse_inbound_message,
    resolve_user,
)

OWNER = "971500000000@s.whatsapp.net"


def _upsert(**overrides):
    data = {
        "key": {"remoteJid": "971501234567@s.whatsapp.net", "fromMe": False, "id": "ABC123"},
        "pushName": "Sara",
        "message": {"conversation": "Hello, what is the price?"},
        "messageType": "conversation",
        "messageTimestamp": 1714560000,
    }
    data.update(overrides)
    return data


class TestNormalizeEventName:
    def test_dotted_and_upper_case(self):
        assert normalize_event_name("messages.upsert") == "messages.upsert"
        assert normalize_event_name("MESSAGES_UPSERT") == "messages.upsert"
        assert normalize_event_name("CONNECTION_UPDATE") == "connection.update"


class TestCloseReason:
    def test_logged_out_is_auth_failure(self):
        assert close_reason({"state": "close", "statusReason": 401}) == "auth_failure"

    def test_known_codes(self):
        assert close_reason({"statusReason": "440"}) == "connection_replaced"
        assert close_reason({"statusReason": 515}) == "restart_required"

    def test_unknown_and_missing(self):
        assert close_reason({"statusReason": 999}) == "closed_999"
        assert close_reason({}) == "connection_closed"


class TestParseInboundMessage:
    def test_text_message(self):
        inbound = parse_inbound_message(_upsert(), owner_jid=OWNER)

        assert inbound.message_id == "ABC123"
        assert inbound.from_jid == "971501234567@s.whatsapp.net"
        assert inbound.to_jid == OWNER
        assert inbound.from_me is False
        assert inbound.body == "Hello, what is the price?"
        assert inbound.push_name == "Sara"
        assert inbound.timestamp == 1714560000
        assert inbound.has_media is False

    def test_own_message_swaps_direction(self):
        data = _upsert(key={"remoteJid": "971501234567@s.whatsapp.net", "fromMe": True, "id": "X"})
        inbound = parse_inbound_message(data, owner_jid=OWNER)

        assert inbound.from_me is True
        assert inbound.to_jid == "971501234567@s.whatsapp.net"
        assert inbound.from_jid == OWNER
        assert inbound.push_name is None

    def test_extended_text(self):
        data = _upsert(message={"extendedTextMessage": {"text": "see https://example.com"}})
        assert parse_inbound_message(data).body == "see https://example.com"

    def test_image_with_caption(self):
        data = _upsert(
            message={
                "imageMessage": {"mimetype": "image/jpeg", "caption": "receipt"},
                "base64": "QUJD",
            },
            messageTimestamp="1714560001",
        )
        inbound = parse_inbound_message(data)

        assert inbound.has_media is True
        assert inbound.media_mimetype == "image/jpeg"
        assert inbound.media_data == "QUJD"
        assert inbound.body == "receipt"
        assert inbound.timestamp == 1714560001

    def test_group_and_broadcast_skipped(self):
        assert parse_inbound_message(_upsert(key={"remoteJid": "1203630@g.us", "id": "G"})) is None
        assert parse_inbound_message(_upsert(key={"remoteJid": "status@broadcast", "id": "S"})) is None

    def test_lid_uses_sender_phone(self):
        data = _upsert(key={"remoteJid": "123456789@lid", "senderPn": "971501234567@s.whatsapp.net", "id": "L"})
        assert parse_inbound_message(data).from_jid == "971501234567@s.whatsapp.net"

    def test_long_timestamp(self):
        data = _upsert(messageTimestamp={"low": 1714560002, "high": 0, "unsigned": True})
        assert parse_inbound_message(data).timestamp == 1714560002


class TestResolveUser:
    def test_rejects_foreign_instance(self, db_session):
        with pytest.raises(UnknownInstanceError):
            resolve_user(db_session, "shop-main")

    def test_rejects_deleted_user(self, db_session):
        db_session.query.return_value.filter.return_value.first.return_value = None
        with pytest.raises(UnknownInstanceError):
            resolve_user(db_session, f"user-{uuid.uuid4()}")

    def test_known_user(self, db_session):
        user_id = uuid.uuid4()
        db_session.query.return_value.filter.return_value.first.return_value = (user_id,)
        assert resolve_user(db_session, f"user-{user_id}") == user_id


class TestDispatchGatewayEvent:
    @pytest.fixture(autouse=True)
    def _service(self, db_session):
        self.user_id = uuid.uuid4()
        db_session.query.return_value.filter.return_value.first.return_value = (self.user_id,)
        with patch("app.services.gateway_events.whatsapp_service") as service:
            service.handle_qr = AsyncMock()
            service.handle_authenticated = AsyncMock()
            service.handle_ready = AsyncMock()
            service.handle_disconnect = AsyncMock()
            service.receive_message = AsyncMock(return_value=object())
            self.service = service
            yield

    def _dispatch(self, db_session, event, data, sender=None):
        payload = GatewayEvent(event=event, instance=f"user-{self.user_id}", data=data, sender=sender)
        return asyncio.run(dispatch_gateway_event(db_session, payload))

    def test_qrcode_updated(self, db_session):
        outcome = self._dispatch(db_session, "qrcode.updated", {"qrcode": {"code": "2@abc", "base64": "..."}})
        assert outcome == "qr"
        self.service.handle_qr.assert_awaited_once_with(self.user_id, "2@abc")

    def test_connection_open(self, db_session):
        outcome = self._dispatch(
            db_session, "connection.update", {"state": "open", "wuid": OWNER, "statusReason": 200}
        )
        assert outcome == "ready"
        self.service.handle_authenticated.assert_awaited_once()
        self.service.handle_ready.assert_awaited_once_with(db_session, self.user_id, OWNER)

    def test_connection_close_auth_failure(self, db_session):
        outcome = self._dispatch(db_session, "CONNECTION_UPDATE", {"state": "close", "statusReason": 401})
        assert outcome == "disconnected"
        self.service.handle_disconnect.assert_awaited_once_with(db_session, self.user_id, "auth_failure")

    def test_connecting_is_ignored(self, db_session):
        assert self._dispatch(db_session, "connection.update", {"state": "connecting"}) == "ignored"

    def test_logout(self, db_session):
        assert self._dispatch(db_session, "logout.instance", {}) == "disconnected"
        self.service.handle_disconnect.assert_awaited_once_with(db_session, self.user_id, "logout")

    def test_messages_upsert(self, db_session):
        outcome = self._dispatch(db_session, "messages.upsert", _upsert(), sender=OWNER)
        assert outcome == "message"
        _, user_id, inbound = self.service.receive_message.call_args.args
        assert user_id == self.user_id
        assert inbound.body == "Hello, what is the price?"

    def test_messages_upsert_batch_skips_groups(self, db_session):
        batch = {"messages": [_upsert(), _upsert(key={"remoteJid": "1@g.us", "id": "G"})]}
        self._dispatch(db_session, "messages.upsert", batch)
        assert self.service.receive_message.await_count == 1

    def test_unhandled_event(self, db_session):
        assert self._dispatch(db_session, "presence.update", {"id": "x"}) == "ignored"
