"""Translate gateway webhook events into session lifecycle calls."""

from typing import Any, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from app.logging_config import get_logger
from app.models import User
from app.schemas.webhook import GatewayEvent
from app.schemas.whatsapp import InboundMessage
from app.services import whatsapp_service
from app.services.state_machine import AUTH_FAILURE
from app.services.whatsapp_gateway import extract_qr, user_id_from_instance

logger = get_logger("gateway_events")

QRCODE_UPDATED = "qrcode.updated"
CONNECTION_UPDATE = "connection.update"
MESSAGES_UPSERT = "messages.upsert"
LOGOUT_INSTANCE = "logout.instance"

# Baileys DisconnectReason codes reported as statusReason on connection close
CLOSE_REASONS = {
    401: AUTH_FAILURE,
    403: "forbidden",
    408: "timed_out",
    411: "multidevice_mismatch",
    428: "connection_closed",
    440: "connection_replaced",
    500: "bad_session",
    503: "unavailable_service",
    515: "restart_required",
}

MEDIA_TYPES = ("imageMessage", "videoMessage", "audioMessage", "documentMessage", "stickerMessage")
IGNORED_JID_SUFFIXES = ("@g.us", "@broadcast", "@newsletter")


class UnknownInstanceError(Exception):
    pass


def normalize_event_name(name: str) -> str:
    """Gateways send either ``messages.upsert`` or ``MESSAGES_UPSERT``."""
    return (name or "").strip().lower().replace("_", ".")


def close_reason(data: dict) -> str:
    status = data.get("statusReason")
    try:
        status = int(status) if status is not None else None
    except (TypeError, ValueError):
        status = None
    if status is None:
        return "connection_closed"
    return CLOSE_REASONS.get(status, f"closed_{status}")


def _coerce_timestamp(value: Any) -> Optional[int]:
    if isinstance(value, dict):
        value = value.get("low")
    try:
        return int(value) if value not in (None, "") else None
    except (TypeError, ValueError):
        return None


def _contact_jid(key: dict) -> Optional[str]:
    jid = key.get("remoteJid")
    if jid and jid.endswith("@lid"):
        return key.get("senderPn") or key.get("remoteJidAlt") or jid
    return jid


def _message_text(content: dict) -> Optional[str]:
    if content.get("conversation"):
        return content["conversation"]
    extended = content.get("extendedTextMessage") or {}
    if extended.get("text"):
        return extended["text"]
    for media_type in MEDIA_TYPES:
        caption = (content.get(media_type) or {}).get("caption")
        if caption:
            return caption
    return None


def parse_inbound_message(data: dict, owner_jid: Optional[str] = None) -> Optional[InboundMessage]:
    """Build an InboundMessage from one ``messages.upsert`` item. Group and broadcast chats are skipped."""
    key = data.get("key") or {}
    contact_jid = _contact_jid(key)
    if not contact_jid or contact_jid.endswith(IGNORED_JID_SUFFIXES):
        return None

    content = data.get("message") or {}
    from_me = bool(key.get("fromMe"))
    media_type = next((media for media in MEDIA_TYPES if media in content), None)
    media = (content.get(media_type) or {}) if media_type else {}

    return InboundMessage(
        message_id=key.get("id"),
        from_jid=owner_jid if from_me else contact_jid,
        to_jid=contact_jid if from_me else owner_jid,
        from_me=from_me,
        body=_message_text(content),
        push_name=None if from_me else data.get("pushName"),
        timestamp=_coerce_timestamp(data.get("messageTimestamp")),
        has_media=media_type is not None,
        media_mimetype=media.get("mimetype"),
        media_data=content.get("base64") or data.get("base64"),
    )


def _upsert_items(data: Any) -> list[dict]:
    if isinstance(data, list):
        return [item for item in data if isinstance(item, dict)]
    if isinstance(data, dict) and isinstance(data.get("messages"), list):
        return [item for item in data["messages"] if isinstance(item, dict)]
    if isinstance(data, dict):
        return [data]
    return []


def resolve_user(db: Session, instance_name: Optional[str]) -> UUID:
    user_id = user_id_from_instance(instance_name)
    if user_id is None or not db.query(User.id).filter(User.id == user_id).first():
        raise UnknownInstanceError(f"Unknown gateway instance: {instance_name}")
    return user_id


async def dispatch_gateway_event(db: Session, event: GatewayEvent) -> str:
    """Route one webhook event. Returns a short label of what was done."""
    user_id = resolve_user(db, event.instance)
    name = normalize_event_name(event.event)
    data = event.data if isinstance(event.data, dict) else {}

    if name == QRCODE_UPDATED:
        qr = extract_qr(data)
        if not qr:
            return "ignored"
        await whatsapp_service.handle_qr(user_id, qr)
        return "qr"

    if name == CONNECTION_UPDATE:
        state = data.get("state")
        if state == "open":
            phone = data.get("wuid") or event.sender
            await whatsapp_service.handle_authenticated(db, user_id, {"state": state})
            await whatsapp_service.handle_ready(db, user_id, phone)
            return "ready"
        if state == "close":
            await whatsapp_service.handle_disconnect(db, user_id, close_reason(data))
            return "disconnected"
        return "ignored"

    if name == LOGOUT_INSTANCE:
        await whatsapp_service.handle_disconnect(db, user_id, "logout")
        return "disconnected"

    if name == MESSAGES_UPSERT:
        stored = 0
        for item in _upsert_items(event.data):
            inbound = parse_inbound_message(item, owner_jid=event.sender)
            if inbound is None:
                continue
            if await whatsapp_service.receive_message(db, user_id, inbound):
                stored += 1
        return "message" if stored else "ignored"

    logger.debug("Ignoring gateway event", extra={"context": {"event": event.event, "instance": event.instance}})
    return "ignored"
