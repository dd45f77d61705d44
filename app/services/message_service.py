import re
from dataclasses import dataclass
from datetime import datetime, time, timezone
from typing import Optional
from uuid import UUID
from zoneinfo import ZoneInfo

from sqlalchemy.orm import Session

from app.config import settings
from app.logging_config import get_logger
from app.models import Conversation, Message
from app.schemas.whatsapp import InboundMessage
from app.services.conversation_service import (
    get_or_create_conversation,
    is_conversation_open,
    serialize_conversation,
    touch_conversation,
)
from app.services.intent_service import IntentMatch, detect_intent, needs_human
from app.services.notification_service import create_notification
from app.services.socket_manager import emit_after_commit

logger = get_logger("message_service")

_NON_DIGITS = re.compile(r"\D")


@dataclass
class IntakeResult:
    conversation: Conversation
    message: Message
    should_respond: bool
    intent: IntentMatch


def normalize_phone(value: Optional[str]) -> Optional[str]:
    """Reduce a phone number or WhatsApp JID to its digits."""
    if not value:
        return None
    local_part = value.split("@", 1)[0].split(":", 1)[0]
    digits = _NON_DIGITS.sub("", local_part)
    return digits or None


def _parse_clock(value: Optional[str]) -> Optional[time]:
    if not value or not value.strip():
        return None
    hour, _, minute = value.strip().partition(":")
    return time(int(hour), int(minute or 0))


def is_within_operating_hours(
    now: Optional[datetime] = None,
    start: Optional[str] = None,
    end: Optional[str] = None,
) -> bool:
    """Check the configured operating window. An end at or before start spans midnight."""
    start_at = _parse_clock(settings.operating_hours_start if start is None else start)
    end_at = _parse_clock(settings.operating_hours_end if end is None else end)
    if start_at is None or end_at is None:
        return True

    if now is None:
        now = datetime.now(ZoneInfo(settings.operating_hours_timezone))
    current = now.time()

    if end_at <= start_at:
        return current >= start_at or current <= end_at
    return start_at <= current <= end_at


def should_bot_respond(conversation: Optional[Conversation], message: Optional[Message]) -> bool:
    if not is_conversation_open(conversation):
        return False
    if not is_within_operating_hours():
        return False
    if message is None or (not message.message_text and not message.media_url):
        return False
    return True


def build_media_url(mimetype: Optional[str], data: Optional[str]) -> Optional[str]:
    if not data:
        return None
    return f"data:{mimetype or 'application/octet-stream'};base64,{data}"


def save_message(
    db: Session,
    conversation_id: UUID,
    sender_type: str,
    message_text: Optional[str],
    media_url: Optional[str] = None,
    timestamp: Optional[datetime] = None,
    is_from_bot: bool = False,
) -> Message:
    """Save message to database."""
    message = Message(
        conversation_id=conversation_id,
        sender_type=sender_type,
        message_text=message_text or None,
        media_url=media_url,
        timestamp=timestamp or datetime.now(timezone.utc),
        is_from_bot=is_from_bot,
    )
    db.add(message)
    db.flush()
    return message


def serialize_message(message: Message) -> dict:
    return {
        "id": message.id,
        "conversation_id": message.conversation_id,
        "sender_type": message.sender_type,
        "message_text": message.message_text,
        "media_url": message.media_url,
        "timestamp": message.timestamp,
        "is_from_bot": bool(message.is_from_bot),
    }


async def _notify_in_savepoint(db: Session, user_id: UUID, title: str, **kwargs) -> None:
    """A failed notification insert only rolls back its own savepoint; the message is kept."""
    try:
        with db.begin_nested():
            await create_notification(db, user_id, title, **kwargs)
    except Exception as exc:
        logger.error(
            "Failed to store notification",
            extra={"context": {"user_id": str(user_id), "title": title, "error": str(exc)}},
        )


async def process_incoming_message(db: Session, user_id: UUID, inbound: InboundMessage) -> Optional[IntakeResult]:
    """Store an inbound or self-sent WhatsApp message and raise the follow-up events."""
    contact_phone = normalize_phone(inbound.to_jid if inbound.from_me else inbound.from_jid)
    if not contact_phone:
        logger.warning(
            "Unable to normalize phone for message",
            extra={"context": {"user_id": str(user_id), "message_id": inbound.message_id}},
        )
        return None

    contact_name = inbound.push_name or None
    conversation, created = get_or_create_conversation(db, user_id, contact_phone, contact_name)

    media_url = build_media_url(inbound.media_mimetype, inbound.media_data) if inbound.has_media else None
    if inbound.timestamp:
        sent_at = datetime.fromtimestamp(inbound.timestamp, tz=timezone.utc)
    else:
        sent_at = datetime.now(timezone.utc)

    message = save_message(
        db,
        conversation.id,
        sender_type="user" if inbound.from_me else "contact",
        message_text=inbound.body,
        media_url=media_url,
        timestamp=sent_at,
        is_from_bot=False,
    )
    touch_conversation(db, conversation, sent_at)

    should_respond = should_bot_respond(conversation, message)
    intent = detect_intent(inbound.body)
    display_name = contact_name or contact_phone

    if not inbound.from_me:
        await _notify_in_savepoint(
            db,
            user_id,
            "New message",
            message=f"New message from {display_name}",
            notification_type="info",
            metadata={"conversationId": str(conversation.id), "messageId": str(message.id)},
        )

    if needs_human(intent):
        await _notify_in_savepoint(
            db,
            user_id,
            "Conversation needs human intervention",
            message=f"{display_name} asked for a human agent",
            notification_type="warning",
            metadata={"conversationId": str(conversation.id), "intent": intent.as_dict()},
        )

    emit_after_commit(
        db,
        user_id,
        "conversation:new" if created else "conversation:updated",
        serialize_conversation(conversation),
    )
    emit_after_commit(
        db,
        user_id,
        "message:new",
        {**serialize_message(message), "intent": intent.as_dict(), "shouldRespond": should_respond},
    )

    logger.info(
        "Message stored",
        extra={
            "context": {
                "user_id": str(user_id),
                "conversation_id": str(conversation.id),
                "intent": intent.intent.value,
                "from_me": inbound.from_me,
            }
        },
    )
    return IntakeResult(conversation=conversation, message=message, should_respond=should_respond, intent=intent)
