from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

from sqlalchemy.orm import Session

from app.models import Conversation

CLOSED_STATUSES = {"closed", "archived"}


def get_or_create_conversation(
    db: Session, user_id: UUID, contact_phone: str, contact_name: Optional[str] = None
) -> tuple[Conversation, bool]:
    """Find the tenant's latest conversation with a contact or create one.

    Returns (conversation, created). A missing contact name is filled in from
    later messages but never overwritten.
    """
    conversation = (
        db.query(Conversation)
        .filter(Conversation.user_id == user_id, Conversation.contact_phone == contact_phone)
        .order_by(Conversation.created_at.desc())
        .first()
    )

    if conversation:
        if contact_name and not conversation.contact_name:
            conversation.contact_name = contact_name
            db.flush()
        return conversation, False

    conversation = Conversation(
        user_id=user_id,
        contact_phone=contact_phone,
        contact_name=contact_name or None,
        status="active",
        priority="normal",
    )
    db.add(conversation)
    db.flush()
    return conversation, True


def touch_conversation(db: Session, conversation: Conversation, at: Optional[datetime] = None) -> None:
    """Update last_message_at."""
    conversation.last_message_at = at or datetime.now(timezone.utc)
    db.flush()


def is_conversation_open(conversation: Optional[Conversation]) -> bool:
    return conversation is not None and conversation.status not in CLOSED_STATUSES


def serialize_conversation(conversation: Conversation) -> dict:
    return {
        "id": conversation.id,
        "user_id": conversation.user_id,
        "contact_phone": conversation.contact_phone,
        "contact_name": conversation.contact_name,
        "status": conversation.status,
        "priority": conversation.priority,
        "last_message_at": conversation.last_message_at,
        "created_at": conversation.created_at,
    }
