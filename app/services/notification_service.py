from typing import Any, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from app.logging_config import get_logger
from app.models import Notification
from app.services.socket_manager import emit_after_commit

logger = get_logger("notification_service")

ALLOWED_TYPES = {"info", "success", "warning", "error"}
DEFAULT_LIMIT = 50
MAX_LIMIT = 200


def sanitize_type(notification_type: Optional[str]) -> str:
    if not notification_type or notification_type not in ALLOWED_TYPES:
        return "info"
    return notification_type


def serialize_notification(notification: Notification) -> dict:
    return {
        "id": notification.id,
        "user_id": notification.user_id,
        "type": notification.type,
        "title": notification.title,
        "message": notification.message,
        "metadata": notification.notification_metadata or {},
        "is_read": bool(notification.is_read),
        "created_at": notification.created_at,
    }


async def create_notification(
    db: Session,
    user_id: Optional[UUID],
    title: Optional[str],
    message: Optional[str] = None,
    notification_type: str = "info",
    metadata: Optional[dict[str, Any]] = None,
) -> Optional[Notification]:
    """Store a notification; the dashboard push is queued until the session commits."""
    if not user_id or not title:
        return None

    notification = Notification(
        user_id=user_id,
        type=sanitize_type(notification_type),
        title=title,
        message=message or None,
        notification_metadata=metadata or {},
        is_read=False,
    )
    db.add(notification)
    db.flush()
    db.refresh(notification)

    emit_after_commit(db, user_id, "notification:new", serialize_notification(notification))
    return notification


def get_notifications(
    db: Session, user_id: UUID, limit: Optional[int] = DEFAULT_LIMIT, offset: Optional[int] = 0
) -> list[Notification]:
    if not user_id:
        return []
    safe_limit = min(limit or DEFAULT_LIMIT, MAX_LIMIT)
    safe_offset = max(offset or 0, 0)
    return (
        db.query(Notification)
        .filter(Notification.user_id == user_id)
        .order_by(Notification.created_at.desc())
        .limit(safe_limit)
        .offset(safe_offset)
        .all()
    )


async def mark_as_read(db: Session, user_id: UUID, notification_id: UUID) -> Optional[Notification]:
    notification = (
        db.query(Notification)
        .filter(Notification.id == notification_id, Notification.user_id == user_id)
        .first()
    )
    if not notification:
        return None

    notification.is_read = True
    db.flush()
    emit_after_commit(db, user_id, "notification:read", {"id": notification.id})
    return notification


async def mark_all_as_read(db: Session, user_id: UUID) -> int:
    updated = (
        db.query(Notification)
        .filter(Notification.user_id == user_id, Notification.is_read.is_(False))
        .update({Notification.is_read: True}, synchronize_session=False)
    )
    db.flush()
    if updated:
        emit_after_commit(db, user_id, "notification:read-all", {"count": updated})
    return updated


async def delete_notification(db: Session, user_id: UUID, notification_id: UUID) -> bool:
    deleted = (
        db.query(Notification)
        .filter(Notification.id == notification_id, Notification.user_id == user_id)
        .delete(synchronize_session=False)
    )
    db.flush()
    if not deleted:
        return False

    emit_after_commit(db, user_id, "notification:deleted", {"id": notification_id})
    return True


async def notify_system_error(
    db: Session, user_id: UUID, title: str, error: Any, metadata: Optional[dict[str, Any]] = None
) -> Optional[Notification]:
    """Surface an internal failure to the tenant as an error notification."""
    return await create_notification(
        db,
        user_id,
        title,
        message=str(error),
        notification_type="error",
        metadata={**(metadata or {}), "error": str(error)},
    )
