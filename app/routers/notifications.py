from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from sqlalchemy.orm import Session

from app.database import get_db
from app.models import User
from app.schemas.notification import NotificationCreate, NotificationListResponse, NotificationOut
from app.services import notification_service
from app.services.security import get_current_user
from app.services.socket_manager import send_pending_events

router = APIRouter(prefix="/api/notifications", tags=["notifications"])


@router.get("", response_model=NotificationListResponse)
def list_notifications(
    limit: int = Query(default=notification_service.DEFAULT_LIMIT, ge=1, le=notification_service.MAX_LIMIT),
    offset: int = Query(default=0, ge=0),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    notifications = notification_service.get_notifications(db, current_user.id, limit=limit, offset=offset)
    return {
        "notifications": [notification_service.serialize_notification(n) for n in notifications],
        "limit": limit,
        "offset": offset,
    }


@router.post("", status_code=status.HTTP_201_CREATED, response_model=NotificationOut)
async def create_notification(
    payload: NotificationCreate,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    notification = await notification_service.create_notification(
        db,
        current_user.id,
        payload.title,
        message=payload.message,
        notification_type=payload.type.value,
        metadata=payload.metadata,
    )
    db.commit()
    await send_pending_events(db)
    return notification_service.serialize_notification(notification)


@router.put("/read-all")
async def mark_all_read(current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    updated = await notification_service.mark_all_as_read(db, current_user.id)
    db.commit()
    await send_pending_events(db)
    return {"updated": updated}


@router.put("/{notification_id}/read", response_model=NotificationOut)
async def mark_read(
    notification_id: UUID,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    notification = await notification_service.mark_as_read(db, current_user.id, notification_id)
    if not notification:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Notification not found")
    db.commit()
    await send_pending_events(db)
    return notification_service.serialize_notification(notification)


@router.delete("/{notification_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_notification(
    notification_id: UUID,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    deleted = await notification_service.delete_notification(db, current_user.id, notification_id)
    if not deleted:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Notification not found")
    db.commit()
    await send_pending_events(db)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
