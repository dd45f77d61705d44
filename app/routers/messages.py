from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from app.database import get_db
from app.models import User
from app.schemas.whatsapp import SendMessageRequest, SendMessageResponse
from app.services import whatsapp_service
from app.services.security import get_current_user
from app.services.socket_manager import send_pending_events
from app.services.whatsapp_service import WhatsAppNotReadyError

router = APIRouter(prefix="/api/messages", tags=["messages"])


@router.post("/send", response_model=SendMessageResponse)
async def send_message(
    request: SendMessageRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    phone = (request.phone or "").strip()
    text = (request.message or "").strip()
    if not phone or not text:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="phone and message are required")

    try:
        result = await whatsapp_service.send_message(db, current_user.id, phone, text)
    except WhatsAppNotReadyError as exc:
        db.commit()
        await send_pending_events(db)
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))

    db.commit()
    await send_pending_events(db)
    return {"message": "Message queued", "result": result}
