from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from app.database import get_db
from app.models import User
from app.schemas.whatsapp import ConnectionStatus, QRCodePayload
from app.services import whatsapp_service
from app.services.security import get_current_user
from app.services.socket_manager import send_pending_events

router = APIRouter(prefix="/api/whatsapp", tags=["whatsapp"])


@router.post("/connect")
async def connect(current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    await whatsapp_service.initialize_whatsapp(db, current_user.id)
    db.commit()
    await send_pending_events(db)
    return {"message": "WhatsApp client initializing"}


@router.get("/qr", response_model=QRCodePayload)
async def get_qr(current_user: User = Depends(get_current_user)):
    payload = await whatsapp_service.generate_qr_code(current_user.id)
    if not payload:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No QR code available")
    return payload


@router.get("/status", response_model=ConnectionStatus)
def get_status(current_user: User = Depends(get_current_user)):
    return whatsapp_service.get_connection_status(current_user.id)


@router.post("/disconnect")
async def disconnect(current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    await whatsapp_service.handle_disconnect(db, current_user.id, whatsapp_service.MANUAL_DISCONNECT)
    db.commit()
    await send_pending_events(db)
    return {"message": "WhatsApp client disconnected"}


@router.post("/reconnect")
async def reconnect(current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    await whatsapp_service.reconnect(db, current_user.id)
    db.commit()
    await send_pending_events(db)
    return {"message": "WhatsApp client reconnecting"}
