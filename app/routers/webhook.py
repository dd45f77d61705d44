"""Webhook receiving WhatsApp gateway events."""

import hmac
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, status
from sqlalchemy.orm import Session

from app.config import settings
from app.database import get_db
from app.logging_config import get_logger
from app.schemas.webhook import GatewayEvent, WebhookResponse
from app.services.gateway_events import UnknownInstanceError, dispatch_gateway_event
from app.services.socket_manager import discard_pending_events, send_pending_events

router = APIRouter(prefix="/api/whatsapp", tags=["whatsapp"])
logger = get_logger("webhook")


def is_valid_gateway_key(apikey: Optional[str], authorization: Optional[str], expected: str) -> bool:
    """The gateway authenticates with an ``apikey`` header or ``Authorization: Bearer``."""
    if apikey and hmac.compare_digest(apikey, expected):
        return True
    if authorization and authorization.startswith("Bearer "):
        return hmac.compare_digest(authorization[7:], expected)
    return False


def require_gateway_key(
    apikey: Optional[str] = Header(default=None),
    authorization: Optional[str] = Header(default=None),
) -> None:
    expected = settings.evolution_webhook_secret
    if not expected:
        return
    if not is_valid_gateway_key(apikey, authorization, expected):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid webhook key")


@router.post("/webhook", response_model=WebhookResponse, dependencies=[Depends(require_gateway_key)])
async def gateway_webhook(event: GatewayEvent, db: Session = Depends(get_db)):
    try:
        outcome = await dispatch_gateway_event(db, event)
    except UnknownInstanceError as exc:
        logger.warning("Webhook for unknown instance", extra={"context": {"instance": event.instance}})
        # 200 so the gateway does not keep retrying
        return WebhookResponse(success=False, message=str(exc), event=event.event)
    except Exception:
        db.rollback()
        discard_pending_events(db)
        raise

    db.commit()
    await send_pending_events(db)
    return WebhookResponse(success=True, message=outcome, event=event.event)
