from typing import Optional

from pydantic import BaseModel


class ConnectionStatus(BaseModel):
    status: str
    isReady: bool
    phoneNumber: Optional[str] = None


class QRCodePayload(BaseModel):
    qr: str
    image: str


class SendMessageRequest(BaseModel):
    phone: Optional[str] = None
    message: Optional[str] = None


class SendMessageResponse(BaseModel):
    message: str
    result: Optional[dict] = None


class InboundMessage(BaseModel):
    """A WhatsApp message as seen by the intake pipeline, independent of the gateway payload."""

    message_id: Optional[str] = None
    from_jid: Optional[str] = None
    to_jid: Optional[str] = None
    from_me: bool = False
    body: Optional[str] = None
    push_name: Optional[str] = None
    timestamp: Optional[int] = None  # seconds since epoch
    has_media: bool = False
    media_mimetype: Optional[str] = None
    media_data: Optional[str] = None  # base64

