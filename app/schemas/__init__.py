from app.schemas.auth import AuthResponse, LoginRequest, RegisterRequest
from app.schemas.notification import NotificationCreate, NotificationOut
from app.schemas.webhook import GatewayEvent, WebhookResponse
from app.schemas.whatsapp import ConnectionStatus, InboundMessage, SendMessageRequest

__all__ = [
    "RegisterRequest",
    "LoginRequest",
    "AuthResponse",
    "NotificationCreate",
    "NotificationOut",
    "GatewayEvent",
    "WebhookResponse",
    "ConnectionStatus",
    "InboundMessage",
    "SendMessageRequest",
]
