from app.models.ai_settings import AISettings
from app.models.conversation import Conversation
from app.models.knowledge_base import KnowledgeEntry
from app.models.message import Message
from app.models.notification import Notification
from app.models.user import User
from app.models.whatsapp_session import WhatsAppSession

__all__ = [
    "User",
    "Conversation",
    "Message",
    "KnowledgeEntry",
    "AISettings",
    "Notification",
    "WhatsAppSession",
]
