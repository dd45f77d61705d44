import uuid

from sqlalchemy import Boolean, Column, ForeignKey, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB, TIMESTAMP, UUID
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from app.database import Base


class WhatsAppSession(Base):
    __tablename__ = "whatsapp_sessions"
    __table_args__ = (UniqueConstraint("user_id", "phone_number", name="uq_whatsapp_sessions_user_phone"),)

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    phone_number = Column(Text, nullable=False, default="unknown")
    session_data = Column(JSONB, nullable=False, default=dict)
    is_connected = Column(Boolean, nullable=False, default=False)
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), onupdate=func.now())

    user = relationship("User", back_populates="whatsapp_sessions")
