import uuid

from sqlalchemy import Column, Text
from sqlalchemy.dialects.postgresql import TIMESTAMP, UUID
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from app.database import Base


class User(Base):
    __tablename__ = "users"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    email = Column(Text, nullable=False, unique=True)  # stored lower-cased
    password_hash = Column(Text, nullable=False)
    full_name = Column(Text, nullable=False)
    phone = Column(Text)
    company_name = Column(Text)
    role = Column(Text, nullable=False, default="user")  # user, admin
    reset_password_token = Column(Text)  # sha256 of the emailed token
    reset_password_expires_at = Column(TIMESTAMP(timezone=True))
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), onupdate=func.now())

    conversations = relationship("Conversation", back_populates="user")
    notifications = relationship("Notification", back_populates="user")
    whatsapp_sessions = relationship("WhatsAppSession", back_populates="user")
