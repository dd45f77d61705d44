import uuid

from sqlalchemy import Column, ForeignKey, Integer, Numeric, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB, TIMESTAMP, UUID
from sqlalchemy.sql import func

from app.database import Base


class AISettings(Base):
    __tablename__ = "ai_settings"
    __table_args__ = (UniqueConstraint("user_id", "provider", name="uq_ai_settings_user_provider"),)

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    provider = Column(Text, nullable=False)  # openai, claude, gemini
    model = Column(Text)
    temperature = Column(Numeric(3, 2), default=0.7)
    max_tokens = Column(Integer, default=500)
    system_prompt = Column(Text)
    settings_json = Column(JSONB, nullable=False, default=dict)
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), onupdate=func.now())
