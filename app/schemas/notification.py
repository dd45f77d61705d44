from datetime import datetime
from enum import Enum
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, Field


class NotificationType(str, Enum):
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


class NotificationCreate(BaseModel):
    title: str = Field(min_length=1)
    message: Optional[str] = None
    type: NotificationType = NotificationType.INFO
    metadata: dict[str, Any] = Field(default_factory=dict)


class NotificationOut(BaseModel):
    id: UUID
    user_id: UUID
    type: str
    title: str
    message: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    is_read: bool
    created_at: Optional[datetime] = None


class NotificationListResponse(BaseModel):
    notifications: list[NotificationOut]
    limit: int
    offset: int
