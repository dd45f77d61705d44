from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, Field


class GatewayEvent(BaseModel):
    """Webhook envelope posted by the WhatsApp gateway (Evolution API)."""

    event: str
    instance: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("instance", "instanceName", "instance_name"),
    )
    data: Any = Field(default_factory=dict)
    sender: Optional[str] = None
    date_time: Optional[str] = None


class WebhookResponse(BaseModel):
    success: bool
    message: str
    event: Optional[str] = None
