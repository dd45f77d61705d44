"""HTTP client for the WhatsApp Web gateway (Evolution API).

The gateway keeps one linked-device session per instance. Each tenant owns
exactly one instance, named after its user id.
"""

from typing import Any, Optional
from uuid import UUID

import httpx

from app.config import settings
from app.logging_config import get_logger

logger = get_logger("whatsapp_gateway")

INSTANCE_PREFIX = "user-"
WEBHOOK_EVENTS = ["QRCODE_UPDATED", "CONNECTION_UPDATE", "MESSAGES_UPSERT", "LOGOUT_INSTANCE"]
# Evolution answers 403 when the instance name is taken
INSTANCE_EXISTS_STATUS = {403, 409}


class GatewayError(Exception):
    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


def instance_name_for(user_id: Any) -> str:
    return f"{INSTANCE_PREFIX}{user_id}"


def user_id_from_instance(instance_name: Optional[str]) -> Optional[UUID]:
    if not instance_name or not instance_name.startswith(INSTANCE_PREFIX):
        return None
    try:
        return UUID(instance_name[len(INSTANCE_PREFIX) :])
    except ValueError:
        return None


def _error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text or f"HTTP {response.status_code}"
    if isinstance(payload, dict):
        nested = payload.get("response")
        if isinstance(nested, dict) and nested.get("message"):
            message = nested["message"]
            return "; ".join(map(str, message)) if isinstance(message, list) else str(message)
        return str(payload.get("error") or payload.get("message") or payload)
    return str(payload)


class WhatsAppGateway:
    def __init__(self, api_url: str, api_key: str, webhook_url: str, timeout: float = 30.0):
        self.api_url = api_url.rstrip("/")
        self.api_key = api_key
        self.webhook_url = webhook_url
        self.timeout = timeout

    async def _request(self, method: str, endpoint: str, json_data: Optional[dict] = None) -> dict[str, Any]:
        url = f"{self.api_url}{endpoint}"
        headers = {"apikey": self.api_key, "Content-Type": "application/json"}
        try:
            async with httpx.AsyncClient(timeout=self.timeout, headers=headers) as client:
                response = await client.request(method, url, json=json_data)
        except httpx.HTTPError as exc:
            logger.error(
                "Gateway request failed",
                extra={"context": {"method": method, "endpoint": endpoint, "error": str(exc)}},
            )
            raise GatewayError(f"Gateway unreachable: {exc}") from exc

        if response.status_code >= 400:
            message = _error_message(response)
            logger.warning(
                "Gateway returned error",
                extra={"context": {"endpoint": endpoint, "status": response.status_code, "error": message}},
            )
            raise GatewayError(message, status_code=response.status_code)

        if not response.content:
            return {}
        try:
            payload = response.json()
        except ValueError:
            return {}
        return payload if isinstance(payload, dict) else {"data": payload}

    async def create_instance(self, instance_name: str) -> dict[str, Any]:
        payload = {
            "instanceName": instance_name,
            "qrcode": True,
            "integration": settings.whatsapp_integration,
            "webhook": {
                "url": self.webhook_url,
                "byEvents": False,
                "base64": True,
                "headers": {"apikey": settings.evolution_webhook_secret} if settings.evolution_webhook_secret else {},
                "events": WEBHOOK_EVENTS,
            },
        }
        return await self._request("POST", "/instance/create", payload)

    async def ensure_instance(self, instance_name: str) -> dict[str, Any]:
        """Create the instance, treating "name already in use" as success."""
        try:
            return await self.create_instance(instance_name)
        except GatewayError as exc:
            if exc.status_code in INSTANCE_EXISTS_STATUS:
                logger.info("Gateway instance already exists", extra={"context": {"instance": instance_name}})
                return {}
            raise

    async def connect_instance(self, instance_name: str) -> dict[str, Any]:
        return await self._request("GET", f"/instance/connect/{instance_name}")

    async def get_connection_state(self, instance_name: str) -> Optional[str]:
        response = await self._request("GET", f"/instance/connectionState/{instance_name}")
        instance = response.get("instance") or {}
        return instance.get("state") or response.get("state")

    async def logout_instance(self, instance_name: str) -> dict[str, Any]:
        return await self._request("DELETE", f"/instance/logout/{instance_name}")

    async def delete_instance(self, instance_name: str) -> dict[str, Any]:
        return await self._request("DELETE", f"/instance/delete/{instance_name}")

    async def send_text(self, instance_name: str, number: str, text: str) -> dict[str, Any]:
        return await self._request("POST", f"/message/sendText/{instance_name}", {"number": number, "text": text})


def extract_qr(payload: dict[str, Any]) -> Optional[str]:
    """Pull the raw QR string from a connect/create/qrcode.updated payload."""
    if not isinstance(payload, dict):
        return None
    nested = payload.get("qrcode")
    if isinstance(nested, dict) and nested.get("code"):
        return nested["code"]
    code = payload.get("code")
    return code if isinstance(code, str) and code else None


_gateway: Optional[WhatsAppGateway] = None


def get_gateway() -> WhatsAppGateway:
    global _gateway
    if _gateway is None:
        _gateway = WhatsAppGateway(
            api_url=settings.evolution_api_url,
            api_key=settings.evolution_api_key,
            webhook_url=f"{settings.public_base_url.rstrip('/')}/api/whatsapp/webhook",
            timeout=settings.evolution_timeout_seconds,
        )
    return _gateway
