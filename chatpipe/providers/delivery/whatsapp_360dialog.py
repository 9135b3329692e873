from __future__ import annotations

import logging
from typing import Any

import httpx

from chatpipe.core.config import get_settings
from chatpipe.core.errors import DeliveryError, DeliveryTimeoutError, ProviderConfigError
from chatpipe.core.logging import mask_sender
from chatpipe.providers.delivery.base import DeliveryReceipt

logger = logging.getLogger(__name__)


class WhatsAppDeliveryError(DeliveryError):
    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        # Exposed so the retry helper can tell transient (5xx/429) from permanent failures.
        self.status_code = status_code


def normalize_recipient(recipient: str) -> str:
    # The messages endpoint wants digits only, without the leading "+".
    return "".join(ch for ch in recipient if ch.isdigit())


class Dialog360DeliveryChannel:
    def __init__(self, *, client: httpx.AsyncClient | None = None) -> None:
        settings = get_settings()
        if not settings.whatsapp_api_key:
            raise ProviderConfigError("WhatsApp delivery requires WHATSAPP_API_KEY.")
        self._base_url = settings.whatsapp_api_base_url.rstrip("/")
        self._api_key = settings.whatsapp_api_key
        self._timeout_s = max(0.2, settings.delivery_timeout_ms / 1000.0)
        # Injected client for tests; otherwise one client per call.
        self._client = client

    async def deliver(self, recipient: str, content: str, metadata: dict[str, Any]) -> DeliveryReceipt:
        to = normalize_recipient(recipient)
        if not to:
            raise WhatsAppDeliveryError(f"invalid recipient {mask_sender(recipient)}", status_code=400)
        payload: dict[str, Any] = {
            "messaging_product": "whatsapp",
            "recipient_type": "individual",
            "to": to,
            "type": "text",
            "text": {"body": content},
        }
        reply_to = metadata.get("reply_to_message_id")
        if reply_to:
            payload["context"] = {"message_id": reply_to}
        headers = {"D360-API-KEY": self._api_key, "Content-Type": "application/json"}

        try:
            if self._client is not None:
                response = await self._client.post(f"{self._base_url}/messages", json=payload, headers=headers)
            else:
                async with httpx.AsyncClient(timeout=self._timeout_s) as client:
                    response = await client.post(f"{self._base_url}/messages", json=payload, headers=headers)
        except httpx.TimeoutException as exc:
            raise DeliveryTimeoutError("WhatsApp delivery timed out") from exc
        except httpx.HTTPError as exc:
            raise WhatsAppDeliveryError("WhatsApp delivery transport error", status_code=503) from exc

        if response.status_code >= 400:
            logger.warning(
                "whatsapp_delivery_rejected to=%s status=%s tenant_id=%s",
                mask_sender(to),
                response.status_code,
                metadata.get("tenant_id"),
            )
            raise WhatsAppDeliveryError(
                f"WhatsApp API rejected message ({response.status_code})",
                status_code=response.status_code,
            )

        body = response.json()
        messages = body.get("messages") or []
        delivery_id = messages[0].get("id") if messages else None
        if not delivery_id:
            raise WhatsAppDeliveryError("WhatsApp API response carried no message id", status_code=502)
        logger.info(
            "whatsapp_delivery_sent to=%s delivery_id=%s tenant_id=%s",
            mask_sender(to),
            delivery_id,
            metadata.get("tenant_id"),
        )
        return DeliveryReceipt(delivery_id=str(delivery_id))
