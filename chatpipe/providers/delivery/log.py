from __future__ import annotations

import logging
from typing import Any
from uuid import uuid4

from chatpipe.core.logging import mask_sender
from chatpipe.providers.delivery.base import DeliveryReceipt

logger = logging.getLogger(__name__)


class LogDeliveryChannel:
    # Dry-run channel for local development; logs instead of sending.
    async def deliver(self, recipient: str, content: str, metadata: dict[str, Any]) -> DeliveryReceipt:
        delivery_id = f"log-{uuid4().hex}"
        logger.info(
            "delivery_dry_run to=%s chars=%s delivery_id=%s tenant_id=%s",
            mask_sender(recipient),
            len(content),
            delivery_id,
            metadata.get("tenant_id"),
        )
        return DeliveryReceipt(delivery_id=delivery_id)
