from __future__ import annotations

from chatpipe.core.config import get_settings
from chatpipe.providers.delivery.base import DeliveryChannel
from chatpipe.providers.delivery.log import LogDeliveryChannel
from chatpipe.providers.delivery.whatsapp_360dialog import Dialog360DeliveryChannel


def get_delivery_channel() -> DeliveryChannel:
    provider = (get_settings().delivery_provider or "whatsapp_360dialog").lower()
    if provider == "log":
        return LogDeliveryChannel()
    return Dialog360DeliveryChannel()
