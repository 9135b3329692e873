from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol


@dataclass(frozen=True)
class DeliveryReceipt:
    delivery_id: str


class DeliveryChannel(Protocol):
    async def deliver(self, recipient: str, content: str, metadata: dict[str, Any]) -> DeliveryReceipt:
        ...
