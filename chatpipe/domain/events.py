from __future__ import annotations

from datetime import datetime, timezone
from uuid import uuid4

from pydantic import BaseModel, Field


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class InboundEvent(BaseModel):
    # One queue item per inbound user message, as published by the webhook edge.
    provider_message_id: str
    tenant_id: str
    channel_id: str
    # Filled in by the conversation resolver when the edge could not resolve it.
    conversation_id: str | None = None
    sender_id: str
    text: str = ""
    received_at: datetime = Field(default_factory=_utc_now)
    # Stable across queue retries of the same job; a fresh upstream redelivery gets a new one.
    correlation_id: str = Field(default_factory=lambda: uuid4().hex)

    def dedup_key(self) -> tuple[str, str]:
        return self.tenant_id, self.provider_message_id
