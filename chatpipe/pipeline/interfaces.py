from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from typing import Any, Protocol
from uuid import UUID

from chatpipe.services.limits import TenantLimits


@dataclass(frozen=True)
class ConversationRef:
    id: UUID
    tenant_id: str
    channel_id: str
    sender_id: str
    assistant_id: str | None = None
    quota_blocked: bool = False


@dataclass(frozen=True)
class MessageDraft:
    direction: str
    content: str
    status: str
    external_id: str
    metadata: dict[str, Any] = field(default_factory=dict)
    llm_skipped: bool = False


@dataclass(frozen=True)
class MessageRecord:
    id: UUID
    conversation_id: UUID
    direction: str
    content: str
    status: str
    external_id: str
    delivery_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    llm_skipped: bool = False


class ConversationResolver(Protocol):
    # Must be safe under concurrent first-contact calls.
    async def resolve(self, tenant_id: str, channel_id: str, sender_id: str) -> ConversationRef:
        ...


class QuotaFlagStore(Protocol):
    async def is_quota_blocked(self, conversation_id: UUID) -> bool:
        ...

    async def set_quota_blocked(self, conversation_id: UUID, reason: str) -> None:
        ...

    async def clear_quota_blocked(self, tenant_id: str | None = None) -> int:
        ...


class ConversationStore(ConversationResolver, QuotaFlagStore, Protocol):
    async def touch_last_message(self, conversation_id: UUID) -> None:
        ...


class MessageStore(Protocol):
    # Appends are idempotent per (conversation, external id).
    async def append(self, conversation_id: UUID, tenant_id: str, draft: MessageDraft) -> MessageRecord:
        ...

    async def find_by_external_id(self, conversation_id: UUID, external_id: str) -> MessageRecord | None:
        ...

    async def recent(
        self, conversation_id: UUID, limit: int, *, exclude_external_id: str | None = None
    ) -> list[MessageRecord]:
        ...

    # pending -> sending; False when another execution already owns the send.
    async def claim_for_delivery(self, message_id: UUID) -> bool:
        ...

    async def release_delivery(self, message_id: UUID) -> None:
        ...

    # False when the row was already delivered.
    async def mark_delivered(self, message_id: UUID, delivery_id: str | None) -> bool:
        ...


class LimitsProvider(Protocol):
    async def get_limits(self, tenant_id: str) -> TenantLimits:
        ...


class UsageStore(Protocol):
    async def messages_on(self, tenant_id: str, usage_date: date) -> int:
        ...

    async def rag_queries_on(self, tenant_id: str, usage_date: date) -> int:
        ...

    async def increment(
        self,
        tenant_id: str,
        usage_date: date,
        *,
        messages: int = 0,
        tokens_in: int = 0,
        tokens_out: int = 0,
        rag_queries: int = 0,
    ) -> None:
        ...
