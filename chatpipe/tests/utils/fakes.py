from __future__ import annotations

import asyncio
from dataclasses import dataclass, field, replace
from datetime import date
from typing import Any
from uuid import UUID, uuid4

from chatpipe.core.errors import CounterStoreError, GenerationError, PersistenceError, QuotaLookupError
from chatpipe.pipeline.interfaces import ConversationRef, MessageDraft, MessageRecord
from chatpipe.pipeline.orchestrator import MessagePipeline, PipelineDependencies
from chatpipe.providers.delivery.base import DeliveryReceipt
from chatpipe.providers.delivery.whatsapp_360dialog import WhatsAppDeliveryError
from chatpipe.providers.llm.base import GenerationRequest, GenerationResult
from chatpipe.providers.retrieval.base import KnowledgeScope, RetrievedFragment
from chatpipe.services.context import ContextAssembler
from chatpipe.services.counter_store import CLAIM_NEW, CLAIM_OTHER, CLAIM_SAME, WindowCount
from chatpipe.services.dedup import DedupGuard
from chatpipe.services.limits import TenantLimits
from chatpipe.services.quota import QuotaGate
from chatpipe.services.rate_limit import RateLimiter
from chatpipe.services.resilience import RetryPolicy


TODAY = date(2026, 10, 19)


def make_limits(**overrides: Any) -> TenantLimits:
    base = TenantLimits(
        plan_code="starter",
        max_daily_messages=500,
        retrieval_enabled=False,
        threshold=0.75,
        max_results=5,
        rate_limit=10,
        rate_window_seconds=60,
    )
    return replace(base, **overrides)


class FakeCounterStore:
    # Single-threaded stand-in for the Lua scripts; each call is atomic by construction.
    def __init__(self) -> None:
        self._values: dict[str, tuple[str, int]] = {}
        self._counters: dict[str, tuple[int, int]] = {}
        self.now = 0
        self.fail = False
        self.calls = 0

    def advance(self, seconds: int) -> None:
        self.now += int(seconds)

    def _check(self) -> None:
        self.calls += 1
        if self.fail:
            raise CounterStoreError("counter store unavailable")

    def _live_value(self, key: str) -> str | None:
        item = self._values.get(key)
        if item is None or self.now >= item[1]:
            self._values.pop(key, None)
            return None
        return item[0]

    async def set_if_absent_or_same(self, key: str, value: str, ttl_s: int) -> str:
        self._check()
        current = self._live_value(key)
        if current is None:
            self._values[key] = (value, self.now + int(ttl_s))
            return CLAIM_NEW
        return CLAIM_SAME if current == value else CLAIM_OTHER

    async def incr_window(self, key: str, notified_key: str, window_s: int, limit: int) -> WindowCount:
        self._check()
        count, expires_at = self._counters.get(key, (0, 0))
        if count == 0 or self.now >= expires_at:
            count, expires_at = 0, self.now + int(window_s)
        count += 1
        self._counters[key] = (count, expires_at)
        ttl = expires_at - self.now
        already = False
        if count > limit:
            if self._live_value(notified_key) is None:
                self._values[notified_key] = ("1", self.now + ttl)
            else:
                already = True
        return WindowCount(count=count, ttl_s=ttl, already_notified=already)

    async def release(self, key: str, value: str) -> bool:
        self._check()
        if self._live_value(key) != value:
            return False
        self._values.pop(key)
        return True

    async def delete(self, *keys: str) -> int:
        self._check()
        removed = 0
        for key in keys:
            found = self._live_value(key) is not None or key in self._counters
            self._values.pop(key, None)
            self._counters.pop(key, None)
            removed += int(found)
        return removed


class InMemoryConversationStore:
    def __init__(self) -> None:
        self.by_sender: dict[tuple[str, str, str], ConversationRef] = {}
        self.flags: dict[UUID, str] = {}
        self.touched: list[UUID] = []
        self.flag_reads = 0
        self.fail_flag_read = False

    async def resolve(self, tenant_id: str, channel_id: str, sender_id: str) -> ConversationRef:
        key = (tenant_id, channel_id, sender_id)
        if key not in self.by_sender:
            self.by_sender[key] = ConversationRef(
                id=uuid4(), tenant_id=tenant_id, channel_id=channel_id, sender_id=sender_id
            )
        return self.by_sender[key]

    async def is_quota_blocked(self, conversation_id: UUID) -> bool:
        self.flag_reads += 1
        if self.fail_flag_read:
            raise QuotaLookupError("flag lookup failed")
        return conversation_id in self.flags

    async def set_quota_blocked(self, conversation_id: UUID, reason: str) -> None:
        self.flags.setdefault(conversation_id, reason)

    async def clear_quota_blocked(self, tenant_id: str | None = None) -> int:
        cleared = [
            conv_id
            for conv_id in self.flags
            if tenant_id is None or self._tenant_of(conv_id) == tenant_id
        ]
        for conv_id in cleared:
            self.flags.pop(conv_id)
        return len(cleared)

    async def touch_last_message(self, conversation_id: UUID) -> None:
        self.touched.append(conversation_id)

    def _tenant_of(self, conversation_id: UUID) -> str | None:
        for ref in self.by_sender.values():
            if ref.id == conversation_id:
                return ref.tenant_id
        return None


class InMemoryMessageStore:
    def __init__(self) -> None:
        self.rows: list[MessageRecord] = []
        self.fail_mark_delivered = False
        self.claims = 0

    async def append(self, conversation_id: UUID, tenant_id: str, draft: MessageDraft) -> MessageRecord:
        existing = await self.find_by_external_id(conversation_id, draft.external_id)
        if existing is not None:
            return existing
        record = MessageRecord(
            id=uuid4(),
            conversation_id=conversation_id,
            direction=draft.direction,
            content=draft.content,
            status=draft.status,
            external_id=draft.external_id,
            metadata=dict(draft.metadata),
            llm_skipped=draft.llm_skipped,
        )
        self.rows.append(record)
        return record

    async def find_by_external_id(self, conversation_id: UUID, external_id: str) -> MessageRecord | None:
        for row in self.rows:
            if row.conversation_id == conversation_id and row.external_id == external_id:
                return row
        return None

    async def recent(
        self, conversation_id: UUID, limit: int, *, exclude_external_id: str | None = None
    ) -> list[MessageRecord]:
        rows = [
            row
            for row in self.rows
            if row.conversation_id == conversation_id and row.external_id != exclude_external_id
        ]
        return rows[-limit:] if limit > 0 else []

    def _set_status(self, message_id: UUID, expected: set[str], status: str, **changes: Any) -> bool:
        for idx, row in enumerate(self.rows):
            if row.id == message_id and row.status in expected:
                self.rows[idx] = replace(row, status=status, **changes)
                return True
        return False

    async def claim_for_delivery(self, message_id: UUID) -> bool:
        self.claims += 1
        return self._set_status(message_id, {"pending"}, "sending")

    async def release_delivery(self, message_id: UUID) -> None:
        self._set_status(message_id, {"sending"}, "pending")

    async def mark_delivered(self, message_id: UUID, delivery_id: str | None) -> bool:
        if self.fail_mark_delivered:
            raise PersistenceError("message delivery update failed")
        return self._set_status(message_id, {"pending", "sending"}, "delivered", delivery_id=delivery_id)

    def status_of(self, external_id: str) -> str | None:
        for row in self.rows:
            if row.external_id == external_id:
                return row.status
        return None

    def by_direction(self, direction: str) -> list[MessageRecord]:
        return [row for row in self.rows if row.direction == direction]


class StaticLimitsProvider:
    def __init__(self, limits: TenantLimits | None = None) -> None:
        self.limits = limits or make_limits()
        self.calls = 0
        self.fail = False

    async def get_limits(self, tenant_id: str) -> TenantLimits:
        self.calls += 1
        if self.fail:
            raise QuotaLookupError("plan limits unavailable")
        return self.limits


class InMemoryUsageStore:
    def __init__(self) -> None:
        self.counters: dict[tuple[str, date], dict[str, int]] = {}
        self.reads = 0
        self.fail_read = False
        self.fail_increment = False

    def set_messages(self, tenant_id: str, usage_date: date, value: int) -> None:
        self.counters.setdefault((tenant_id, usage_date), {})["messages"] = value

    def set_rag_queries(self, tenant_id: str, usage_date: date, value: int) -> None:
        self.counters.setdefault((tenant_id, usage_date), {})["rag_queries"] = value

    async def messages_on(self, tenant_id: str, usage_date: date) -> int:
        self.reads += 1
        if self.fail_read:
            raise QuotaLookupError("usage unavailable")
        return self.counters.get((tenant_id, usage_date), {}).get("messages", 0)

    async def rag_queries_on(self, tenant_id: str, usage_date: date) -> int:
        self.reads += 1
        if self.fail_read:
            raise QuotaLookupError("usage unavailable")
        return self.counters.get((tenant_id, usage_date), {}).get("rag_queries", 0)

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
        if self.fail_increment:
            raise PersistenceError("usage increment failed")
        row = self.counters.setdefault((tenant_id, usage_date), {})
        for name, value in (
            ("messages", messages),
            ("tokens_in", tokens_in),
            ("tokens_out", tokens_out),
            ("rag_queries", rag_queries),
        ):
            row[name] = row.get(name, 0) + value


class RecordingGenerator:
    def __init__(self, text: str = "Bonjour, comment puis-je aider ?") -> None:
        self.text = text
        self.requests: list[GenerationRequest] = []
        self.fail = False
        # Seconds to wait before answering; lets tests overlap executions.
        self.delay = 0.0

    async def generate(self, request: GenerationRequest) -> GenerationResult:
        self.requests.append(request)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise GenerationError("model unavailable")
        return GenerationResult(text=self.text, tokens_in=12, tokens_out=7, model="recording")


class RecordingDelivery:
    def __init__(self) -> None:
        self.sent: list[tuple[str, str, dict[str, Any]]] = []
        # Number of upcoming calls that fail with a transient error.
        self.fail_next = 0
        self.fail_always = False

    async def deliver(self, recipient: str, content: str, metadata: dict[str, Any]) -> DeliveryReceipt:
        if self.fail_always or self.fail_next > 0:
            self.fail_next = max(0, self.fail_next - 1)
            raise WhatsAppDeliveryError("upstream unavailable", status_code=503)
        self.sent.append((recipient, content, metadata))
        return DeliveryReceipt(delivery_id=f"wamid.out.{len(self.sent)}")

    def kinds(self) -> list[str]:
        return [metadata.get("kind") for _, _, metadata in self.sent]


class StaticKnowledgeStore:
    # Scope filtering happens inside the store, as the SQL predicate does.
    def __init__(self, fragments_by_tenant: dict[str, list[RetrievedFragment]] | None = None) -> None:
        self.fragments_by_tenant = fragments_by_tenant or {}
        self.scopes: list[KnowledgeScope] = []

    async def search(
        self, scope: KnowledgeScope, query: str, *, threshold: float, limit: int
    ) -> list[RetrievedFragment]:
        self.scopes.append(scope)
        return list(self.fragments_by_tenant.get(scope.tenant_id, []))


@dataclass
class PipelineHarness:
    pipeline: MessagePipeline
    counters: FakeCounterStore
    conversations: InMemoryConversationStore
    messages: InMemoryMessageStore
    limits: StaticLimitsProvider
    usage: InMemoryUsageStore
    generator: RecordingGenerator
    delivery: RecordingDelivery
    knowledge: StaticKnowledgeStore = field(default_factory=StaticKnowledgeStore)


def build_harness(
    *,
    limits: TenantLimits | None = None,
    knowledge: StaticKnowledgeStore | None = None,
    delivery_attempts: int = 1,
) -> PipelineHarness:
    counters = FakeCounterStore()
    conversations = InMemoryConversationStore()
    messages = InMemoryMessageStore()
    limits_provider = StaticLimitsProvider(limits)
    usage = InMemoryUsageStore()
    generator = RecordingGenerator()
    delivery = RecordingDelivery()
    knowledge = knowledge or StaticKnowledgeStore()
    deps = PipelineDependencies(
        conversations=conversations,
        messages=messages,
        limits=limits_provider,
        usage=usage,
        dedup=DedupGuard(counters, ttl_s=86400, fail_mode="open", prefix="test"),
        rate_limiter=RateLimiter(counters, fail_mode="open", prefix="test"),
        quota=QuotaGate(limits=limits_provider, usage=usage, flags=conversations, today=lambda: TODAY),
        assembler=ContextAssembler(knowledge, max_context_tokens=2000, timeout_ms=1000, degrade_on_error=False),
        generator=generator,
        delivery=delivery,
        delivery_policy=RetryPolicy(timeout_ms=1000, max_attempts=delivery_attempts, backoff_ms=1),
        notice_locale="fr",
        history_turns=10,
        generation_timeout_ms=1000,
        today=lambda: TODAY,
    )
    return PipelineHarness(
        pipeline=MessagePipeline(deps),
        counters=counters,
        conversations=conversations,
        messages=messages,
        limits=limits_provider,
        usage=usage,
        generator=generator,
        delivery=delivery,
        knowledge=knowledge,
    )
