from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Callable

from chatpipe.core.config import get_settings
from chatpipe.core.errors import GenerationTimeoutError, PipelineInvariantError
from chatpipe.core.logging import mask_sender
from chatpipe.domain.events import InboundEvent
from chatpipe.pipeline import state
from chatpipe.pipeline.interfaces import (
    ConversationRef,
    ConversationStore,
    LimitsProvider,
    MessageDraft,
    MessageRecord,
    MessageStore,
    UsageStore,
)
from chatpipe.pipeline.prompts import build_messages, history_from_records
from chatpipe.providers.delivery.base import DeliveryChannel, DeliveryReceipt
from chatpipe.providers.llm.base import GenerationRequest, GenerationResult, ReplyGenerator
from chatpipe.services.context import AssembledContext, AssistantConfig, ContextAssembler
from chatpipe.services.dedup import DedupDecision, DedupGuard
from chatpipe.services.limits import TenantLimits, build_tenant_limits
from chatpipe.services.notices import quota_exceeded_notice, rate_limit_notice
from chatpipe.services.quota import QuotaGate, utc_today
from chatpipe.services.rate_limit import RateLimiter
from chatpipe.services.resilience import RetryPolicy, delivery_retry_policy, retry_async, timed_call
from chatpipe.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

DIRECTION_INBOUND = "inbound"
DIRECTION_OUTBOUND = "outbound"

STATUS_PENDING = "pending"
STATUS_SENDING = "sending"
STATUS_DELIVERED = "delivered"

REASON_DELIVERY_IN_PROGRESS = "delivery_in_progress"


def reply_external_id(provider_message_id: str) -> str:
    return f"{provider_message_id}:reply"


def fallback_external_id(provider_message_id: str) -> str:
    return f"{provider_message_id}:fallback"


@dataclass(frozen=True)
class _Clearance:
    # Issued only by the guard steps below; generation refuses to run without both.
    guard: str
    event_key: tuple[str, str]


@dataclass
class PipelineDependencies:
    conversations: ConversationStore
    messages: MessageStore
    limits: LimitsProvider
    usage: UsageStore
    dedup: DedupGuard
    rate_limiter: RateLimiter
    quota: QuotaGate
    assembler: ContextAssembler
    generator: ReplyGenerator
    delivery: DeliveryChannel
    delivery_policy: RetryPolicy | None = None
    notice_locale: str | None = None
    history_turns: int | None = None
    generation_timeout_ms: int | None = None
    context_format: str | None = None
    context_include_scores: bool | None = None
    today: Callable[[], date] = field(default=utc_today)


class MessagePipeline:
    def __init__(self, deps: PipelineDependencies) -> None:
        settings = get_settings()
        self._deps = deps
        self._delivery_policy = deps.delivery_policy or delivery_retry_policy()
        self._history_turns = deps.history_turns if deps.history_turns is not None else settings.history_max_turns
        timeout_ms = deps.generation_timeout_ms or settings.generation_timeout_ms
        self._generation_timeout_s = max(0.001, timeout_ms / 1000.0)
        self._context_format = deps.context_format or settings.rag_context_format
        self._context_include_scores = (
            deps.context_include_scores
            if deps.context_include_scores is not None
            else settings.rag_context_include_scores
        )

    async def process(self, event: InboundEvent, attempt: int = 1) -> state.PipelineResult:
        result = state.PipelineResult()
        result.visit(state.STAGE_RECEIVED)
        deps = self._deps
        logger.info(
            "pipeline_received tenant_id=%s provider_message_id=%s sender=%s attempt=%s correlation_id=%s",
            event.tenant_id,
            event.provider_message_id,
            mask_sender(event.sender_id),
            attempt,
            event.correlation_id,
        )

        # Guards absorb store failures into decisions; only a held processing lease raises for retry.
        result.visit(state.STAGE_DEDUP_CHECK)
        dedup = await deps.dedup.accept(event.tenant_id, event.provider_message_id, event.correlation_id)
        if dedup.duplicate:
            result.visit(state.STAGE_DROPPED)
            return self._finish(result, state.OUTCOME_DUPLICATE, event)

        try:
            return await self._process_claimed(event, attempt, result, dedup)
        finally:
            await deps.dedup.release(dedup)

    async def _process_claimed(
        self, event: InboundEvent, attempt: int, result: state.PipelineResult, dedup: DedupDecision
    ) -> state.PipelineResult:
        deps = self._deps
        key = event.dedup_key()
        result.visit(state.STAGE_RATE_CHECK)
        limits = await self._load_limits(event.tenant_id)
        rate_clearance: _Clearance | None = None
        if dedup.resumed:
            # The first attempt of this job was already counted.
            rate_clearance = _Clearance("rate", key)
        else:
            decision = await deps.rate_limiter.check(
                event.tenant_id,
                event.conversation_id,
                event.sender_id,
                limit=limits.rate_limit,
                window_seconds=limits.rate_window_seconds,
            )
            if decision.limited:
                result.visit(state.STAGE_NOTIFY_IF_NEEDED)
                if not decision.already_notified:
                    await self._send_rate_limit_notice(event)
                return self._finish(result, state.OUTCOME_RATE_LIMITED, event)
            rate_clearance = _Clearance("rate", key)

        # From here on, errors propagate to the queue for retry.
        result.visit(state.STAGE_PERSIST_INBOUND)
        conversation = await deps.conversations.resolve(event.tenant_id, event.channel_id, event.sender_id)
        result.conversation_id = conversation.id
        await deps.messages.append(
            conversation.id,
            event.tenant_id,
            MessageDraft(
                direction=DIRECTION_INBOUND,
                content=event.text,
                status="received",
                external_id=event.provider_message_id,
                metadata={
                    "correlation_id": event.correlation_id,
                    "received_at": event.received_at.isoformat(),
                },
            ),
        )

        if dedup.resumed:
            existing = await deps.messages.find_by_external_id(
                conversation.id, reply_external_id(event.provider_message_id)
            )
            if existing is not None:
                logger.info(
                    "pipeline_resume_existing_reply tenant_id=%s provider_message_id=%s attempt=%s",
                    event.tenant_id,
                    event.provider_message_id,
                    attempt,
                )
                return await self._deliver_and_record(result, event, conversation, existing, resumed=True)

        result.visit(state.STAGE_QUOTA_CHECK)
        quota = await deps.quota.check_before_generation(event.tenant_id, conversation.id)
        if not quota.allowed:
            result.reason = quota.reason
            if quota.should_set_flag:
                await deps.conversations.set_quota_blocked(conversation.id, quota.reason or "")
            return await self._send_fallback(result, event, conversation, quota.reason or "")
        quota_clearance = _Clearance("quota", key)

        result.visit(state.STAGE_ASSEMBLE_CONTEXT)
        assembled = await self._assemble(event, conversation, limits)

        result.visit(state.STAGE_GENERATE_REPLY)
        generated = await self._generate(event, conversation, assembled, rate_clearance, quota_clearance)

        result.visit(state.STAGE_PERSIST_OUTBOUND)
        reply = await deps.messages.append(
            conversation.id,
            event.tenant_id,
            MessageDraft(
                direction=DIRECTION_OUTBOUND,
                content=generated.text,
                status=STATUS_PENDING,
                external_id=reply_external_id(event.provider_message_id),
                metadata={
                    "tokens_in": generated.tokens_in,
                    "tokens_out": generated.tokens_out,
                    "model": generated.model,
                    "retrieval_ran": assembled.retrieval_ran,
                    "documents_used": assembled.documents_used,
                    "document_names": assembled.document_names,
                    "rag_fragments": [
                        {
                            "fragment_id": fragment.fragment_id,
                            "document_id": fragment.source_document_id,
                            "score": round(fragment.score, 4),
                        }
                        for fragment in assembled.fragments
                    ],
                },
            ),
        )
        return await self._deliver_and_record(result, event, conversation, reply, resumed=False)

    async def _load_limits(self, tenant_id: str) -> TenantLimits:
        # Rate window and retrieval config degrade to defaults; the quota gate loads its own, fail-closed.
        try:
            return await self._deps.limits.get_limits(tenant_id)
        except Exception as exc:  # noqa: BLE001 - guard stage must not trigger retries
            increment_counter("guard_degraded_total.limits")
            logger.warning("limits_lookup_degraded tenant_id=%s error=%s", tenant_id, exc)
            return build_tenant_limits(None)

    async def _send_rate_limit_notice(self, event: InboundEvent) -> None:
        # One notice per window; a failed send is not retried.
        try:
            await self._deliver(
                event.sender_id,
                rate_limit_notice(self._deps.notice_locale),
                self._delivery_metadata(event, None, "rate_limit_notice"),
            )
        except Exception as exc:  # noqa: BLE001 - notices are best-effort
            increment_counter("rate_limit_notice_failed_total")
            logger.warning(
                "rate_limit_notice_failed tenant_id=%s sender=%s error=%s",
                event.tenant_id,
                mask_sender(event.sender_id),
                exc,
            )

    async def _send_fallback(
        self,
        result: state.PipelineResult,
        event: InboundEvent,
        conversation: ConversationRef,
        reason: str,
    ) -> state.PipelineResult:
        deps = self._deps
        text = quota_exceeded_notice(deps.notice_locale)
        result.visit(state.STAGE_PERSIST_FALLBACK)
        fallback = await deps.messages.append(
            conversation.id,
            event.tenant_id,
            MessageDraft(
                direction=DIRECTION_OUTBOUND,
                content=text,
                status=STATUS_PENDING,
                external_id=fallback_external_id(event.provider_message_id),
                metadata={"llm_skipped": True, "llm_skipped_reason": reason},
                llm_skipped=True,
            ),
        )
        result.reply = fallback.content

        result.visit(state.STAGE_DELIVER_FALLBACK)
        recorded = await self._deliver_once(result, event, conversation, fallback, "quota_fallback")
        if recorded is None:
            return self._finish(result, state.OUTCOME_DUPLICATE, event)
        if recorded:
            await self._best_effort("touch_conversation", deps.conversations.touch_last_message(conversation.id))
        return self._finish(result, state.OUTCOME_QUOTA_BLOCKED, event)

    async def _assemble(
        self, event: InboundEvent, conversation: ConversationRef, limits: TenantLimits
    ) -> AssembledContext:
        deps = self._deps
        records = await deps.messages.recent(
            conversation.id, self._history_turns, exclude_external_id=event.provider_message_id
        )
        retrieval_enabled = limits.retrieval_enabled
        if retrieval_enabled:
            rag_quota = await deps.quota.check_rag_query(event.tenant_id, limits)
            if not rag_quota.allowed:
                # Over the retrieval allowance: answer without knowledge context.
                retrieval_enabled = False
                logger.info(
                    "retrieval_skipped tenant_id=%s provider_message_id=%s reason=%s",
                    event.tenant_id,
                    event.provider_message_id,
                    rag_quota.reason,
                )
        config = AssistantConfig(
            retrieval_enabled=retrieval_enabled,
            threshold=limits.threshold,
            max_results=limits.max_results,
            assistant_id=conversation.assistant_id,
            history_turns=self._history_turns,
            context_format=self._context_format,
            include_scores=self._context_include_scores,
        )
        return await deps.assembler.assemble(event.tenant_id, config, event.text, history_from_records(records))

    async def _generate(
        self,
        event: InboundEvent,
        conversation: ConversationRef,
        assembled: AssembledContext,
        rate_clearance: _Clearance | None,
        quota_clearance: _Clearance | None,
    ) -> GenerationResult:
        key = event.dedup_key()
        for guard, clearance in (("rate", rate_clearance), ("quota", quota_clearance)):
            if clearance is None or clearance.guard != guard or clearance.event_key != key:
                raise PipelineInvariantError(f"generation reached without {guard} clearance")

        request = GenerationRequest(
            tenant_id=event.tenant_id,
            assistant_id=conversation.assistant_id,
            messages=build_messages(assembled.history, event.text),
            context=assembled.formatted_context,
            metadata={"conversation_id": str(conversation.id), "correlation_id": event.correlation_id},
        )
        try:
            return await timed_call(
                "generation",
                lambda: asyncio.wait_for(self._deps.generator.generate(request), timeout=self._generation_timeout_s),
            )
        except asyncio.TimeoutError as exc:
            raise GenerationTimeoutError("reply generation timed out") from exc

    async def _deliver_and_record(
        self,
        result: state.PipelineResult,
        event: InboundEvent,
        conversation: ConversationRef,
        reply: MessageRecord,
        *,
        resumed: bool,
    ) -> state.PipelineResult:
        if reply.status != STATUS_DELIVERED:
            result.visit(state.STAGE_DELIVER_REPLY)
        recorded = await self._deliver_once(result, event, conversation, reply, "reply")
        if recorded is None:
            return self._finish(result, state.OUTCOME_DUPLICATE, event)
        if recorded:
            result.visit(state.STAGE_UPDATE_STATS)
            await self._update_stats(event, conversation, reply)
            if resumed:
                increment_counter("pipeline_resumed_total")
        result.visit(state.STAGE_COMPLETE)
        return self._finish(result, state.OUTCOME_COMPLETED, event)

    async def _deliver_once(
        self,
        result: state.PipelineResult,
        event: InboundEvent,
        conversation: ConversationRef,
        record: MessageRecord,
        kind: str,
    ) -> bool | None:
        """Send an outbound row at most once and record it as delivered.

        Returns True when this call recorded the delivery, False when an earlier
        attempt already had, and None when another execution owns the send.
        """
        deps = self._deps
        result.reply = record.content
        if record.status == STATUS_DELIVERED:
            result.delivery_id = record.delivery_id
            return False

        if record.status == STATUS_SENDING:
            # A previous attempt died after claiming the send; it may have gone out.
            increment_counter("delivery_unconfirmed_total")
            logger.warning(
                "delivery_unconfirmed tenant_id=%s provider_message_id=%s kind=%s",
                event.tenant_id,
                event.provider_message_id,
                kind,
            )
            return await deps.messages.mark_delivered(record.id, None)

        if not await deps.messages.claim_for_delivery(record.id):
            result.reason = REASON_DELIVERY_IN_PROGRESS
            logger.info(
                "delivery_claim_lost tenant_id=%s provider_message_id=%s kind=%s",
                event.tenant_id,
                event.provider_message_id,
                kind,
            )
            return None

        try:
            receipt = await self._deliver(
                event.sender_id, record.content, self._delivery_metadata(event, conversation, kind)
            )
        except Exception:
            # Provider call failed; hand the send back so the retry can claim it.
            await self._best_effort("release_delivery", deps.messages.release_delivery(record.id))
            raise
        result.delivery_id = receipt.delivery_id
        return await deps.messages.mark_delivered(record.id, receipt.delivery_id)

    async def _update_stats(
        self,
        event: InboundEvent,
        conversation: ConversationRef,
        reply: MessageRecord,
    ) -> None:
        deps = self._deps
        metadata = reply.metadata or {}
        await self._best_effort("touch_conversation", deps.conversations.touch_last_message(conversation.id))
        await self._best_effort(
            "increment_usage",
            deps.usage.increment(
                event.tenant_id,
                deps.today(),
                messages=1,
                tokens_in=int(metadata.get("tokens_in") or 0),
                tokens_out=int(metadata.get("tokens_out") or 0),
                rag_queries=1 if metadata.get("retrieval_ran") else 0,
            ),
        )

    async def _deliver(self, recipient: str, content: str, metadata: dict[str, Any]) -> DeliveryReceipt:
        return await timed_call(
            "delivery",
            lambda: retry_async(
                lambda: self._deps.delivery.deliver(recipient, content, metadata),
                policy=self._delivery_policy,
            ),
        )

    async def _best_effort(self, step: str, awaitable) -> None:
        # Bookkeeping around a send never decides the job outcome.
        try:
            await awaitable
        except Exception as exc:  # noqa: BLE001 - bookkeeping failures are logged and counted
            increment_counter(f"best_effort_failed_total.{step}")
            logger.error("best_effort_step_failed step=%s", step, exc_info=exc)

    def _delivery_metadata(
        self, event: InboundEvent, conversation: ConversationRef | None, kind: str
    ) -> dict[str, Any]:
        return {
            "tenant_id": event.tenant_id,
            "channel_id": event.channel_id,
            "conversation_id": str(conversation.id) if conversation is not None else event.conversation_id,
            "reply_to_message_id": event.provider_message_id,
            "kind": kind,
        }

    def _finish(
        self, result: state.PipelineResult, outcome: state.PipelineOutcome, event: InboundEvent
    ) -> state.PipelineResult:
        result.outcome = outcome
        increment_counter(f"pipeline_outcome_total.{outcome}")
        logger.info(
            "pipeline_finished tenant_id=%s provider_message_id=%s outcome=%s reason=%s stages=%s",
            event.tenant_id,
            event.provider_message_id,
            outcome,
            result.reason,
            ",".join(result.stages),
        )
        return result
