from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Callable
from uuid import UUID

from chatpipe.pipeline.interfaces import LimitsProvider, QuotaFlagStore, UsageStore
from chatpipe.services.limits import TenantLimits
from chatpipe.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

REASON_BLOCKED_CACHED = "quota_blocked_cached"
REASON_DAILY_MESSAGES_EXCEEDED = "daily_messages_exceeded"
REASON_CHECK_ERROR = "quota_check_error"
REASON_DAILY_RAG_QUERIES_EXCEEDED = "daily_rag_queries_exceeded"
REASON_RETRIEVAL_DISABLED = "retrieval_disabled"


@dataclass(frozen=True)
class QuotaDecision:
    allowed: bool
    reason: str | None = None
    current_usage: int | None = None
    limit: int | None = None
    # Decided from the conversation flag without touching the daily counter.
    cached: bool = False
    # Caller should persist the conversation flag for this decision.
    should_set_flag: bool = False


def utc_today() -> date:
    return datetime.now(timezone.utc).date()


class QuotaGate:
    def __init__(
        self,
        *,
        limits: LimitsProvider,
        usage: UsageStore,
        flags: QuotaFlagStore,
        today: Callable[[], date] | None = None,
    ) -> None:
        self._limits = limits
        self._usage = usage
        self._flags = flags
        # Allow injecting the calendar day for deterministic tests.
        self._today = today or utc_today

    async def check_before_generation(self, tenant_id: str, conversation_id: UUID) -> QuotaDecision:
        # Fail closed: any lookup error is treated as exceeded.
        try:
            if await self._flags.is_quota_blocked(conversation_id):
                increment_counter("quota_cached_block_total")
                return QuotaDecision(allowed=False, reason=REASON_BLOCKED_CACHED, cached=True)

            limits = await self._limits.get_limits(tenant_id)
            if limits.daily_messages_unlimited:
                return QuotaDecision(allowed=True, limit=limits.max_daily_messages)

            current = await self._usage.messages_on(tenant_id, self._today())
        except Exception as exc:  # noqa: BLE001 - the gate must never fail open
            increment_counter("guard_degraded_total.quota")
            logger.error(
                "quota_check_failed tenant_id=%s conversation_id=%s",
                tenant_id,
                conversation_id,
                exc_info=exc,
            )
            return QuotaDecision(allowed=False, reason=REASON_CHECK_ERROR)

        limit = int(limits.max_daily_messages or 0)
        if current >= limit:
            logger.info(
                "quota_exceeded tenant_id=%s conversation_id=%s usage=%s limit=%s",
                tenant_id,
                conversation_id,
                current,
                limit,
            )
            return QuotaDecision(
                allowed=False,
                reason=REASON_DAILY_MESSAGES_EXCEEDED,
                current_usage=current,
                limit=limit,
                should_set_flag=True,
            )
        return QuotaDecision(allowed=True, current_usage=current, limit=limit)

    async def check_rag_query(self, tenant_id: str, limits: TenantLimits) -> QuotaDecision:
        # Denial only skips retrieval; the reply is still generated without context.
        if not limits.retrieval_enabled:
            return QuotaDecision(allowed=False, reason=REASON_RETRIEVAL_DISABLED)
        if limits.daily_rag_queries_unlimited:
            return QuotaDecision(allowed=True, limit=limits.max_daily_rag_queries)

        try:
            current = await self._usage.rag_queries_on(tenant_id, self._today())
        except Exception as exc:  # noqa: BLE001 - retrieval quota must never fail open
            increment_counter("guard_degraded_total.rag_quota")
            logger.error("rag_quota_check_failed tenant_id=%s", tenant_id, exc_info=exc)
            return QuotaDecision(allowed=False, reason=REASON_CHECK_ERROR)

        limit = int(limits.max_daily_rag_queries or 0)
        if current >= limit:
            increment_counter("rag_quota_exceeded_total")
            logger.info("rag_quota_exceeded tenant_id=%s usage=%s limit=%s", tenant_id, current, limit)
            return QuotaDecision(
                allowed=False,
                reason=REASON_DAILY_RAG_QUERIES_EXCEEDED,
                current_usage=current,
                limit=limit,
            )
        return QuotaDecision(allowed=True, current_usage=current, limit=limit)


async def reset_blocked_flags(flags: QuotaFlagStore, *, tenant_id: str | None = None) -> int:
    # Explicit reset event: plan change for one tenant or day rollover for all.
    cleared = await flags.clear_quota_blocked(tenant_id)
    increment_counter("quota_flags_reset_total", cleared)
    logger.info("quota_flags_reset tenant_id=%s cleared=%s", tenant_id or "*", cleared)
    return cleared
