from __future__ import annotations

import logging
from dataclasses import dataclass

from chatpipe.core.config import get_settings
from chatpipe.core.errors import CounterStoreError
from chatpipe.core.logging import mask_sender
from chatpipe.services.counter_store import CounterStore
from chatpipe.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitDecision:
    limited: bool
    already_notified: bool
    current_count: int
    limit: int
    window_seconds: int
    degraded: bool = False


class RateLimiter:
    def __init__(
        self,
        store: CounterStore,
        *,
        fail_mode: str | None = None,
        prefix: str | None = None,
    ) -> None:
        settings = get_settings()
        self._store = store
        self._fail_mode = (fail_mode or settings.rl_fail_mode).lower()
        self._prefix = prefix or settings.counter_redis_prefix

    def key_for(self, tenant_id: str, conversation_id: str | None, sender_id: str) -> str:
        return f"{self._prefix}:rl:{tenant_id}:{conversation_id or '-'}:{sender_id}"

    async def check(
        self,
        tenant_id: str,
        conversation_id: str | None,
        sender_id: str,
        *,
        limit: int,
        window_seconds: int,
    ) -> RateLimitDecision:
        # Fixed-window count per (tenant, conversation, sender); every accepted event counts.
        if limit <= 0:
            return RateLimitDecision(
                limited=False,
                already_notified=False,
                current_count=0,
                limit=limit,
                window_seconds=window_seconds,
            )

        key = self.key_for(tenant_id, conversation_id, sender_id)
        try:
            window = await self._store.incr_window(key, f"{key}:notified", window_seconds, limit)
        except CounterStoreError as exc:
            increment_counter("guard_degraded_total.rate_limit")
            closed = self._fail_mode == "closed"
            logger.warning(
                "rate_limit_degraded tenant_id=%s sender=%s fail_mode=%s error=%s",
                tenant_id,
                mask_sender(sender_id),
                "closed" if closed else "open",
                exc,
            )
            # Fail-closed still suppresses the notice so a store outage cannot spam senders.
            return RateLimitDecision(
                limited=closed,
                already_notified=closed,
                current_count=0,
                limit=limit,
                window_seconds=window_seconds,
                degraded=True,
            )

        limited = window.count > limit
        if limited:
            logger.info(
                "rate_limited tenant_id=%s sender=%s count=%s limit=%s window_s=%s already_notified=%s",
                tenant_id,
                mask_sender(sender_id),
                window.count,
                limit,
                window_seconds,
                window.already_notified,
            )
        return RateLimitDecision(
            limited=limited,
            already_notified=limited and window.already_notified,
            current_count=window.count,
            limit=limit,
            window_seconds=window_seconds,
        )

    async def reset(self, tenant_id: str, conversation_id: str | None, sender_id: str) -> bool:
        # Operator action: clear the window and its notice slot so the sender starts fresh.
        key = self.key_for(tenant_id, conversation_id, sender_id)
        removed = await self._store.delete(key, f"{key}:notified")
        increment_counter("rate_limit_reset_total")
        logger.info(
            "rate_limit_reset tenant_id=%s sender=%s removed=%s", tenant_id, mask_sender(sender_id), removed
        )
        return removed > 0
