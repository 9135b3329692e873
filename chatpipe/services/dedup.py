from __future__ import annotations

import logging
from dataclasses import dataclass
from uuid import uuid4

from chatpipe.core.config import get_settings
from chatpipe.core.errors import CounterStoreError, EventInFlightError
from chatpipe.services.counter_store import CLAIM_NEW, CLAIM_SAME, CounterStore
from chatpipe.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DedupDecision:
    duplicate: bool
    # Same job retried by the queue after a failure; processing must resume.
    resumed: bool = False
    # Counter store unavailable; decision came from the fail mode.
    degraded: bool = False
    # Processing lease held by this execution; released when the pipeline finishes.
    lease_key: str | None = None
    lease_token: str | None = None


class DedupGuard:
    def __init__(
        self,
        store: CounterStore,
        *,
        ttl_s: int | None = None,
        lease_ttl_s: int | None = None,
        fail_mode: str | None = None,
        prefix: str | None = None,
    ) -> None:
        settings = get_settings()
        self._store = store
        self._ttl_s = ttl_s if ttl_s is not None else settings.dedup_ttl_s
        self._lease_ttl_s = lease_ttl_s if lease_ttl_s is not None else settings.dedup_lease_ttl_s
        self._fail_mode = (fail_mode or settings.dedup_fail_mode).lower()
        self._prefix = prefix or settings.counter_redis_prefix

    def key_for(self, tenant_id: str, provider_message_id: str) -> str:
        return f"{self._prefix}:dedup:{tenant_id}:{provider_message_id}"

    def lease_key_for(self, tenant_id: str, provider_message_id: str) -> str:
        return f"{self.key_for(tenant_id, provider_message_id)}:lease"

    async def accept(self, tenant_id: str, provider_message_id: str, correlation_id: str) -> DedupDecision:
        # One atomic claim per (tenant, provider message id); the owner is the correlation id.
        if not provider_message_id:
            logger.warning("dedup_skipped_missing_id tenant_id=%s", tenant_id)
            return DedupDecision(duplicate=False)

        key = self.key_for(tenant_id, provider_message_id)
        try:
            claim = await self._store.set_if_absent_or_same(key, correlation_id, self._ttl_s)
        except CounterStoreError as exc:
            return self._degraded(tenant_id, provider_message_id, exc)

        if claim not in (CLAIM_NEW, CLAIM_SAME):
            logger.info(
                "dedup_duplicate_dropped tenant_id=%s provider_message_id=%s", tenant_id, provider_message_id
            )
            return DedupDecision(duplicate=True)

        # Owning the record is not enough: identical payloads may run concurrently.
        lease_key = self.lease_key_for(tenant_id, provider_message_id)
        lease_token = uuid4().hex
        try:
            lease = await self._store.set_if_absent_or_same(lease_key, lease_token, self._lease_ttl_s)
        except CounterStoreError as exc:
            return self._degraded(tenant_id, provider_message_id, exc)
        if lease != CLAIM_NEW:
            increment_counter("dedup_in_flight_total")
            logger.info(
                "dedup_in_flight tenant_id=%s provider_message_id=%s correlation_id=%s",
                tenant_id,
                provider_message_id,
                correlation_id,
            )
            raise EventInFlightError(f"event {provider_message_id} is being processed by another execution")

        resumed = claim == CLAIM_SAME
        if resumed:
            logger.info(
                "dedup_resumed tenant_id=%s provider_message_id=%s correlation_id=%s",
                tenant_id,
                provider_message_id,
                correlation_id,
            )
        return DedupDecision(duplicate=False, resumed=resumed, lease_key=lease_key, lease_token=lease_token)

    async def release(self, decision: DedupDecision) -> None:
        if decision.lease_key is None or decision.lease_token is None:
            return
        try:
            await self._store.release(decision.lease_key, decision.lease_token)
        except CounterStoreError as exc:
            # The lease expires on its own; a retry waits at most its TTL.
            increment_counter("dedup_lease_release_failed_total")
            logger.warning("dedup_lease_release_failed lease_key=%s error=%s", decision.lease_key, exc)

    def _degraded(self, tenant_id: str, provider_message_id: str, exc: Exception) -> DedupDecision:
        increment_counter("guard_degraded_total.dedup")
        if self._fail_mode == "closed":
            logger.warning(
                "dedup_degraded_fail_closed tenant_id=%s provider_message_id=%s error=%s",
                tenant_id,
                provider_message_id,
                exc,
            )
            return DedupDecision(duplicate=True, degraded=True)
        logger.warning(
            "dedup_degraded_fail_open tenant_id=%s provider_message_id=%s error=%s",
            tenant_id,
            provider_message_id,
            exc,
        )
        return DedupDecision(duplicate=False, degraded=True)
