from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Any

from arq import Retry, create_pool
from arq.connections import RedisSettings
from pydantic import ValidationError

from chatpipe.core.config import get_settings
from chatpipe.core.errors import PipelineInvariantError, ProviderConfigError
from chatpipe.domain.events import InboundEvent
from chatpipe.pipeline.orchestrator import MessagePipeline
from chatpipe.pipeline.state import PipelineResult
from chatpipe.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

PROCESS_INBOUND_FUNCTION = "process_inbound_event"

_redis_pool = None
_redis_pool_loop = None
_redis_lock = asyncio.Lock()


def _queue_key(queue_name: str) -> str:
    # arq's queue naming convention, for depth checks.
    return f"arq:queue:{queue_name}"


def inbound_job_id(event: InboundEvent) -> str:
    # arq refuses a second job with the same id while the first is queued or its result is kept.
    return f"inbound:{event.tenant_id}:{event.provider_message_id}"


async def get_redis_pool():
    # Cache the arq pool to avoid reconnecting on every enqueue.
    global _redis_pool, _redis_pool_loop
    current_loop = asyncio.get_running_loop()
    if _redis_pool is not None and _redis_pool_loop == current_loop:
        return _redis_pool
    if _redis_pool is not None and _redis_pool_loop != current_loop:
        _redis_pool = None
    async with _redis_lock:
        if _redis_pool is None:
            settings = get_settings()
            _redis_pool = await create_pool(
                RedisSettings.from_dsn(settings.redis_url),
                default_queue_name=settings.inbound_queue_name,
            )
            _redis_pool_loop = current_loop
    return _redis_pool


async def enqueue_inbound_event(event: InboundEvent) -> str:
    settings = get_settings()
    redis = await get_redis_pool()
    job_id = inbound_job_id(event)
    job = await redis.enqueue_job(
        PROCESS_INBOUND_FUNCTION,
        event.model_dump(mode="json"),
        _job_id=job_id,
        _queue_name=settings.inbound_queue_name,
    )
    if job is None:
        logger.info(
            "inbound_enqueue_skipped_existing tenant_id=%s provider_message_id=%s",
            event.tenant_id,
            event.provider_message_id,
        )
    return job.job_id if job else job_id


async def get_queue_depth(redis=None) -> int | None:
    # None signals Redis unavailability to callers.
    settings = get_settings()
    try:
        if redis is None:
            redis = await get_redis_pool()
        return int(await redis.zcard(_queue_key(settings.inbound_queue_name)))
    except Exception as exc:  # noqa: BLE001 - depth is informational
        logger.warning("queue_depth_unavailable error=%s", exc)
        return None


def backoff_seconds(attempt: int, *, base_s: int | None = None, cap_s: int | None = None) -> int:
    # Exponential backoff: base, 2*base, 4*base ... capped.
    settings = get_settings()
    base = base_s if base_s is not None else settings.inbound_retry_base_s
    cap = cap_s if cap_s is not None else settings.inbound_retry_max_s
    return int(min(base * 2 ** (max(1, attempt) - 1), cap))


def is_retryable(exc: Exception) -> bool:
    # Deterministic failures go straight to the dead-letter list.
    return not isinstance(exc, (ProviderConfigError, PipelineInvariantError, ValidationError))


async def push_dead_letter(redis, payload: Any, *, error: Exception, attempt: int, key: str | None = None) -> None:
    entry = {
        "payload": payload,
        "error_type": type(error).__name__,
        "error": str(error)[:512],
        "attempt": attempt,
        "failed_at": datetime.now(timezone.utc).isoformat(),
    }
    await redis.rpush(key or get_settings().dead_letter_key, json.dumps(entry, default=str))
    increment_counter("inbound_dead_letter_total")


async def run_inbound_job(
    pipeline: MessagePipeline,
    payload: dict,
    *,
    attempt: int,
    max_tries: int,
    redis,
) -> PipelineResult:
    # Shared job body: validate, process, then translate failures into retry or dead letter.
    try:
        event = InboundEvent.model_validate(payload)
        return await pipeline.process(event, attempt=attempt)
    except Exception as exc:  # noqa: BLE001 - every failure ends in retry or dead letter
        if is_retryable(exc) and attempt < max_tries:
            defer = backoff_seconds(attempt)
            increment_counter("inbound_retry_total")
            logger.warning(
                "inbound_job_retry attempt=%s max_tries=%s defer_s=%s error=%s",
                attempt,
                max_tries,
                defer,
                type(exc).__name__,
            )
            raise Retry(defer=defer) from exc
        logger.error(
            "inbound_job_dead_lettered attempt=%s max_tries=%s retryable=%s",
            attempt,
            max_tries,
            is_retryable(exc),
            exc_info=exc,
        )
        await push_dead_letter(redis, payload, error=exc, attempt=attempt)
        raise
