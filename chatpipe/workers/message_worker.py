from __future__ import annotations

import logging

from arq import cron
from arq.connections import RedisSettings

from chatpipe.core.config import get_settings
from chatpipe.core.logging import configure_logging
from chatpipe.persistence.db import SessionLocal, engine
from chatpipe.persistence.stores import (
    SqlConversationStore,
    SqlLimitsProvider,
    SqlMessageStore,
    SqlUsageStore,
)
from chatpipe.pipeline.orchestrator import MessagePipeline, PipelineDependencies
from chatpipe.providers.delivery.factory import get_delivery_channel
from chatpipe.providers.embeddings import get_text_embedder
from chatpipe.providers.llm.factory import get_reply_generator
from chatpipe.providers.retrieval.local_pgvector import PgVectorKnowledgeStore
from chatpipe.services.context import ContextAssembler
from chatpipe.services.counter_store import RedisCounterStore
from chatpipe.services.dedup import DedupGuard
from chatpipe.services.queue import get_queue_depth, run_inbound_job
from chatpipe.services.quota import QuotaGate, reset_blocked_flags
from chatpipe.services.rate_limit import RateLimiter
from chatpipe.services.telemetry import log_telemetry_summary


logger = logging.getLogger(__name__)

TELEMETRY_WINDOW_S = 300


def build_pipeline() -> tuple[MessagePipeline, SqlConversationStore]:
    # Wire SQL/Redis/provider implementations into one shared pipeline per worker process.
    conversations = SqlConversationStore(SessionLocal)
    limits = SqlLimitsProvider(SessionLocal)
    usage = SqlUsageStore(SessionLocal)
    counters = RedisCounterStore()
    deps = PipelineDependencies(
        conversations=conversations,
        messages=SqlMessageStore(SessionLocal),
        limits=limits,
        usage=usage,
        dedup=DedupGuard(counters),
        rate_limiter=RateLimiter(counters),
        quota=QuotaGate(limits=limits, usage=usage, flags=conversations),
        assembler=ContextAssembler(PgVectorKnowledgeStore(SessionLocal, embedder=get_text_embedder())),
        generator=get_reply_generator(),
        delivery=get_delivery_channel(),
    )
    return MessagePipeline(deps), conversations


async def process_inbound_event(ctx, payload: dict) -> str:
    # Payload validation happens inside the shared job body so bad payloads are dead-lettered.
    settings = get_settings()
    result = await run_inbound_job(
        ctx["pipeline"],
        payload,
        attempt=ctx.get("job_try", 1),
        max_tries=settings.inbound_max_tries,
        redis=ctx["redis"],
    )
    return result.outcome or "unknown"


async def reset_quota_flags_job(ctx) -> int:
    # Day rollover: every tenant starts the new UTC day unblocked.
    return await reset_blocked_flags(ctx["conversations"])


async def log_telemetry_job(ctx) -> dict:
    # Latency samples and counters live in process memory; summarize them on a schedule.
    depth = await get_queue_depth(ctx["redis"])
    return log_telemetry_summary(TELEMETRY_WINDOW_S, queue_depth=depth)


async def _startup(ctx) -> None:
    configure_logging()
    pipeline, conversations = build_pipeline()
    ctx["pipeline"] = pipeline
    ctx["conversations"] = conversations
    logger.info("message_worker_started max_jobs=%s", get_settings().worker_max_jobs)


async def _shutdown(ctx) -> None:
    await engine.dispose()
    logger.info("message_worker_stopped")


class WorkerSettings:
    # Keep worker configuration as class attributes for arq CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.inbound_queue_name
    max_jobs = settings.worker_max_jobs
    max_tries = settings.inbound_max_tries
    job_timeout = settings.inbound_job_timeout_s
    functions = [process_inbound_event]
    cron_jobs = [
        cron(reset_quota_flags_job, hour={0}, minute={0}, run_at_startup=False),
        cron(log_telemetry_job, minute=set(range(0, 60, 5)), run_at_startup=False),
    ]
    on_startup = _startup
    on_shutdown = _shutdown
