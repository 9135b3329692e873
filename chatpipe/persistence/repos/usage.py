from __future__ import annotations

from datetime import date

from sqlalchemy import func, select
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession

from chatpipe.domain.models import UsageCounterDaily
from chatpipe.persistence.guards import tenant_predicate


async def get_daily_usage(session: AsyncSession, tenant_id: str, usage_date: date) -> UsageCounterDaily | None:
    result = await session.execute(
        select(UsageCounterDaily).where(
            tenant_predicate(UsageCounterDaily, tenant_id),
            UsageCounterDaily.usage_date == usage_date,
        )
    )
    return result.scalar_one_or_none()


async def increment_daily_usage(
    session: AsyncSession,
    *,
    tenant_id: str,
    usage_date: date,
    messages: int = 0,
    tokens_in: int = 0,
    tokens_out: int = 0,
    rag_queries: int = 0,
    docs_indexed: int = 0,
) -> None:
    # Upsert-and-increment keeps concurrent writers for the same tenant/day safe.
    stmt = insert(UsageCounterDaily).values(
        tenant_id=tenant_id,
        usage_date=usage_date,
        messages_count=messages,
        tokens_in=tokens_in,
        tokens_out=tokens_out,
        rag_queries_count=rag_queries,
        docs_indexed_count=docs_indexed,
    )
    excluded = stmt.excluded
    stmt = stmt.on_conflict_do_update(
        constraint="uq_usage_counters_daily_tenant_date",
        set_={
            "messages_count": UsageCounterDaily.messages_count + excluded.messages_count,
            "tokens_in": UsageCounterDaily.tokens_in + excluded.tokens_in,
            "tokens_out": UsageCounterDaily.tokens_out + excluded.tokens_out,
            "rag_queries_count": UsageCounterDaily.rag_queries_count + excluded.rag_queries_count,
            "docs_indexed_count": UsageCounterDaily.docs_indexed_count + excluded.docs_indexed_count,
            "updated_at": func.now(),
        },
    )
    await session.execute(stmt)
