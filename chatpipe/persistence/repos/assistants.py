from __future__ import annotations

from sqlalchemy import Select, select
from sqlalchemy.ext.asyncio import AsyncSession

from chatpipe.domain.models import Assistant
from chatpipe.persistence.guards import tenant_predicate


def build_default_assistant_statement(tenant_id: str) -> Select:
    # Oldest active default wins if several were flagged.
    return (
        select(Assistant.id)
        .where(
            tenant_predicate(Assistant, tenant_id),
            Assistant.is_default.is_(True),
            Assistant.is_active.is_(True),
        )
        .order_by(Assistant.created_at.asc(), Assistant.id.asc())
        .limit(1)
    )


async def get_default_assistant_id(session: AsyncSession, tenant_id: str) -> str | None:
    result = await session.execute(build_default_assistant_statement(tenant_id))
    return result.scalar_one_or_none()
